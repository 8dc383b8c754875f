import asyncio
import json

import aiohttp
import pytest
from conftest import FakeOperation
from graph_media_client.errors import (
    ApiError,
    DecodeFailure,
    OperationCancelled,
    TransportFailure,
)
from graph_media_client.executor import execute_retry, sign
from graph_media_client.models import AttemptRecord

OK = json.dumps({"id": "42"})
RECORD = AttemptRecord(target="https://graph.test/v19.0/42", params=[("fields", "id")])


def connection_error():
    return aiohttp.ClientConnectionError("connection refused")


@pytest.mark.asyncio
async def test_success_emits_before_and_after_records():
    records = []
    operation = FakeOperation(OK)

    result = await execute_retry(3, operation, records.append, RECORD)

    assert result == {"id": "42"}
    assert operation.calls == 1
    assert [(r.attempt, r.result) for r in records] == [(0, None), (0, {"id": "42"})]
    assert records[0].params == [("fields", "id")]
    assert RECORD.result is None


@pytest.mark.asyncio
async def test_transport_failures_are_retried_until_success():
    records = []
    operation = FakeOperation(connection_error(), connection_error(), OK)

    result = await execute_retry(3, operation, records.append, RECORD)

    assert result == {"id": "42"}
    assert operation.calls == 3
    assert [r.attempt for r in records] == [0, 1, 2, 2]


@pytest.mark.asyncio
@pytest.mark.parametrize("max_attempts", [1, 2, 4])
async def test_attempts_never_exceed_budget(max_attempts):
    operation = FakeOperation(connection_error())

    with pytest.raises(TransportFailure) as excinfo:
        await execute_retry(max_attempts, operation, None, RECORD)

    assert operation.calls == max_attempts
    assert isinstance(excinfo.value.__cause__, aiohttp.ClientConnectionError)


@pytest.mark.asyncio
async def test_zero_attempts_still_sends_once():
    operation = FakeOperation(connection_error())

    with pytest.raises(TransportFailure):
        await execute_retry(0, operation, None, RECORD)

    assert operation.calls == 1


@pytest.mark.asyncio
async def test_timeout_counts_as_transport_failure():
    operation = FakeOperation(asyncio.TimeoutError())

    with pytest.raises(TransportFailure):
        await execute_retry(2, operation, None, RECORD)

    assert operation.calls == 2


@pytest.mark.asyncio
async def test_decode_failure_is_retried():
    operation = FakeOperation("<html>bad gateway</html>", OK)

    assert await execute_retry(2, operation, None, RECORD) == {"id": "42"}
    assert operation.calls == 2


@pytest.mark.asyncio
async def test_decode_failure_surfaces_body_when_exhausted():
    operation = FakeOperation("<html>bad gateway</html>")

    with pytest.raises(DecodeFailure) as excinfo:
        await execute_retry(2, operation, None, RECORD)

    assert excinfo.value.document == "<html>bad gateway</html>"


@pytest.mark.asyncio
async def test_body_that_is_not_utf8_is_a_decode_failure():
    operation = FakeOperation(b"\xff\xfe{bad", OK.encode())

    assert await execute_retry(2, operation, None, RECORD) == {"id": "42"}
    assert operation.calls == 2


@pytest.mark.asyncio
async def test_body_that_is_not_utf8_surfaces_raw_bytes():
    operation = FakeOperation(b"\xff\xfe{bad")

    with pytest.raises(DecodeFailure) as excinfo:
        await execute_retry(1, operation, None, RECORD)

    assert excinfo.value.document == b"\xff\xfe{bad"
    assert isinstance(excinfo.value.__cause__, UnicodeDecodeError)


@pytest.mark.asyncio
async def test_api_error_is_never_retried():
    records = []
    error = {"error": {"message": "Invalid parameter", "code": 100}}
    operation = FakeOperation(json.dumps(error), OK)

    with pytest.raises(ApiError) as excinfo:
        await execute_retry(5, operation, records.append, RECORD)

    assert operation.calls == 1
    assert excinfo.value.document == error
    assert excinfo.value.code == 100
    assert [r.result for r in records] == [None]


@pytest.mark.asyncio
async def test_error_string_is_not_an_api_error():
    operation = FakeOperation(json.dumps({"error": "not an object", "id": "1"}))

    result = await execute_retry(1, operation, None, RECORD)

    assert result["id"] == "1"


@pytest.mark.asyncio
async def test_array_documents_are_returned():
    operation = FakeOperation(json.dumps([None, {"code": 200, "body": "{}"}]))

    assert await execute_retry(1, operation, None, RECORD) == [
        None,
        {"code": 200, "body": "{}"},
    ]


@pytest.mark.asyncio
async def test_async_observer_is_awaited():
    seen = []

    async def observe(record):
        await asyncio.sleep(0)
        seen.append(record.attempt)

    await execute_retry(1, FakeOperation(OK), observe, RECORD)

    assert seen == [0, 0]


@pytest.mark.asyncio
async def test_cancelled_before_first_attempt():
    cancel_event = asyncio.Event()
    cancel_event.set()
    operation = FakeOperation(OK)

    with pytest.raises(OperationCancelled):
        await execute_retry(3, operation, None, RECORD, cancel_event=cancel_event)

    assert operation.calls == 0


@pytest.mark.asyncio
async def test_retry_delay_is_interrupted_by_cancel():
    cancel_event = asyncio.Event()

    async def failing():
        cancel_event.set()
        raise connection_error()

    with pytest.raises(OperationCancelled):
        await execute_retry(
            3, failing, None, RECORD, retry_delay=30.0, cancel_event=cancel_event
        )


def test_sign_is_lowercase_hex_sha256():
    proof = sign("access-token", "app-secret")

    assert len(proof) == 64
    assert proof == proof.lower()
    assert int(proof, 16) >= 0
    assert proof == sign("access-token", "app-secret")
    assert proof != sign("access-token", "other-secret")

import asyncio
import hashlib
import hmac
import inspect
import json
from typing import Any, Awaitable, Callable, Optional, Union

import aiohttp
from loguru import logger

from graph_media_client.errors import (
    ApiError,
    DecodeFailure,
    GraphClientError,
    OperationCancelled,
    TransportFailure,
)
from graph_media_client.models import AttemptRecord

Operation = Callable[[], Awaitable[Union[str, bytes]]]
Observer = Callable[[AttemptRecord], Any]

TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)


def sign(base: str, key: str) -> str:
    """HMAC-SHA256 of ``base`` keyed with ``key``, lowercase hex"""
    return hmac.new(key.encode(), base.encode(), hashlib.sha256).hexdigest()


def log_attempt(record: AttemptRecord) -> None:
    """Default observer, writes every attempt record to the debug log"""
    if record.result is None:
        logger.debug(f"Sending request to {record.target} (attempt {record.attempt})")
    else:
        logger.debug(f"Request to {record.target} succeeded on attempt {record.attempt}")


async def notify(observe: Optional[Observer], record: AttemptRecord) -> None:
    if observe is None:
        return
    outcome = observe(record)
    if inspect.isawaitable(outcome):
        await outcome


async def wait_or_cancel(delay: float, cancel_event: Optional[asyncio.Event]) -> None:
    """Sleep for ``delay`` seconds, aborting early if ``cancel_event`` is set"""
    if cancel_event is None:
        await asyncio.sleep(delay)
        return
    if cancel_event.is_set():
        raise OperationCancelled()
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise OperationCancelled()


def decode(body: Any) -> Any:
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8")
    return json.loads(body)


def has_error(document: Any) -> bool:
    return isinstance(document, dict) and isinstance(document.get("error"), dict)


async def execute_retry(
    max_attempts: int,
    make_operation: Operation,
    observe: Optional[Observer],
    record: AttemptRecord,
    *,
    retry_delay: float = 0.0,
    cancel_event: Optional[asyncio.Event] = None,
) -> Any:
    """Run one logical request, retrying transport and decode failures.

    ``make_operation`` is called once per attempt so that every attempt gets a
    fresh request body. At least one attempt is always made; ``max_attempts``
    of zero means "no extra retries". An ``error`` object in the response is
    raised as :class:`ApiError` straight away since the server rejected the
    request itself.
    """
    attempt = 0
    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled()

        await notify(observe, record.model_copy(update={"attempt": attempt}))

        pending: GraphClientError
        try:
            body = await make_operation()
        except TRANSPORT_ERRORS as e:
            logger.debug(f"Transport failure on {record.target}: {e!r}")
            pending = TransportFailure(f"request to {record.target} failed: {e!r}")
            pending.__cause__ = e
        else:
            try:
                document = decode(body)
            except ValueError as e:
                logger.debug(f"Undecodable body from {record.target}: {e}")
                pending = DecodeFailure(
                    f"invalid json from {record.target}: {e}", body
                )
                pending.__cause__ = e
            else:
                if has_error(document):
                    logger.error(f"Graph API error at {record.target}: {document['error']}")
                    raise ApiError(document)
                await notify(
                    observe,
                    record.model_copy(update={"attempt": attempt, "result": document}),
                )
                return document

        attempt += 1
        if attempt >= max_attempts:
            raise pending
        if retry_delay > 0:
            await wait_or_cancel(retry_delay, cancel_event)

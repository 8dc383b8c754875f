import asyncio
from typing import Any, Mapping, Optional, Sequence

from loguru import logger

from graph_media_client.errors import PollTerminalFailure, PollTimeout, UnexpectedShape
from graph_media_client.executor import (
    Observer,
    Operation,
    execute_retry,
    wait_or_cancel,
)
from graph_media_client.models import AttemptRecord, Phase, StatusBucket

IG_CONTAINER_STATUS = {
    "FINISHED": StatusBucket.success,
    "IN_PROGRESS": StatusBucket.transient,
}

VIDEO_STATUS = {
    "ready": StatusBucket.success,
    "processing": StatusBucket.transient,
}


def extract_path(document: Any, path: Sequence[str]) -> Any:
    """Walk nested dicts along ``path``, returning None when any key is absent"""
    node = document
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def classify(token: str, classification: Mapping[str, StatusBucket]) -> StatusBucket:
    # Unknown tokens fail instead of spinning forever on contract drift
    return classification.get(token, StatusBucket.failure)


async def _pause(interval: float, cancel_event: Optional[asyncio.Event]) -> None:
    await wait_or_cancel(interval, cancel_event)


async def poll_until_terminal(
    make_operation: Operation,
    record: AttemptRecord,
    phase: Phase,
    retry_count: int,
    observe: Optional[Observer],
    *,
    cancel_event: Optional[asyncio.Event] = None,
) -> dict:
    """Poll a status document until ``phase`` reaches a terminal status.

    Returns the document that carried the success token. Raises
    :class:`PollTerminalFailure` on a failure or unknown token,
    :class:`UnexpectedShape` when the status field is missing and
    :class:`PollTimeout` once ``phase.max_iterations`` polls stayed transient.
    """
    document = None
    for iteration in range(phase.max_iterations):
        document = await execute_retry(
            retry_count, make_operation, observe, record, cancel_event=cancel_event
        )
        token = extract_path(document, phase.field_path)
        bucket = (
            classify(token, phase.classification) if isinstance(token, str) else None
        )

        if phase.error_path is not None and (
            bucket is None or bucket in phase.check_error_on
        ):
            if isinstance(extract_path(document, phase.error_path), dict):
                logger.error(f"{phase.name} reported an error: {document}")
                raise PollTerminalFailure(phase.name, document)

        if bucket is None:
            raise UnexpectedShape(document, f"{phase.name} has no status")
        if bucket == StatusBucket.success:
            logger.debug(f"{phase.name} complete after {iteration + 1} polls")
            return document
        if bucket == StatusBucket.failure:
            logger.error(f"{phase.name} failed with status {token!r}")
            raise PollTerminalFailure(phase.name, document)

        logger.debug(f"{phase.name} still {token}, waiting {phase.interval:.2f}s")
        await _pause(phase.interval, cancel_event)

    raise PollTimeout(phase.name, document)

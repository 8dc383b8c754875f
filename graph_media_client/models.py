from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

GRAPH_URL = "https://graph.facebook.com/"
VIDEO_URL = "https://graph-video.facebook.com/"


class StatusBucket(str, Enum):
    success = "success"
    transient = "transient"
    failure = "failure"


class AttemptRecord(BaseModel):
    """One observable event of the request executor.

    Emitted before every attempt with ``result`` unset, and once more with the
    decoded document after a successful attempt.
    """

    model_config = ConfigDict(frozen=True)

    target: str
    params: list[tuple[str, str]] = Field(default_factory=list)
    attempt: int = 0
    result: Optional[Any] = None


class PollConfig(BaseModel):
    max_iterations: int = 60
    interval: float = 2.0
    retry_count: int = 0


class Phase(BaseModel):
    """Poll configuration of one stage of a multi step upload"""

    model_config = ConfigDict(frozen=True)

    name: str
    field_path: tuple[str, ...]
    classification: dict[str, StatusBucket]
    interval: float = 2.0
    max_iterations: int = 60
    # Nested error object that fails the phase while status is in check_error_on
    error_path: Optional[tuple[str, ...]] = None
    check_error_on: frozenset[StatusBucket] = frozenset(
        {StatusBucket.transient, StatusBucket.failure}
    )

    def with_poll(self, poll: Optional[PollConfig]) -> "Phase":
        if poll is None:
            return self
        return self.model_copy(
            update={"interval": poll.interval, "max_iterations": poll.max_iterations}
        )


class ReelUploadConfig(BaseModel):
    retry_count: int = 0
    poll_retry_count: int = 0
    uploading_interval: float = 1.0
    copyright_interval: float = 2.0
    processing_interval: float = 2.0
    publishing_interval: float = 2.0
    max_iterations: int = 300
    deadline: Optional[float] = None  # seconds for the whole upload


class ClientConfig(BaseModel):
    version: str = "v19.0"
    graph_url: str = GRAPH_URL
    video_url: str = VIDEO_URL
    timeout: float = 30.0
    upload_timeout: float = 600.0
    retry_count: int = 3
    rate_limit_emulation: bool = False


class UploadSession(BaseModel):
    upload_url: str
    video_id: str

import asyncio
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from loguru import logger

from graph_media_client.errors import CopyrightViolation, PollTimeout, UnexpectedShape
from graph_media_client.models import (
    Phase,
    ReelUploadConfig,
    StatusBucket,
    UploadSession,
)
from graph_media_client.polling import extract_path

if TYPE_CHECKING:
    from graph_media_client.graph_media_client import GraphMediaClient

UPLOAD_STATUS = {
    "complete": StatusBucket.success,
    "in_progress": StatusBucket.transient,
    "error": StatusBucket.failure,
    "failed": StatusBucket.failure,
}

PUBLISH_STATUS = {**UPLOAD_STATUS, "not_started": StatusBucket.transient}


class UploadState(str, Enum):
    start = "start"
    upload = "upload"
    uploading_phase = "uploading_phase"
    copyright_phase = "copyright_phase"
    thumbnail = "thumbnail"
    finish = "finish"
    processing_phase = "processing_phase"
    publishing_phase = "publishing_phase"
    done = "done"


_ORDER = list(UploadState)


def next_state(state: UploadState, has_thumbnail: bool) -> UploadState:
    """State that follows ``state`` once it completed successfully"""
    if state == UploadState.done:
        raise ValueError("upload already finished")
    following = _ORDER[_ORDER.index(state) + 1]
    if following == UploadState.thumbnail and not has_thumbnail:
        return UploadState.finish
    return following


def reel_phases(config: ReelUploadConfig) -> dict[UploadState, Phase]:
    return {
        UploadState.uploading_phase: Phase(
            name="uploading_phase",
            field_path=("status", "uploading_phase", "status"),
            classification=UPLOAD_STATUS,
            interval=config.uploading_interval,
            max_iterations=config.max_iterations,
            error_path=("status", "uploading_phase", "error"),
        ),
        UploadState.copyright_phase: Phase(
            name="copyright_check_status",
            field_path=("status", "copyright_check_status", "status"),
            classification=UPLOAD_STATUS,
            interval=config.copyright_interval,
            max_iterations=config.max_iterations,
        ),
        UploadState.processing_phase: Phase(
            name="processing_phase",
            field_path=("status", "processing_phase", "status"),
            classification=PUBLISH_STATUS,
            interval=config.processing_interval,
            max_iterations=config.max_iterations,
            error_path=("status", "processing_phase", "error"),
        ),
        UploadState.publishing_phase: Phase(
            name="publishing_phase",
            field_path=("status", "publishing_phase", "status"),
            classification=PUBLISH_STATUS,
            interval=config.publishing_interval,
            max_iterations=config.max_iterations,
        ),
    }


class ReelUploadMachine:
    """Drives one reel through upload, checks and publishing.

    Every state must succeed before the next one starts; the first error
    aborts the run and is raised unchanged. Nothing is rolled back on the
    platform side.
    """

    def __init__(
        self,
        client: "GraphMediaClient",
        access_token: str,
        page_id: str,
        description: str,
        *,
        file_url: Optional[str] = None,
        data: Optional[bytes] = None,
        thumbnail: Optional[bytes] = None,
        config: Optional[ReelUploadConfig] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        if (file_url is None) == (data is None):
            raise ValueError("exactly one of file_url or data is required")
        self.client = client
        self.access_token = access_token
        self.page_id = page_id
        self.description = description
        self.file_url = file_url
        self.data = data
        self.thumbnail = thumbnail
        self.config = config or ReelUploadConfig()
        self.cancel_event = cancel_event
        self.logger = logger

        self.state = UploadState.start
        self.session: Optional[UploadSession] = None
        self.finish_response: Optional[dict] = None
        self.phases = reel_phases(self.config)
        self._handlers = {
            UploadState.start: self._start,
            UploadState.upload: self._upload,
            UploadState.uploading_phase: self._check_phase,
            UploadState.copyright_phase: self._check_copyright,
            UploadState.thumbnail: self._post_thumbnail,
            UploadState.finish: self._finish,
            UploadState.processing_phase: self._check_phase,
            UploadState.publishing_phase: self._check_phase,
        }

    @property
    def video_id(self) -> str:
        if self.session is None:
            raise RuntimeError("upload session has not been started")
        return self.session.video_id

    async def run(self) -> dict:
        """Run every remaining state and return the publish response"""
        loop = asyncio.get_event_loop()
        deadline = None
        if self.config.deadline is not None:
            deadline = loop.time() + self.config.deadline

        while self.state != UploadState.done:
            if deadline is not None and loop.time() >= deadline:
                raise PollTimeout(self.state.value)
            await self.run_step(self.state)
            self.state = next_state(self.state, self.thumbnail is not None)

        self.logger.info(f"Reel {self.video_id} published as {self.finish_response['post_id']}")
        return self.finish_response

    async def run_step(self, state: UploadState) -> None:
        self.logger.info(f"Reel upload entering {state.value}")
        await self._handlers[state](state)

    def _reels_path(self) -> str:
        return self.client.make_path(f"{self.page_id}/video_reels")

    async def _start(self, state: UploadState) -> None:
        params = [("access_token", self.access_token), ("upload_phase", "start")]
        response = await self.client.request(
            "POST",
            self._reels_path(),
            params,
            retry_count=self.config.retry_count,
            upload=True,
            cancel_event=self.cancel_event,
        )
        upload_url = extract_path(response, ("upload_url",))
        video_id = extract_path(response, ("video_id",))
        if not isinstance(upload_url, str) or not isinstance(video_id, str):
            raise UnexpectedShape(response, "upload session is missing upload_url or video_id")
        self.session = UploadSession(upload_url=upload_url, video_id=video_id)

    async def _upload(self, state: UploadState) -> None:
        headers = {"Authorization": f"OAuth {self.access_token}"}
        if self.file_url is not None:
            headers["file_url"] = self.file_url
            record_params = [("file_url", self.file_url)]
        else:
            headers["offset"] = "0"
            headers["file_size"] = str(len(self.data))
            record_params = [("file_size", headers["file_size"])]

        response = await self.client.request(
            "POST",
            self.session.upload_url,
            record_params=record_params,
            retry_count=self.config.retry_count,
            headers=headers,
            body=self.data,
            upload=True,
            cancel_event=self.cancel_event,
        )
        if extract_path(response, ("success",)) is not True:
            raise UnexpectedShape(response, "reel upload was not accepted")

    async def _poll(self, state: UploadState) -> dict:
        return await self.client.poll(
            self.client.make_path(self.video_id),
            [("fields", "status"), ("access_token", self.access_token)],
            self.phases[state],
            retry_count=self.config.poll_retry_count,
            cancel_event=self.cancel_event,
        )

    async def _check_phase(self, state: UploadState) -> None:
        await self._poll(state)

    async def _check_copyright(self, state: UploadState) -> None:
        document = await self._poll(state)
        matches = extract_path(document, ("status", "copyright_check_status", "matches_found"))
        if matches is True:
            self.logger.error(f"Copyright matches found for video {self.video_id}")
            raise CopyrightViolation(document)

    async def _post_thumbnail(self, state: UploadState) -> None:
        await self.client.post_video_thumbnail(
            self.access_token,
            self.video_id,
            self.thumbnail,
            retry_count=self.config.retry_count,
            cancel_event=self.cancel_event,
        )

    async def _finish(self, state: UploadState) -> None:
        params = [
            ("access_token", self.access_token),
            ("video_id", self.video_id),
            ("upload_phase", "finish"),
            ("video_state", "PUBLISHED"),
            ("description", self.description),
        ]
        response: Any = await self.client.request(
            "POST",
            self._reels_path(),
            params,
            retry_count=self.config.retry_count,
            upload=True,
            cancel_event=self.cancel_event,
        )
        if extract_path(response, ("success",)) is not True:
            raise UnexpectedShape(response, "reel publish was not accepted")
        if not isinstance(extract_path(response, ("post_id",)), str):
            raise UnexpectedShape(response, "reel publish returned no post_id")
        self.finish_response = response

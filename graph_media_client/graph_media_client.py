import asyncio
from typing import Any, Callable, Optional, Sequence

import aiohttp
from loguru import logger

from graph_media_client.batch import (
    BatchRequest,
    rate_limited_batch_response,
    shape_batch_response,
)
from graph_media_client.errors import ApiError, UnexpectedShape, rate_limit_document
from graph_media_client.executor import (
    Observer,
    Operation,
    execute_retry,
    log_attempt,
    notify,
    sign,
)
from graph_media_client.models import (
    AttemptRecord,
    ClientConfig,
    Phase,
    PollConfig,
    ReelUploadConfig,
)
from graph_media_client.polling import (
    IG_CONTAINER_STATUS,
    VIDEO_STATUS,
    extract_path,
    poll_until_terminal,
)
from graph_media_client.reel_upload import ReelUploadMachine

Params = Sequence[tuple[str, str]]

IG_CHECK_FIELDS = "status,status_code"


class GraphMediaClient:
    """Async client for the Graph publishing endpoints.

    Calls share two ``aiohttp`` sessions: a regular one and a long timeout one
    for media uploads. Both can be injected, otherwise they are created on
    first use and closed by :meth:`close` or by leaving ``async with``.
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        observe: Optional[Observer] = log_attempt,
        session: Optional[aiohttp.ClientSession] = None,
        upload_session: Optional[aiohttp.ClientSession] = None,
    ):
        self.config = config or ClientConfig()
        self.observe = observe
        self.logger = logger
        self.session = session
        self.upload_session = upload_session
        self._owned: list[aiohttp.ClientSession] = []

    async def __aenter__(self) -> "GraphMediaClient":
        self._ensure_sessions()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _ensure_sessions(self) -> None:
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout)
            )
            self._owned.append(self.session)
        if self.upload_session is None:
            self.upload_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.upload_timeout)
            )
            self._owned.append(self.upload_session)

    async def close(self) -> None:
        for session in self._owned:
            await session.close()
        if self.session in self._owned:
            self.session = None
        if self.upload_session in self._owned:
            self.upload_session = None
        self._owned = []

    def make_path(self, postfix: str) -> str:
        return f"{self.config.graph_url}{self.config.version}/{postfix}"

    def make_video_path(self, postfix: str) -> str:
        return f"{self.config.video_url}{self.config.version}/{postfix}"

    def _retries(self, retry_count: Optional[int]) -> int:
        return self.config.retry_count if retry_count is None else retry_count

    def operation(
        self,
        method: str,
        url: str,
        params: Params = (),
        *,
        headers: Optional[dict[str, str]] = None,
        body: Optional[bytes] = None,
        form: Optional[Callable[[], aiohttp.FormData]] = None,
        upload: bool = False,
    ) -> Operation:
        """Build the per attempt request factory for one call.

        GET and DELETE send ``params`` in the query string, everything else
        form-encodes them unless a raw ``body`` or a multipart ``form`` is
        given. Forms are rebuilt on every attempt since aiohttp consumes them.
        """
        self._ensure_sessions()
        session = self.upload_session if upload else self.session
        in_query = method in ("GET", "DELETE") or body is not None
        query = list(params) if in_query and params else None

        async def send() -> bytes:
            if form is not None:
                data: Any = form()
            elif body is not None:
                data = body
            elif not in_query and params:
                data = aiohttp.FormData(list(params))
            else:
                data = None
            async with session.request(
                method, url, params=query, data=data, headers=headers
            ) as response:
                return await response.read()

        return send

    async def request(
        self,
        method: str,
        url: str,
        params: Params = (),
        *,
        record_params: Optional[Params] = None,
        retry_count: Optional[int] = None,
        headers: Optional[dict[str, str]] = None,
        body: Optional[bytes] = None,
        form: Optional[Callable[[], aiohttp.FormData]] = None,
        upload: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Any:
        make_operation = self.operation(
            method,
            url,
            params,
            headers=headers,
            body=body,
            form=form,
            upload=upload,
        )
        return await execute_retry(
            self._retries(retry_count),
            make_operation,
            self.observe,
            AttemptRecord(
                target=url,
                params=list(params if record_params is None else record_params),
            ),
            cancel_event=cancel_event,
        )

    async def poll(
        self,
        url: str,
        params: Params,
        phase: Phase,
        *,
        retry_count: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> dict:
        self.logger.debug(f"Polling {phase.name} at {url}")
        return await poll_until_terminal(
            self.operation("GET", url, params),
            AttemptRecord(target=url, params=list(params)),
            phase,
            self._retries(retry_count),
            self.observe,
            cancel_event=cancel_event,
        )

    async def _emulate_rate_limit(self, url: str, params: Params) -> None:
        await notify(self.observe, AttemptRecord(target=url, params=list(params)))
        self.logger.debug(f"Rate limit emulation rejected {url}")

    # Objects

    async def get_object(
        self,
        access_token: str,
        object_id: str,
        fields: str,
        params: Params = (),
        app_secret: Optional[str] = None,
        retry_count: Optional[int] = None,
    ) -> Any:
        query = [("access_token", access_token), ("fields", fields), *params]
        if app_secret is not None:
            query.append(("appsecret_proof", sign(access_token, app_secret)))
        url = self.make_path(object_id)
        if self.config.rate_limit_emulation:
            await self._emulate_rate_limit(url, query)
            raise ApiError(rate_limit_document())
        return await self.request("GET", url, query, retry_count=retry_count)

    async def delete_object(
        self,
        access_token: str,
        object_id: str,
        params: Params = (),
        retry_count: Optional[int] = None,
    ) -> Any:
        query = [("access_token", access_token), *params]
        return await self.request(
            "DELETE", self.make_path(object_id), query, retry_count=retry_count
        )

    async def post_object(
        self,
        access_token: str,
        object_id: str,
        params: Params = (),
        retry_count: Optional[int] = None,
    ) -> Any:
        form = [("access_token", access_token), *params]
        return await self.request(
            "POST", self.make_path(object_id), form, retry_count=retry_count
        )

    async def post_feed(self, page_id: str, params: Params) -> Any:
        return await self.request(
            "POST", self.make_path(f"{page_id}/feed"), params, retry_count=0
        )

    async def create_album(
        self,
        access_token: str,
        page_id: str,
        name: str,
        message: str,
        retry_count: Optional[int] = None,
    ) -> Any:
        url = self.make_path(f"{page_id}/albums")
        form = [("access_token", access_token), ("name", name), ("message", message)]
        if self.config.rate_limit_emulation:
            await self._emulate_rate_limit(url, form)
            raise ApiError(rate_limit_document())
        return await self.request("POST", url, form, retry_count=retry_count)

    # Pictures

    async def _post_multipart(
        self,
        url: str,
        fields: Params,
        filename: str,
        data: bytes,
        record_params: Params,
        retry_count: Optional[int] = 0,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Any:
        def form() -> aiohttp.FormData:
            payload = aiohttp.FormData()
            for key, value in fields:
                payload.add_field(key, value)
            payload.add_field(
                "source",
                data,
                filename=filename,
                content_type="application/octet-stream",
            )
            return payload

        return await self.request(
            "POST",
            url,
            record_params=record_params,
            retry_count=retry_count,
            form=form,
            upload=True,
            cancel_event=cancel_event,
        )

    async def post_picture(
        self,
        access_token: str,
        page_id: str,
        filename: str,
        data: bytes,
        caption: str,
    ) -> Any:
        fields = [
            ("access_token", access_token),
            ("caption", caption),
            ("published", "false"),
        ]
        return await self._post_multipart(
            self.make_path(f"{page_id}/photos"),
            fields,
            filename,
            data,
            [*fields, ("file_path", filename)],
        )

    async def post_album_photo(
        self,
        access_token: str,
        album_id: str,
        filename: str,
        data: bytes,
        message: str,
    ) -> Any:
        fields = [
            ("access_token", access_token),
            ("message", message),
            ("published", "true"),
        ]
        return await self._post_multipart(
            self.make_path(f"{album_id}/photos"),
            fields,
            filename,
            data,
            [*fields, ("file_path", filename)],
        )

    async def post_video_thumbnail(
        self,
        access_token: str,
        video_id: str,
        data: bytes,
        retry_count: Optional[int] = 0,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Any:
        fields = [("access_token", access_token), ("is_preferred", "true")]
        return await self._post_multipart(
            self.make_path(f"{video_id}/thumbnails"),
            fields,
            "thumbnail",
            data,
            [("access_token", access_token), ("video_id", video_id)],
            retry_count=retry_count,
            cancel_event=cancel_event,
        )

    # Videos

    async def post_video(
        self,
        access_token: str,
        page_id: str,
        file_url: str,
        description: str,
        thumbnail: Optional[bytes] = None,
        via_videos_tab: bool = False,
        poll: Optional[PollConfig] = None,
        retry_count: Optional[int] = None,
    ) -> Any:
        """Upload a hosted video, wait for encoding and publish it to the feed.

        ``via_videos_tab`` publishes to the Videos tab first, for pages where a
        direct news feed publish is refused.
        """
        poll = poll or PollConfig()
        form = [
            ("access_token", access_token),
            ("description", description),
            ("file_url", file_url),
            ("published", "true"),
            ("secret", "true"),
        ]
        response = await self.request(
            "POST",
            self.make_video_path(f"{page_id}/videos"),
            form,
            retry_count=0,
            upload=True,
        )
        video_id = _require_id(response)

        phase = Phase(
            name="video_status",
            field_path=("status", "video_status"),
            classification=VIDEO_STATUS,
        ).with_poll(poll)
        await self.poll(
            self.make_path(video_id),
            [("fields", "status"), ("access_token", access_token)],
            phase,
            retry_count=poll.retry_count,
        )

        if thumbnail is not None:
            await self.post_video_thumbnail(access_token, video_id, thumbnail)

        url = self.make_path(video_id)
        if via_videos_tab:
            await self.request(
                "POST",
                url,
                [
                    ("access_token", access_token),
                    ("publish_to_videos_tab", "true"),
                    ("fields", "id"),
                ],
                retry_count=retry_count,
            )
        return await self.request(
            "POST",
            url,
            [
                ("access_token", access_token),
                ("publish_to_news_feed", "true"),
                ("fields", "id"),
            ],
            retry_count=retry_count,
        )

    async def post_video_reel(
        self,
        access_token: str,
        page_id: str,
        description: str,
        file_url: Optional[str] = None,
        data: Optional[bytes] = None,
        thumbnail: Optional[bytes] = None,
        upload: Optional[ReelUploadConfig] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> dict:
        machine = ReelUploadMachine(
            self,
            access_token,
            page_id,
            description,
            file_url=file_url,
            data=data,
            thumbnail=thumbnail,
            config=upload,
            cancel_event=cancel_event,
        )
        return await machine.run()

    # Instagram

    async def _create_ig_container(
        self,
        access_token: str,
        account_id: str,
        params: Params,
        retry_count: Optional[int],
    ) -> str:
        response = await self.request(
            "POST",
            self.make_path(f"{account_id}/media"),
            [("access_token", access_token), *params],
            retry_count=retry_count,
        )
        return _require_id(response)

    async def check_ig_media(
        self,
        access_token: str,
        creation_id: str,
        poll: Optional[PollConfig] = None,
        fields: str = IG_CHECK_FIELDS,
    ) -> dict:
        poll = poll or PollConfig()
        phase = Phase(
            name="status_code",
            field_path=("status_code",),
            classification=IG_CONTAINER_STATUS,
        ).with_poll(poll)
        return await self.poll(
            self.make_path(creation_id),
            [("fields", fields), ("access_token", access_token)],
            phase,
            retry_count=poll.retry_count,
        )

    async def post_ig_media_publish(
        self,
        access_token: str,
        account_id: str,
        creation_id: str,
        retry_count: Optional[int] = None,
    ) -> Any:
        return await self.request(
            "POST",
            self.make_path(f"{account_id}/media_publish"),
            [("access_token", access_token), ("creation_id", creation_id)],
            retry_count=retry_count,
        )

    async def _post_ig_checked(
        self,
        access_token: str,
        account_id: str,
        params: Params,
        poll: Optional[PollConfig],
        retry_count: Optional[int],
        fields: str = IG_CHECK_FIELDS,
    ) -> Any:
        creation_id = await self._create_ig_container(
            access_token, account_id, params, retry_count
        )
        await self.check_ig_media(access_token, creation_id, poll, fields)
        return await self.post_ig_media_publish(
            access_token, account_id, creation_id, retry_count
        )

    async def post_ig_picture(
        self,
        access_token: str,
        account_id: str,
        image_url: str,
        caption: str,
        retry_count: Optional[int] = None,
    ) -> Any:
        creation_id = await self._create_ig_container(
            access_token,
            account_id,
            [("image_url", image_url), ("caption", caption)],
            retry_count,
        )
        return await self.post_ig_media_publish(
            access_token, account_id, creation_id, retry_count
        )

    async def post_ig_video(
        self,
        access_token: str,
        account_id: str,
        video_url: str,
        caption: str,
        poll: Optional[PollConfig] = None,
        retry_count: Optional[int] = None,
    ) -> Any:
        return await self._post_ig_checked(
            access_token,
            account_id,
            [("media_type", "VIDEO"), ("video_url", video_url), ("caption", caption)],
            poll,
            retry_count,
            fields="status_code",
        )

    async def post_ig_reel(
        self,
        access_token: str,
        account_id: str,
        video_url: str,
        caption: str,
        cover_url: Optional[str] = None,
        share_to_feed: bool = True,
        poll: Optional[PollConfig] = None,
        retry_count: Optional[int] = None,
    ) -> Any:
        params = [
            ("media_type", "REELS"),
            ("video_url", video_url),
            ("caption", caption),
            ("share_to_feed", "true" if share_to_feed else "false"),
        ]
        if cover_url is not None:
            params.append(("cover_url", cover_url))
        return await self._post_ig_checked(
            access_token, account_id, params, poll, retry_count
        )

    async def post_ig_carousel(
        self,
        access_token: str,
        account_id: str,
        caption: str,
        children: Sequence[str],
        poll: Optional[PollConfig] = None,
        retry_count: Optional[int] = None,
    ) -> Any:
        params = [
            ("media_type", "CAROUSEL"),
            ("children", ",".join(children)),
            ("caption", caption),
        ]
        return await self._post_ig_checked(
            access_token, account_id, params, poll, retry_count, fields="status_code"
        )

    async def upload_ig_picture_stories(
        self,
        access_token: str,
        account_id: str,
        image_url: str,
        poll: Optional[PollConfig] = None,
        retry_count: Optional[int] = None,
    ) -> str:
        """Create and check a picture story container without publishing it.

        Returns the creation id for a later :meth:`post_ig_media_publish`.
        """
        creation_id = await self._create_ig_container(
            access_token,
            account_id,
            [("media_type", "STORIES"), ("image_url", image_url)],
            retry_count,
        )
        await self.check_ig_media(access_token, creation_id, poll)
        return creation_id

    async def post_ig_picture_stories(
        self,
        access_token: str,
        account_id: str,
        image_url: str,
        poll: Optional[PollConfig] = None,
        retry_count: Optional[int] = None,
    ) -> Any:
        creation_id = await self.upload_ig_picture_stories(
            access_token, account_id, image_url, poll, retry_count
        )
        return await self.post_ig_media_publish(
            access_token, account_id, creation_id, retry_count
        )

    async def post_ig_video_stories(
        self,
        access_token: str,
        account_id: str,
        video_url: str,
        poll: Optional[PollConfig] = None,
        retry_count: Optional[int] = None,
    ) -> Any:
        return await self._post_ig_checked(
            access_token,
            account_id,
            [("media_type", "STORIES"), ("video_url", video_url)],
            poll,
            retry_count,
        )

    # Batch

    async def post_batch(
        self,
        access_token: str,
        batch: BatchRequest,
        app_secret: Optional[str] = None,
        retry_count: Optional[int] = None,
    ) -> list[Any]:
        form = [
            ("access_token", access_token),
            ("include_headers", "false"),
            ("batch", batch.to_json()),
        ]
        if app_secret is not None:
            form.append(("appsecret_proof", sign(access_token, app_secret)))
        url = self.make_path("")
        if self.config.rate_limit_emulation:
            await self._emulate_rate_limit(url, form)
            return shape_batch_response(rate_limited_batch_response(batch.batch_count))
        response = await self.request("POST", url, form, retry_count=retry_count)
        return shape_batch_response(response)


def _require_id(response: Any) -> str:
    object_id = extract_path(response, ("id",))
    if not isinstance(object_id, str):
        raise UnexpectedShape(response, "response has no id")
    return object_id

import itertools
import json
from typing import Optional

from aiohttp import web
from loguru import logger

REEL_PHASES = [
    "uploading_phase",
    "copyright_check_status",
    "processing_phase",
    "publishing_phase",
]

DEFAULT_SCRIPTS = {
    "uploading_phase": ["in_progress", "complete"],
    "copyright_check_status": ["complete"],
    "processing_phase": ["not_started", "complete"],
    "publishing_phase": ["complete"],
    "video_status": ["processing", "ready"],
    "status_code": ["IN_PROGRESS", "FINISHED"],
}

EXPIRED_TOKEN = "expired"


class GraphServer:
    """Scripted stand-in for the Graph API.

    Status polls walk through ``scripts``; each poll serves the next token of
    the phase currently in progress and the last token repeats once the
    script runs out.
    """

    def __init__(
        self,
        version: str = "v19.0",
        scripts: Optional[dict[str, list[str]]] = None,
        copyright_matches: bool = False,
        fail_next: int = 0,
        garble_next: int = 0,
    ):
        self.version = version
        self.scripts = {**DEFAULT_SCRIPTS, **(scripts or {})}
        self.copyright_matches = copyright_matches
        self.fail_next = fail_next
        self.garble_next = garble_next
        self.phase_errors: set[str] = set()
        self.base_url = None
        self.runner = None
        self.requests: list[tuple] = []
        self.uploads: list[bytes] = []
        self.objects: dict[str, str] = {}
        self.served: dict[str, dict[str, int]] = {}
        self.phase_index: dict[str, int] = {}
        self._ids = itertools.count(1000)
        self.app = web.Application()
        self.app.router.add_post("/upload/{video_id}", self.handle_upload)
        self.app.router.add_route("*", "/{version}/{path:.*}", self.handle_graph)
        self.logger = logger

    def _new_object(self, kind: str) -> str:
        object_id = str(next(self._ids))
        self.objects[object_id] = kind
        self.served[object_id] = {}
        self.phase_index[object_id] = 0
        return object_id

    def _next_token(self, object_id: str, phase: str) -> str:
        script = self.scripts[phase]
        count = self.served[object_id].get(phase, 0)
        self.served[object_id][phase] = count + 1
        return script[min(count, len(script) - 1)]

    def _reel_status(self, object_id: str) -> dict:
        index = self.phase_index[object_id]
        status = {}
        for position, phase in enumerate(REEL_PHASES):
            if position < index:
                status[phase] = {"status": "complete"}
            elif position == index:
                token = self._next_token(object_id, phase)
                status[phase] = {"status": token}
                if token in ("error", "failed") or phase in self.phase_errors:
                    status[phase]["error"] = {"message": f"{phase} broke"}
                if token == "complete":
                    self.phase_index[object_id] = index + 1
            else:
                status[phase] = {"status": "not_started"}
        if index > 0:
            status["copyright_check_status"]["matches_found"] = self.copyright_matches
        return {"id": object_id, "status": status}

    @staticmethod
    def _error(code: int, message: str, status: int = 400) -> web.Response:
        body = {"error": {"message": message, "type": "OAuthException", "code": code}}
        return web.json_response(body, status=status)

    async def _params(self, request: web.Request) -> dict:
        params = dict(request.query)
        if request.method in ("POST", "PUT"):
            form = await request.post()
            for key, value in form.items():
                params[key] = value.filename if isinstance(value, web.FileField) else value
        return params

    async def handle_upload(self, request: web.Request) -> web.Response:
        video_id = request.match_info["video_id"]
        body = await request.read()
        self.requests.append(("POST", request.path, request.headers.copy()))
        self.uploads.append(body)
        authorized = request.headers.get("Authorization", "").startswith("OAuth ")
        has_source = "file_url" in request.headers or len(body) > 0
        if not authorized or not has_source or video_id not in self.objects:
            self.logger.info(f"Rejecting upload for {video_id}")
            return web.json_response({"success": False})
        self.logger.info(f"Accepted upload for {video_id}")
        return web.json_response({"success": True})

    async def handle_graph(self, request: web.Request) -> web.Response:
        params = await self._params(request)
        path = request.match_info["path"].strip("/")
        self.requests.append((request.method, path, params))

        if self.fail_next > 0:
            self.fail_next -= 1
            self.logger.info("Returning gateway error page")
            return web.Response(text="<html>bad gateway</html>", status=502)

        if self.garble_next > 0:
            self.garble_next -= 1
            self.logger.info("Returning a body that is not utf-8")
            return web.Response(body=b"\xff\xfe{bad", content_type="application/json")

        if params.get("access_token") == EXPIRED_TOKEN:
            return self._error(190, "Error validating access token")

        parts = path.split("/") if path else []
        if request.method == "POST" and not parts:
            return self._batch(params)
        if len(parts) == 2:
            return self._edge(request.method, parts[0], parts[1], params)
        if len(parts) == 1:
            return self._node(request.method, parts[0], params)
        return self._error(100, f"Unknown path {path}")

    def _batch(self, params: dict) -> web.Response:
        responses = []
        for item in json.loads(params["batch"]):
            relative_url = item["relative_url"]
            if relative_url.startswith("error"):
                body = {"error": {"message": "Unsupported get request", "code": 100}}
                responses.append({"code": 400, "body": json.dumps(body)})
            elif item.get("omit_response_on_success"):
                responses.append(None)
            else:
                body = {"id": relative_url.split("?")[0], "method": item["method"]}
                responses.append({"code": 200, "body": json.dumps(body)})
        return web.json_response(responses)

    def _edge(self, method: str, node: str, edge: str, params: dict) -> web.Response:
        if method != "POST":
            return self._error(100, f"Unsupported {method} on {edge}")

        if edge == "video_reels":
            if params.get("upload_phase") == "start":
                video_id = self._new_object("reel")
                self.logger.info(f"Started reel upload session {video_id}")
                return web.json_response(
                    {"video_id": video_id, "upload_url": f"{self.base_url}/upload/{video_id}"}
                )
            video_id = params.get("video_id", "")
            if self.objects.get(video_id) != "reel":
                return self._error(100, f"Unknown video {video_id}")
            return web.json_response({"success": True, "post_id": f"{node}_{video_id}"})

        if edge == "videos":
            return web.json_response({"id": self._new_object("video")})
        if edge == "media":
            return web.json_response({"id": self._new_object("container")})
        if edge == "media_publish":
            return web.json_response({"id": f"{node}_{params.get('creation_id')}"})
        if edge == "thumbnails":
            return web.json_response({"success": True})
        if edge in ("photos", "albums", "feed"):
            object_id = self._new_object(edge)
            return web.json_response({"id": object_id, "post_id": f"{node}_{object_id}"})
        return self._error(100, f"Unknown edge {edge}")

    def _node(self, method: str, node: str, params: dict) -> web.Response:
        if method == "DELETE":
            return web.json_response({"success": True})
        if method == "POST":
            return web.json_response({"success": True, "id": node})

        kind = self.objects.get(node)
        if kind == "reel":
            return web.json_response(self._reel_status(node))
        if kind == "video":
            token = self._next_token(node, "video_status")
            return web.json_response({"id": node, "status": {"video_status": token}})
        if kind == "container":
            token = self._next_token(node, "status_code")
            return web.json_response({"id": node, "status_code": token})
        return web.json_response({"id": node, "fields": params.get("fields", "")})

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.base_url = f"http://localhost:{port}"
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None

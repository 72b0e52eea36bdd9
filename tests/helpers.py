import asyncio
import json

import httpx

BASE_URL = "https://api.example.com"
UPLOAD_HOST = "https://upload.example.com"


def envelope(result=None, *, code: str = "00", message: str = "OK") -> dict:
    return {"IndeAPIResponse": {"ErrorCode": code, "Message": message, "Result": result}}


def bearer(request: httpx.Request) -> str | None:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeAdminApi:
    """In-memory admin API plus TUS upload endpoint for MockTransport."""

    def __init__(self, *, token: str = "access-1") -> None:
        self.valid_tokens = {token}
        self.refresh_calls = 0
        self.refresh_failures = 0
        self.refresh_failure_status = 401
        self.refresh_gate: asyncio.Event | None = None
        self.path_gates: dict[str, asyncio.Event] = {}
        self.issued = 1

        self.create_calls = 0
        self.complete_calls: list[dict] = []
        self.complete_error: tuple[int, dict] | None = None
        self.offsets: dict[str, int] = {}
        self.sizes: dict[str, int] = {}
        self.chunks: list[dict] = []
        self.status_at_offset: dict[int, list[int]] = {}
        self.network_errors: dict[int, int] = {}
        self.omit_offset_header = False

        self.requests: list[httpx.Request] = []
        self.logout_status = 200

    def requests_to(self, path: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        gate = self.path_gates.get(path)
        if gate is not None:
            await gate.wait()
        token = bearer(request)

        if path == "/adminMember/tokenrefresh":
            return await self._refresh(token)
        if path == "/adminMember/login":
            return self._login(request)
        if path.startswith("/tus/"):
            return self._chunk(request, token)

        if token not in self.valid_tokens:
            return httpx.Response(401, json=envelope(code="401", message="Token expired"))

        if path == "/adminMember/logout":
            if self.logout_status != 200:
                return httpx.Response(self.logout_status, json={"error": "logout unavailable"})
            return httpx.Response(200, json=envelope({"message": "bye"}))
        if path in ("/items", "/slow"):
            return httpx.Response(200, json=envelope({"token": token}))
        if path == "/broken":
            return httpx.Response(500, text="boom")
        if path == "/video/cloudflare/tus/create":
            return self._create(request)
        if path == "/video/cloudflare/tus/complete":
            return self._complete(request)
        if path.startswith("/video/stream/"):
            stream_id = path.split("/")[3]
            return httpx.Response(200, json=envelope(self._descriptor(stream_id)))
        return httpx.Response(404, json={"error": "not found"})

    async def _refresh(self, token: str | None) -> httpx.Response:
        self.refresh_calls += 1
        if self.refresh_gate is not None:
            await self.refresh_gate.wait()
        if self.refresh_failures > 0:
            self.refresh_failures -= 1
            return httpx.Response(
                self.refresh_failure_status,
                json=envelope(code="401", message="Refresh rejected"),
            )
        if token is None:
            return httpx.Response(401, json={"error": "missing token"})

        self.issued += 1
        new_token = f"access-{self.issued}"
        self.valid_tokens = {new_token}
        return httpx.Response(
            200,
            json=envelope(
                {
                    "access_token": new_token,
                    "refresh_token": f"refresh-{self.issued}",
                    "user": {"memberShipId": "admin"},
                }
            ),
        )

    def _login(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if body.get("password") != "secret":
            return httpx.Response(200, json=envelope(code="E401", message="Invalid credentials"))
        self.issued += 1
        new_token = f"access-{self.issued}"
        self.valid_tokens = {new_token}
        return httpx.Response(
            200,
            json=envelope(
                {
                    "access_token": new_token,
                    "refresh_token": f"refresh-{self.issued}",
                    "expires_in": 86400,
                    "user": {"memberShipId": body["memberShipId"], "is_admin": True},
                }
            ),
        )

    def _create(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.create_calls += 1
        uid = f"uid-{self.create_calls}"
        self.offsets[uid] = 0
        self.sizes[uid] = body["filesize"]
        return httpx.Response(
            200,
            json=envelope({"uid": uid, "uploadUrl": f"{UPLOAD_HOST}/tus/{uid}"}),
        )

    def _chunk(self, request: httpx.Request, token: str | None) -> httpx.Response:
        uid = request.url.path.rsplit("/", 1)[-1]
        offset = int(request.headers["upload-offset"])

        if self.network_errors.get(offset, 0) > 0:
            self.network_errors[offset] -= 1
            raise httpx.ConnectError("connection reset", request=request)

        statuses = self.status_at_offset.get(offset)
        if statuses:
            return httpx.Response(statuses.pop(0), json={"error": "chunk rejected"})

        if token not in self.valid_tokens:
            return httpx.Response(401, json={"error": "expired"})
        if offset != self.offsets[uid]:
            return httpx.Response(409, json={"error": "offset mismatch"})

        self.chunks.append({"uid": uid, "offset": offset, "size": len(request.content), "token": token})
        self.offsets[uid] = offset + len(request.content)
        headers = {"Tus-Resumable": "1.0.0"}
        if not self.omit_offset_header:
            headers["Upload-Offset"] = str(self.offsets[uid])
        return httpx.Response(204, headers=headers)

    def _complete(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.complete_calls.append(body)
        if self.complete_error is not None:
            status, payload = self.complete_error
            return httpx.Response(status, json=payload)
        uid = body["uid"]
        if self.offsets.get(uid) != self.sizes.get(uid):
            return httpx.Response(200, json=envelope(code="E409", message="Upload incomplete"))
        return httpx.Response(200, json=envelope(self._descriptor(f"stream-{uid}")))

    def _descriptor(self, stream_id: str) -> dict:
        return {
            "videoStreamId": stream_id,
            "embedUrl": f"https://stream.example.com/{stream_id}/iframe",
            "thumbnailUrl": f"https://stream.example.com/{stream_id}/thumb.jpg",
            "hlsUrl": f"https://stream.example.com/{stream_id}/video.m3u8",
            "dashUrl": f"https://stream.example.com/{stream_id}/video.mpd",
            "videoInfo": {"duration": 12.5},
        }

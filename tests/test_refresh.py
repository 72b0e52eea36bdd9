import asyncio

import httpx
import pytest

from adminapi.errors import AuthRefreshError, AuthRefreshExhaustedError
from auth.refresh import RefreshCoordinator, TokenRefreshResult, request_token_refresh
from auth.token_store import Credentials, MemoryCredentialStore

TOKEN_URL = "https://api.example.com/adminMember/tokenrefresh"


class RefreshStub:
    def __init__(self, outcomes: list) -> None:
        self.outcomes = outcomes
        self.calls: list[str] = []
        self.gate: asyncio.Event | None = None

    async def __call__(self, client, access_token: str) -> TokenRefreshResult:
        del client
        self.calls.append(access_token)
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes[min(len(self.calls) - 1, len(self.outcomes) - 1)]
        if isinstance(outcome, Exception):
            raise outcome
        return TokenRefreshResult(access_token=outcome, refresh_token=f"{outcome}-refresh")


def _coordinator(stub: RefreshStub, store=None, **kwargs) -> tuple[RefreshCoordinator, MemoryCredentialStore, list]:
    signals: list[int] = []
    store = store or MemoryCredentialStore(Credentials.issue("expired-access", "refresh-1", {"id": 1}))
    coordinator = RefreshCoordinator(
        httpx.AsyncClient(),
        store,
        on_session_invalid=lambda: signals.append(1),
        refresh_fn=stub,
        **kwargs,
    )
    return coordinator, store, signals


@pytest.mark.asyncio
async def test_refresh_success_updates_credentials() -> None:
    stub = RefreshStub(["access-2"])
    coordinator, store, signals = _coordinator(stub)

    token = await coordinator.obtain_fresh_token()

    assert token == "access-2"
    assert stub.calls == ["expired-access"]
    credentials = await store.get()
    assert credentials.access_token == "access-2"
    assert credentials.refresh_token == "access-2-refresh"
    assert credentials.user == {"id": 1}
    assert coordinator.in_progress is False
    assert signals == []


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh() -> None:
    stub = RefreshStub(["access-2"])
    stub.gate = asyncio.Event()
    coordinator, _, _ = _coordinator(stub)

    tasks = [asyncio.create_task(coordinator.obtain_fresh_token()) for _ in range(5)]
    for _ in range(100):
        if coordinator.pending_count == 4:
            break
        await asyncio.sleep(0)
    assert coordinator.in_progress is True
    assert coordinator.pending_count == 4

    stub.gate.set()
    tokens = await asyncio.gather(*tasks)

    assert tokens == ["access-2"] * 5
    assert len(stub.calls) == 1
    assert coordinator.pending_count == 0
    assert coordinator.in_progress is False


@pytest.mark.asyncio
async def test_queued_callers_rejected_with_refresh_error() -> None:
    stub = RefreshStub([AuthRefreshError("refresh rejected", status_code=401)])
    stub.gate = asyncio.Event()
    coordinator, store, signals = _coordinator(stub)

    tasks = [asyncio.create_task(coordinator.obtain_fresh_token()) for _ in range(3)]
    for _ in range(100):
        if coordinator.pending_count == 2:
            break
        await asyncio.sleep(0)
    stub.gate.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert all(isinstance(result, AuthRefreshError) for result in results)
    assert not any(isinstance(result, AuthRefreshExhaustedError) for result in results)
    assert len(stub.calls) == 1
    assert coordinator.retry_count == 1
    assert await store.get() is not None
    assert signals == []


@pytest.mark.asyncio
async def test_retry_count_resets_after_success() -> None:
    stub = RefreshStub([AuthRefreshError("first"), AuthRefreshError("second"), "access-2"])
    coordinator, _, _ = _coordinator(stub)

    for _ in range(2):
        with pytest.raises(AuthRefreshError):
            await coordinator.obtain_fresh_token()
    assert coordinator.retry_count == 2

    assert await coordinator.obtain_fresh_token() == "access-2"
    assert coordinator.retry_count == 0


@pytest.mark.asyncio
async def test_exhaustion_clears_credentials_and_signals_once() -> None:
    stub = RefreshStub([AuthRefreshError("rejected", status_code=401)])
    coordinator, store, signals = _coordinator(stub)

    with pytest.raises(AuthRefreshError):
        await coordinator.obtain_fresh_token()
    with pytest.raises(AuthRefreshError):
        await coordinator.obtain_fresh_token()
    with pytest.raises(AuthRefreshExhaustedError):
        await coordinator.obtain_fresh_token()

    assert await store.get() is None
    assert signals == [1]
    assert coordinator.retry_count == 0
    assert coordinator.session_invalid is True

    with pytest.raises(AuthRefreshExhaustedError):
        await coordinator.obtain_fresh_token()
    assert len(stub.calls) == 3
    assert signals == [1]


@pytest.mark.asyncio
async def test_reset_allows_refresh_after_new_login() -> None:
    stub = RefreshStub([AuthRefreshError("rejected")])
    coordinator, store, _ = _coordinator(stub, max_retries=1)

    with pytest.raises(AuthRefreshExhaustedError):
        await coordinator.obtain_fresh_token()

    await store.save(Credentials.issue("access-new", "refresh-new"))
    coordinator.reset()
    stub.outcomes = ["access-3"]

    assert await coordinator.obtain_fresh_token() == "access-3"


@pytest.mark.asyncio
async def test_missing_access_token_counts_as_failure() -> None:
    stub = RefreshStub(["unused"])
    coordinator, _, _ = _coordinator(stub, store=MemoryCredentialStore())

    with pytest.raises(AuthRefreshError, match="No access token"):
        await coordinator.obtain_fresh_token()

    assert stub.calls == []
    assert coordinator.retry_count == 1


@pytest.mark.asyncio
async def test_cancelled_refresh_releases_waiters() -> None:
    stub = RefreshStub(["access-2"])
    stub.gate = asyncio.Event()
    coordinator, _, _ = _coordinator(stub)

    leader = asyncio.create_task(coordinator.obtain_fresh_token())
    follower = asyncio.create_task(coordinator.obtain_fresh_token())
    for _ in range(100):
        if coordinator.pending_count == 1:
            break
        await asyncio.sleep(0)

    leader.cancel()
    with pytest.raises(asyncio.CancelledError):
        await leader
    with pytest.raises(AuthRefreshError, match="interrupted"):
        await follower
    assert coordinator.in_progress is False


def test_refresh_payload_envelope() -> None:
    result = TokenRefreshResult.from_payload(
        {
            "IndeAPIResponse": {
                "ErrorCode": "00",
                "Message": "OK",
                "Result": {"access_token": "a", "refresh_token": "r", "user": {"id": 1}},
            }
        }
    )

    assert result == TokenRefreshResult("a", "r", {"id": 1})


def test_refresh_payload_bare() -> None:
    result = TokenRefreshResult.from_payload({"access_token": "a", "refresh_token": "r"})

    assert result.access_token == "a"
    assert result.user is None


def test_refresh_payload_error_code() -> None:
    payload = {"IndeAPIResponse": {"ErrorCode": "E401", "Message": "Refresh token revoked", "Result": None}}

    with pytest.raises(AuthRefreshError, match="Refresh token revoked"):
        TokenRefreshResult.from_payload(payload)


def test_refresh_payload_missing_tokens() -> None:
    with pytest.raises(AuthRefreshError, match="refresh_token"):
        TokenRefreshResult.from_payload({"access_token": "a"})


@pytest.mark.asyncio
async def test_request_token_refresh_sends_current_token(httpx_mock) -> None:
    httpx_mock.add_response(
        url=TOKEN_URL,
        method="POST",
        json={
            "IndeAPIResponse": {
                "ErrorCode": "00",
                "Message": "OK",
                "Result": {"access_token": "access-2", "refresh_token": "refresh-2"},
            }
        },
    )

    async with httpx.AsyncClient(base_url="https://api.example.com") as client:
        result = await request_token_refresh(client, "expired-access")

    request = httpx_mock.get_request()
    assert request.headers["authorization"] == "Bearer expired-access"
    assert result.access_token == "access-2"


@pytest.mark.asyncio
async def test_request_token_refresh_http_error(httpx_mock) -> None:
    httpx_mock.add_response(url=TOKEN_URL, method="POST", status_code=401, json={"error": "token revoked"})

    async with httpx.AsyncClient(base_url="https://api.example.com") as client:
        with pytest.raises(AuthRefreshError, match="token revoked") as excinfo:
            await request_token_refresh(client, "expired-access")

    assert excinfo.value.status_code == 401

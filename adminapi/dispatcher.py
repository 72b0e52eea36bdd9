from __future__ import annotations

import logging
from typing import Any

import httpx

from auth.envelope import parse_response, response_error_message
from auth.refresh import RefreshCoordinator
from auth.token_store import CredentialStore

from .constants import LOGGER, LOGIN_PATH, RETRIED_EXTENSION, TOKEN_REFRESH_PATH
from .errors import AdminApiError, ApiResponseError, AuthExpiredError, NetworkError, ServerError
from .http import clone_request

AUTH_FAILURE_STATUSES = frozenset({401, 403})
NO_REFRESH_PATHS = (TOKEN_REFRESH_PATH, LOGIN_PATH)


def is_auth_failure(response: httpx.Response) -> bool:
    return response.status_code in AUTH_FAILURE_STATUSES


def may_refresh(request: httpx.Request) -> bool:
    if request.extensions.get(RETRIED_EXTENSION):
        return False
    path = request.url.path
    return not any(path.endswith(blocked) for blocked in NO_REFRESH_PATHS)


class RequestDispatcher:
    """Sends requests with the stored bearer token and recovers from expiry.

    A 401/403 on a request that has not been retried yet hands control to the
    refresh coordinator and replays the request once with the token that
    refresh produced. When the stored token already changed while the request
    was in flight, the replay uses it without another refresh.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        store: CredentialStore,
        coordinator: RefreshCoordinator | None = None,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._coordinator = coordinator
        self._logger = logger or LOGGER

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    @property
    def coordinator(self) -> RefreshCoordinator | None:
        return self._coordinator

    def build_request(self, method: str, url: str, **kwargs: Any) -> httpx.Request:
        return self._client.build_request(method, url, **kwargs)

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        return await self.send(self.build_request(method, url, **kwargs))

    async def send(self, request: httpx.Request, *, allow_refresh: bool = True) -> httpx.Response:
        # A replay needs the body again, so streamed content is buffered first.
        await request.aread()
        token = await self._store.access_token()
        if token:
            request.headers["Authorization"] = f"Bearer {token}"

        response = await self._transmit(request)

        if not is_auth_failure(response):
            if response.status_code < 400 and self._coordinator is not None:
                self._coordinator.record_success()
            return response

        if not allow_refresh or self._coordinator is None or not may_refresh(request):
            return response

        self._logger.info(
            "%s on %s %s; refreshing access token",
            response.status_code,
            request.method,
            request.url,
        )
        request.extensions[RETRIED_EXTENSION] = True
        await response.aclose()

        # The token was already replaced while this request was in flight.
        stored_token = await self._store.access_token()
        if stored_token and stored_token != token:
            fresh_token = stored_token
        else:
            fresh_token = await self._coordinator.obtain_fresh_token()
        replay = clone_request(request)
        replay.headers["Authorization"] = f"Bearer {fresh_token}"
        response = await self._transmit(replay)
        if response.status_code < 400:
            self._coordinator.record_success()
        return response

    async def send_envelope(
        self,
        method: str,
        url: str,
        *,
        default_error: str = "Request failed.",
        **kwargs: Any,
    ) -> Any:
        response = await self.request(method, url, **kwargs)
        raise_for_response(response)
        try:
            return parse_response(response).unwrap(default_error)
        except ApiResponseError as error:
            error.status_code = response.status_code
            raise

    async def _transmit(self, request: httpx.Request) -> httpx.Response:
        try:
            return await self._client.send(request)
        except httpx.TransportError as error:
            raise NetworkError(
                f"Network error during {request.method} {request.url}: {error}"
            ) from error


def raise_for_response(response: httpx.Response) -> None:
    if response.status_code < 400:
        return

    message = response_error_message(response)
    error: AdminApiError
    if is_auth_failure(response):
        error = AuthExpiredError(message, status_code=response.status_code)
    else:
        error = ServerError(message, status_code=response.status_code)
    raise error

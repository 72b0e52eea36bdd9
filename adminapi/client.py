from __future__ import annotations

import logging
from typing import Any, Callable

import httpx

from auth.envelope import parse_response
from auth.refresh import RefreshCoordinator
from auth.token_store import Credentials, CredentialStore, FileCredentialStore

from .constants import CHUNK_RETRY_DELAYS, LOGGER, LOGIN_PATH, LOGOUT_PATH
from .dispatcher import RequestDispatcher, raise_for_response
from .env import Settings
from .errors import ApiResponseError
from .finalize import CompletionFinalizer
from .http import RetryTransport, build_event_hooks
from .models import UploadDescriptor, UploadSource
from .upload import ProgressCallback, UploadSessionManager


class AdminApiClient:
    """Caller-facing surface: ``send`` for API calls, ``upload`` for videos."""

    def __init__(
        self,
        *,
        api_client: httpx.AsyncClient,
        transfer_client: httpx.AsyncClient,
        store: CredentialStore,
        settings: Settings,
        on_session_invalid: Callable[[], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._logger = logger or LOGGER
        self._api_client = api_client
        self._transfer_client = transfer_client
        self.store = store
        self.settings = settings

        self.coordinator = RefreshCoordinator(
            api_client,
            store,
            max_retries=settings.max_refresh_retries,
            on_session_invalid=on_session_invalid,
            logger=self._logger,
        )
        self.dispatcher = RequestDispatcher(api_client, store, self.coordinator, logger=self._logger)
        transfer = RequestDispatcher(transfer_client, store, self.coordinator, logger=self._logger)
        self.finalizer = CompletionFinalizer(self.dispatcher, logger=self._logger)
        self.uploads = UploadSessionManager(
            self.dispatcher,
            transfer,
            self.coordinator,
            self.finalizer,
            chunk_size=settings.chunk_size,
            max_bytes=settings.max_upload_bytes,
            allowed_content_types=settings.allowed_content_types,
            logger=self._logger,
        )

    async def __aenter__(self) -> "AdminApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._api_client.aclose()
        await self._transfer_client.aclose()

    async def send(self, request: httpx.Request) -> httpx.Response:
        return await self.dispatcher.send(request)

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        return await self.dispatcher.request(method, url, **kwargs)

    async def call(self, method: str, url: str, **kwargs: Any) -> Any:
        return await self.dispatcher.send_envelope(method, url, **kwargs)

    async def upload(
        self,
        source: UploadSource,
        on_progress: ProgressCallback | None = None,
    ) -> UploadDescriptor:
        return await self.uploads.upload(source, on_progress)

    def abort_upload(self) -> None:
        self.uploads.abort()

    async def fetch_stream_info(self, stream_id: str) -> UploadDescriptor:
        return await self.finalizer.fetch_stream_info(stream_id)

    async def login(self, member_id: str, password: str) -> dict[str, Any] | None:
        response = await self.dispatcher.request(
            "POST",
            LOGIN_PATH,
            json={"memberShipId": member_id, "password": password},
        )
        raise_for_response(response)
        result = parse_response(response).unwrap("Login failed.")

        access_token = result.get("access_token") if isinstance(result, dict) else None
        refresh_token = result.get("refresh_token") if isinstance(result, dict) else None
        if not access_token or not refresh_token:
            raise ApiResponseError("Login response missing tokens.", status_code=response.status_code)

        user = result.get("user")
        await self.store.save(Credentials.issue(access_token, refresh_token, user))
        self.coordinator.reset()
        self._logger.info("Logged in member=%s", member_id)
        return user

    async def logout(self) -> None:
        try:
            await self.dispatcher.send_envelope("POST", LOGOUT_PATH, default_error="Logout failed.")
        finally:
            # Local credentials go away even when the server call fails.
            await self.store.clear()
            self._logger.info("Logged out; credentials cleared")

    async def current_user(self) -> dict[str, Any] | None:
        return await self.store.user()

    async def is_authenticated(self) -> bool:
        credentials = await self.store.get()
        return credentials is not None and not credentials.access_expired()


def create_client(
    settings: Settings,
    *,
    store: CredentialStore | None = None,
    on_session_invalid: Callable[[], None] | None = None,
    api_transport: httpx.AsyncBaseTransport | None = None,
    transfer_transport: httpx.AsyncBaseTransport | None = None,
    retry_delays=CHUNK_RETRY_DELAYS,
    sleep=None,
) -> AdminApiClient:
    event_hooks = build_event_hooks(settings.debug)
    api_client = httpx.AsyncClient(
        base_url=settings.base_url,
        headers={"Content-Type": "application/json"},
        timeout=settings.timeout,
        transport=api_transport or httpx.AsyncHTTPTransport(),
        event_hooks=event_hooks,
    )

    retry_kwargs: dict[str, Any] = {"retry_delays": retry_delays, "logger": LOGGER}
    if sleep is not None:
        retry_kwargs["sleep"] = sleep
    transfer_client = httpx.AsyncClient(
        timeout=settings.timeout,
        transport=RetryTransport(transfer_transport or httpx.AsyncHTTPTransport(), **retry_kwargs),
        event_hooks=event_hooks,
    )

    return AdminApiClient(
        api_client=api_client,
        transfer_client=transfer_client,
        store=store or FileCredentialStore(settings.token_store_path),
        settings=settings,
        on_session_invalid=on_session_invalid,
    )


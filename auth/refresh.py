from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from adminapi.constants import LOGGER, MAX_REFRESH_RETRIES, TOKEN_REFRESH_PATH
from adminapi.errors import AdminApiError, AuthRefreshError, AuthRefreshExhaustedError
from auth.envelope import ENVELOPE_KEY, ApiEnvelope, response_error_message
from auth.token_store import CredentialStore


@dataclass
class TokenRefreshResult:
    access_token: str
    refresh_token: str
    user: dict[str, Any] | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "TokenRefreshResult":
        # The refresh endpoint answers either wrapped in the envelope or bare.
        if isinstance(payload, dict) and ENVELOPE_KEY in payload:
            try:
                payload = ApiEnvelope.from_payload(payload).unwrap("Token refresh failed.")
            except AdminApiError as error:
                raise AuthRefreshError(error.message) from error

        if not isinstance(payload, dict):
            raise AuthRefreshError("Token refresh response carried no data.")

        access_token = payload.get("access_token")
        refresh_token = payload.get("refresh_token")
        user = payload.get("user")

        if not isinstance(access_token, str) or not access_token:
            raise AuthRefreshError("Token refresh response missing access_token.")
        if not isinstance(refresh_token, str) or not refresh_token:
            raise AuthRefreshError("Token refresh response missing refresh_token.")
        if user is not None and not isinstance(user, dict):
            raise AuthRefreshError("Token refresh response user must be an object.")

        return cls(access_token=access_token, refresh_token=refresh_token, user=user)


async def request_token_refresh(
    client: httpx.AsyncClient,
    access_token: str,
) -> TokenRefreshResult:
    try:
        response = await client.post(
            TOKEN_REFRESH_PATH,
            json={},
            headers={"Authorization": f"Bearer {access_token}"},
        )
    except httpx.HTTPError as error:
        raise AuthRefreshError(f"Token refresh request failed: {error}") from error

    if response.status_code >= 400:
        raise AuthRefreshError(
            response_error_message(response, "Token refresh failed."),
            status_code=response.status_code,
        )

    try:
        payload = response.json()
    except ValueError as error:
        raise AuthRefreshError("Token refresh response is not valid JSON.") from error
    return TokenRefreshResult.from_payload(payload)


class RefreshCoordinator:
    """Single-flight access token refresh shared by every in-flight request.

    The first caller that needs a fresh token performs the refresh call; callers
    arriving while it is in flight wait on a future and receive the same token
    (or the same error) once it settles. After ``max_retries`` consecutive
    failures the stored credentials are cleared, ``on_session_invalid`` fires,
    and further refreshes are refused until :meth:`reset` is called.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        store: CredentialStore,
        *,
        max_retries: int = MAX_REFRESH_RETRIES,
        on_session_invalid: Callable[[], None] | None = None,
        refresh_fn: Callable[[httpx.AsyncClient, str], Awaitable[TokenRefreshResult]] = request_token_refresh,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._on_session_invalid = on_session_invalid
        self._refresh_fn = refresh_fn
        self._logger = logger or LOGGER

        self.max_retries = max(1, max_retries)
        self.retry_count = 0
        self.in_progress = False
        self.session_invalid = False
        self._waiters: list[asyncio.Future[str]] = []

    @property
    def pending_count(self) -> int:
        return len(self._waiters)

    def reset(self) -> None:
        self.retry_count = 0
        self.session_invalid = False

    def record_success(self) -> None:
        self.retry_count = 0

    async def obtain_fresh_token(self) -> str:
        if self.session_invalid:
            raise AuthRefreshExhaustedError()

        if self.in_progress:
            waiter: asyncio.Future[str] = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            self._logger.info(
                "Token refresh already in progress; queued caller (%s waiting)",
                len(self._waiters),
            )
            return await waiter

        self.in_progress = True
        token: str | None = None
        failure: BaseException | None = None
        try:
            token = await self._refresh()
            return token
        except AuthRefreshError as error:
            failure = await self._record_failure(error)
            if failure is error:
                raise
            raise failure from error
        except BaseException:
            failure = AuthRefreshError("Token refresh was interrupted.")
            raise
        finally:
            self._release(token, failure)

    async def _refresh(self) -> str:
        self._logger.info(
            "Refreshing access token (attempt %s/%s)",
            self.retry_count + 1,
            self.max_retries,
        )
        access_token = await self._store.access_token()
        if not access_token:
            raise AuthRefreshError("No access token available for refresh.")

        result = await self._refresh_fn(self._client, access_token)
        await self._store.update_tokens(result.access_token, result.refresh_token, result.user)
        self.retry_count = 0
        self._logger.info("Access token refreshed")
        return result.access_token

    async def _record_failure(self, error: AuthRefreshError) -> AuthRefreshError:
        self.retry_count += 1
        self._logger.error(
            "Token refresh failed (%s/%s): %s",
            self.retry_count,
            self.max_retries,
            error,
        )
        if self.retry_count < self.max_retries:
            return error

        self._logger.error(
            "Token refresh retries exhausted (%s); clearing credentials",
            self.max_retries,
        )
        self.retry_count = 0
        self.session_invalid = True
        await self._store.clear()
        if self._on_session_invalid is not None:
            self._on_session_invalid()
        return AuthRefreshExhaustedError()

    def _release(self, token: str | None, failure: BaseException | None) -> None:
        waiters, self._waiters = self._waiters, []
        self.in_progress = False

        if token is None and failure is None:
            failure = AuthRefreshError("Token refresh failed.")

        for waiter in waiters:
            if waiter.done():
                continue
            if token is not None:
                waiter.set_result(token)
            else:
                waiter.set_exception(failure)

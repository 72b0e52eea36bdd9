from __future__ import annotations

import asyncio
import logging
from typing import Sequence

import httpx

from .constants import CHUNK_RETRY_DELAYS, LOGGER

# Retried in addition to any 5xx.
RETRYABLE_STATUSES = frozenset({409, 423, 429})


def clone_request(request: httpx.Request) -> httpx.Request:
    return httpx.Request(
        method=request.method,
        url=request.url,
        headers=request.headers,
        content=request.content,
        extensions=dict(request.extensions),
    )


def _should_retry_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUSES or 500 <= status_code < 600


class RetryTransport(httpx.AsyncBaseTransport):
    """Replays a request on network errors and transient statuses.

    ``retry_delays`` is the fixed backoff schedule: one retry per entry, waiting
    that many seconds first. Once the schedule is spent the last response is
    returned, or the last network error re-raised.
    """

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport,
        *,
        retry_delays: Sequence[float] = CHUNK_RETRY_DELAYS,
        sleep=asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self._transport = transport
        self._retry_delays = tuple(max(0, delay) for delay in retry_delays)
        self._sleep = sleep
        self._logger = logger or LOGGER

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        retries = 0

        while True:
            next_request = clone_request(request)
            try:
                response = await self._transport.handle_async_request(next_request)
            except httpx.TransportError as error:
                if retries >= len(self._retry_delays):
                    raise
                delay = self._retry_delays[retries]
                self._logger.warning(
                    "Retrying after network error in %ss (%s %s): %s",
                    delay,
                    request.method,
                    request.url,
                    error,
                )
                await self._sleep(delay)
                retries += 1
                continue

            if _should_retry_status(response.status_code) and retries < len(self._retry_delays):
                delay = self._retry_delays[retries]
                self._logger.warning(
                    "Retrying %s after %ss (%s %s)",
                    response.status_code,
                    delay,
                    request.method,
                    request.url,
                )
                await response.aclose()
                await self._sleep(delay)
                retries += 1
                continue

            return response

    async def aclose(self) -> None:
        await self._transport.aclose()


def build_event_hooks(debug_enabled: bool, logger: logging.Logger | None = None) -> dict[str, list]:
    log = logger or LOGGER

    async def log_request(request: httpx.Request) -> None:
        if not debug_enabled:
            return
        log.info("Admin API request %s %s", request.method, request.url)

    async def log_response(response: httpx.Response) -> None:
        if not debug_enabled:
            return
        log.info(
            "Admin API response %s %s -> %s",
            response.request.method,
            response.request.url,
            response.status_code,
        )
        if response.status_code >= 400:
            body = await response.aread()
            text = body.decode("utf-8", errors="replace")
            if len(text) > 1000:
                text = text[:1000] + "...<truncated>"
            log.warning("Admin API error body: %s", text)

    return {"request": [log_request], "response": [log_response]}

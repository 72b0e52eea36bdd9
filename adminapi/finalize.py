from __future__ import annotations

import logging
from collections import deque

from .constants import LOGGER, STREAM_INFO_PATH, UPLOAD_COMPLETE_PATH
from .dispatcher import RequestDispatcher
from .errors import AdminApiError, AuthRefreshError, FinalizationError
from .models import UploadDescriptor, UploadLocator, UploadSource

# Recently finalized uids remembered to refuse a second completion.
FINALIZED_HISTORY = 128


class CompletionFinalizer:
    """Turns a fully transferred upload into a playable stream descriptor.

    Called once per upload session. Errors are raised as ``FinalizationError``
    because the bytes already reached the server; they are never retried here.
    """

    def __init__(
        self,
        dispatcher: RequestDispatcher,
        *,
        history: int = FINALIZED_HISTORY,
        logger: logging.Logger | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._logger = logger or LOGGER
        self._finalized: deque[str] = deque(maxlen=max(1, history))

    async def finalize(self, locator: UploadLocator, source: UploadSource) -> UploadDescriptor:
        if locator.uid in self._finalized:
            raise FinalizationError(f"Upload {locator.uid} was already finalized.")
        self._finalized.append(locator.uid)

        self._logger.info("Finalizing upload uid=%s filename=%s", locator.uid, source.name)
        try:
            result = await self._dispatcher.send_envelope(
                "POST",
                UPLOAD_COMPLETE_PATH,
                json={
                    "uid": locator.uid,
                    "filename": source.name,
                    "filesize": source.size,
                },
                default_error="Video upload completion failed.",
            )
        except AuthRefreshError:
            raise
        except AdminApiError as error:
            self._logger.error("Upload finalization failed uid=%s: %s", locator.uid, error)
            raise FinalizationError(error.message, status_code=error.status_code) from error

        descriptor = UploadDescriptor.from_payload(result)
        self._logger.info("Upload finalized uid=%s stream_id=%s", locator.uid, descriptor.stream_id)
        return descriptor

    async def fetch_stream_info(self, stream_id: str) -> UploadDescriptor:
        result = await self._dispatcher.send_envelope(
            "GET",
            STREAM_INFO_PATH.format(stream_id=stream_id),
            default_error="Video stream lookup failed.",
        )
        return UploadDescriptor.from_payload(result)

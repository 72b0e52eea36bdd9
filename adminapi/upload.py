from __future__ import annotations

import asyncio
import logging
from typing import Callable, Iterable

import httpx

from auth.envelope import response_error_message
from auth.refresh import RefreshCoordinator

from .constants import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_CONTENT_TYPES,
    LOGGER,
    MAX_UPLOAD_BYTES,
    TUS_VERSION,
    UPLOAD_CREATE_PATH,
)
from .dispatcher import RequestDispatcher, is_auth_failure
from .errors import (
    AuthExpiredError,
    NetworkError,
    TransferError,
    UploadAbortedError,
    UploadValidationError,
)
from .finalize import CompletionFinalizer
from .models import UploadDescriptor, UploadLocator, UploadSession, UploadSource, UploadState

ProgressCallback = Callable[[float], None]


def _format_gib(size: int) -> str:
    return f"{size / (1024 * 1024 * 1024):.2f}GB"


class UploadSessionManager:
    """Chunked video upload with one restart after access token expiry.

    ``api`` carries the session-creation call, ``transfer`` the chunk PATCHes
    (its client is expected to sit on a ``RetryTransport``). A chunk rejected
    with 401/403 aborts the session, refreshes the token and starts a new
    session from byte 0; this happens at most once per :meth:`upload` call.
    One upload runs at a time per manager.
    """

    def __init__(
        self,
        api: RequestDispatcher,
        transfer: RequestDispatcher,
        coordinator: RefreshCoordinator,
        finalizer: CompletionFinalizer,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_bytes: int = MAX_UPLOAD_BYTES,
        allowed_content_types: Iterable[str] = DEFAULT_CONTENT_TYPES,
        logger: logging.Logger | None = None,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive.")
        self._api = api
        self._transfer = transfer
        self._coordinator = coordinator
        self._finalizer = finalizer
        self.chunk_size = chunk_size
        self.max_bytes = max_bytes
        self.allowed_content_types = frozenset(allowed_content_types)
        self._logger = logger or LOGGER

        self.session: UploadSession | None = None
        self._running = False
        self._abort_requested = False
        self._resume = asyncio.Event()
        self._resume.set()

    def validate(self, source: UploadSource) -> None:
        if source.size > self.max_bytes:
            raise UploadValidationError(
                f"File exceeds the {_format_gib(self.max_bytes)} upload limit "
                f"(current: {_format_gib(source.size)})."
            )
        if source.content_type not in self.allowed_content_types:
            allowed = ", ".join(sorted(self.allowed_content_types))
            raise UploadValidationError(
                f"Unsupported file type {source.content_type!r}. Allowed: {allowed}"
            )

    def abort(self) -> None:
        self._abort_requested = True
        self._resume.set()

    def pause(self) -> None:
        self._resume.clear()

    def resume(self) -> None:
        self._resume.set()

    async def upload(
        self,
        source: UploadSource,
        on_progress: ProgressCallback | None = None,
    ) -> UploadDescriptor:
        self.validate(source)
        if self._running:
            raise RuntimeError("An upload is already in progress.")

        self._running = True
        self._abort_requested = False
        self._resume.set()
        reported = 0.0

        def report(value: float) -> None:
            nonlocal reported
            # Values after a restart from byte 0 never move the bar backwards.
            if on_progress is None or value <= reported:
                return
            reported = value
            on_progress(value)

        self._logger.info(
            "Upload starting filename=%s size=%s type=%s",
            source.name,
            source.size,
            source.content_type,
        )
        try:
            restarted = False
            while True:
                session = UploadSession(source=source, chunk_size=self.chunk_size)
                self.session = session
                try:
                    await self._run_session(session, report)
                    break
                except AuthExpiredError:
                    if session.is_terminal:
                        raise
                    if restarted:
                        session.transition(UploadState.FAILED)
                        raise
                    await self._reauthenticate(session)
                    restarted = True
                except BaseException:
                    _settle_unfinished(session)
                    raise

            descriptor = await self._finalizer.finalize(session.locator, source)
            report(1.0)
            return descriptor
        finally:
            self._running = False

    async def _reauthenticate(self, session: UploadSession) -> None:
        self._logger.warning(
            "Upload uid=%s rejected at %s/%s bytes by auth; restarting with a fresh token",
            session.locator.uid if session.locator else None,
            session.bytes_uploaded,
            session.total_bytes,
        )
        try:
            await self._coordinator.obtain_fresh_token()
        except BaseException:
            session.transition(UploadState.FAILED)
            raise
        session.transition(UploadState.ABORTED)

    async def _run_session(self, session: UploadSession, report: ProgressCallback) -> None:
        try:
            session.locator = await self._create_session(session.source)
        except BaseException:
            session.transition(UploadState.FAILED)
            raise

        session.transition(UploadState.UPLOADING)
        self._logger.info("Upload session created uid=%s", session.locator.uid)

        while session.bytes_uploaded < session.total_bytes:
            await self._checkpoint(session)
            try:
                await self._send_chunk(session)
            except AuthExpiredError:
                raise
            except BaseException:
                session.transition(UploadState.FAILED)
                raise

            if session.bytes_uploaded < session.total_bytes:
                report(session.progress)

        await self._checkpoint(session)
        session.transition(UploadState.COMPLETED)
        self._logger.info(
            "Upload transfer complete uid=%s bytes=%s",
            session.locator.uid,
            session.bytes_uploaded,
        )

    async def _checkpoint(self, session: UploadSession) -> None:
        if not self._resume.is_set() and not self._abort_requested:
            session.transition(UploadState.PAUSED)
            self._logger.info("Upload paused uid=%s at %s bytes", session.locator.uid, session.bytes_uploaded)
            await self._resume.wait()
            if not self._abort_requested:
                session.transition(UploadState.UPLOADING)

        if self._abort_requested:
            session.transition(UploadState.ABORTED)
            self._logger.info("Upload aborted uid=%s at %s bytes", session.locator.uid, session.bytes_uploaded)
            raise UploadAbortedError("Upload was cancelled.", bytes_uploaded=session.bytes_uploaded)

    async def _create_session(self, source: UploadSource) -> UploadLocator:
        result = await self._api.send_envelope(
            "POST",
            UPLOAD_CREATE_PATH,
            json={
                "filename": source.name,
                "filesize": source.size,
                "contentType": source.content_type,
            },
            default_error="Upload session creation failed.",
        )
        return UploadLocator.from_payload(result)

    async def _send_chunk(self, session: UploadSession) -> None:
        offset = session.bytes_uploaded
        length = min(session.chunk_size, session.total_bytes - offset)
        chunk = session.source.read(offset, length)

        request = self._transfer.build_request(
            "PATCH",
            session.locator.upload_url,
            content=chunk,
            headers={
                "Tus-Resumable": TUS_VERSION,
                "Upload-Offset": str(offset),
                "Content-Type": "application/offset+octet-stream",
            },
        )
        try:
            response = await self._transfer.send(request, allow_refresh=False)
        except NetworkError as error:
            raise TransferError(error.message, bytes_uploaded=offset) from error

        if is_auth_failure(response):
            raise AuthExpiredError(
                response_error_message(response),
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise TransferError(
                f"Chunk upload failed at offset {offset}: {response_error_message(response)}",
                status_code=response.status_code,
                bytes_uploaded=offset,
            )

        expected = offset + length
        accepted = _accepted_offset(response)
        if accepted != expected:
            raise TransferError(
                f"Server acknowledged offset {accepted}; expected {expected}.",
                status_code=response.status_code,
                bytes_uploaded=offset,
            )

        session.bytes_uploaded = expected
        self._logger.debug(
            "Chunk accepted uid=%s size=%s total=%s/%s",
            session.locator.uid,
            length,
            session.bytes_uploaded,
            session.total_bytes,
        )


def _settle_unfinished(session: UploadSession) -> None:
    if session.is_terminal:
        return
    # A paused session can only be abandoned, not failed.
    if session.state is UploadState.PAUSED:
        session.transition(UploadState.ABORTED)
    else:
        session.transition(UploadState.FAILED)


def _accepted_offset(response: httpx.Response) -> int | None:
    raw = response.headers.get("upload-offset")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None

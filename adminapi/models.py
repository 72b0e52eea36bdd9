from __future__ import annotations

import mimetypes
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from .errors import ApiResponseError, FinalizationError


class UploadState(str, Enum):
    CREATED = "created"
    UPLOADING = "uploading"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


TERMINAL_STATES = frozenset({UploadState.COMPLETED, UploadState.ABORTED, UploadState.FAILED})

ALLOWED_TRANSITIONS: dict[UploadState, frozenset[UploadState]] = {
    UploadState.CREATED: frozenset({UploadState.UPLOADING, UploadState.ABORTED, UploadState.FAILED}),
    UploadState.UPLOADING: frozenset(
        {UploadState.PAUSED, UploadState.COMPLETED, UploadState.ABORTED, UploadState.FAILED}
    ),
    UploadState.PAUSED: frozenset({UploadState.UPLOADING, UploadState.ABORTED}),
    UploadState.COMPLETED: frozenset(),
    UploadState.ABORTED: frozenset(),
    UploadState.FAILED: frozenset(),
}


@dataclass
class UploadSource:
    name: str
    size: int
    content_type: str
    reader: Callable[[int, int], bytes] = field(repr=False)

    def read(self, offset: int, length: int) -> bytes:
        data = self.reader(offset, length)
        if len(data) != length:
            raise RuntimeError(
                f"Source {self.name!r} returned {len(data)} bytes at offset {offset}; expected {length}."
            )
        return data

    @classmethod
    def from_path(cls, path: str | Path, content_type: str | None = None) -> "UploadSource":
        file_path = Path(path)

        def _read_chunk(offset: int, length: int) -> bytes:
            with file_path.open("rb") as handle:
                handle.seek(offset)
                return handle.read(length)

        guessed, _ = mimetypes.guess_type(file_path.name)
        return cls(
            name=file_path.name,
            size=file_path.stat().st_size,
            content_type=content_type or guessed or "application/octet-stream",
            reader=_read_chunk,
        )

    @classmethod
    def from_bytes(cls, name: str, data: bytes, content_type: str) -> "UploadSource":
        return cls(
            name=name,
            size=len(data),
            content_type=content_type,
            reader=lambda offset, length: data[offset : offset + length],
        )


@dataclass
class UploadLocator:
    uid: str
    upload_url: str

    @classmethod
    def from_payload(cls, payload: Any) -> "UploadLocator":
        if not isinstance(payload, dict):
            raise ApiResponseError("Upload session response carried no data.")

        uid = payload.get("uid")
        upload_url = payload.get("uploadUrl")
        if not isinstance(uid, str) or not uid:
            raise ApiResponseError("Upload session response missing uid.")
        if not isinstance(upload_url, str) or not upload_url:
            raise ApiResponseError("Upload session response missing uploadUrl.")
        return cls(uid=uid, upload_url=upload_url)


@dataclass
class UploadDescriptor:
    stream_id: str
    embed_url: str = ""
    thumbnail_url: str = ""
    hls_url: str = ""
    dash_url: str = ""
    video_info: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> "UploadDescriptor":
        if not isinstance(payload, dict):
            raise FinalizationError("Upload completion response carried no data.")

        stream_id = payload.get("videoStreamId")
        if not isinstance(stream_id, str) or not stream_id:
            raise FinalizationError("Upload completion response missing videoStreamId.")

        video_info = payload.get("videoInfo")
        return cls(
            stream_id=stream_id,
            embed_url=payload.get("embedUrl") or "",
            thumbnail_url=payload.get("thumbnailUrl") or "",
            hls_url=payload.get("hlsUrl") or "",
            dash_url=payload.get("dashUrl") or "",
            video_info=video_info if isinstance(video_info, dict) else {},
        )


@dataclass
class UploadSession:
    source: UploadSource
    chunk_size: int
    locator: UploadLocator | None = None
    bytes_uploaded: int = 0
    state: UploadState = UploadState.CREATED

    @property
    def total_bytes(self) -> int:
        return self.source.size

    @property
    def progress(self) -> float:
        if self.total_bytes == 0:
            return 1.0
        return self.bytes_uploaded / self.total_bytes

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: UploadState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid upload state transition {self.state.value} -> {new_state.value}."
            )
        self.state = new_state

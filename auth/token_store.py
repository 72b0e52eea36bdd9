from __future__ import annotations

import json
import os
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any

from adminapi.constants import ACCESS_TOKEN_TTL_SECONDS, REFRESH_TOKEN_TTL_SECONDS


@dataclass
class Credentials:
    access_token: str
    refresh_token: str
    user: dict[str, Any] | None = None
    access_expires_at: float = field(default_factory=lambda: time.time() + ACCESS_TOKEN_TTL_SECONDS)
    refresh_expires_at: float = field(
        default_factory=lambda: time.time() + REFRESH_TOKEN_TTL_SECONDS
    )

    @classmethod
    def issue(
        cls,
        access_token: str,
        refresh_token: str,
        user: dict[str, Any] | None = None,
        *,
        now: float | None = None,
    ) -> "Credentials":
        current = time.time() if now is None else now
        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            user=user,
            access_expires_at=current + ACCESS_TOKEN_TTL_SECONDS,
            refresh_expires_at=current + REFRESH_TOKEN_TTL_SECONDS,
        )

    def access_expired(self, *, now: float | None = None) -> bool:
        current = time.time() if now is None else now
        return current >= self.access_expires_at

    def refresh_expired(self, *, now: float | None = None) -> bool:
        current = time.time() if now is None else now
        return current >= self.refresh_expires_at


class CredentialStore(ABC):
    """Process-wide holder of the signed-in admin's tokens.

    Login and the refresh coordinator write; everything else only reads.
    """

    @abstractmethod
    async def load(self) -> Credentials | None:
        raise NotImplementedError

    @abstractmethod
    async def save(self, credentials: Credentials) -> None:
        raise NotImplementedError

    @abstractmethod
    async def clear(self) -> None:
        raise NotImplementedError

    async def get(self) -> Credentials | None:
        credentials = await self.load()
        if credentials is None:
            return None
        if credentials.refresh_expired():
            await self.clear()
            return None
        return credentials

    async def access_token(self) -> str | None:
        # Returned even past its local expiry; the refresh endpoint takes it as credential.
        credentials = await self.get()
        if credentials is None:
            return None
        return credentials.access_token

    async def user(self) -> dict[str, Any] | None:
        credentials = await self.get()
        if credentials is None:
            return None
        return credentials.user

    async def update_tokens(
        self,
        access_token: str,
        refresh_token: str,
        user: dict[str, Any] | None = None,
    ) -> Credentials:
        current = await self.load()
        issued = Credentials.issue(access_token, refresh_token, user)
        if user is None and current is not None:
            issued = replace(issued, user=current.user)
        await self.save(issued)
        return issued


class MemoryCredentialStore(CredentialStore):
    def __init__(self, credentials: Credentials | None = None) -> None:
        self._credentials = credentials

    async def load(self) -> Credentials | None:
        return self._credentials

    async def save(self, credentials: Credentials) -> None:
        self._credentials = credentials

    async def clear(self) -> None:
        self._credentials = None


class FileCredentialStore(CredentialStore):
    def __init__(self, path: str | Path = ".credentials.json") -> None:
        self._path = Path(path)

    async def load(self) -> Credentials | None:
        if not self._path.exists():
            return None

        raw = json.loads(self._path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise RuntimeError("Credential store file is invalid; expected top-level JSON object.")
        return Credentials(**raw)

    async def save(self, credentials: Credentials) -> None:
        self._write(asdict(credentials))

    async def clear(self) -> None:
        if self._path.exists():
            self._path.unlink()

    def _write(self, payload: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f"{self._path.name}.",
            suffix=".tmp",
            dir=self._path.parent,
        )
        tmp_path = Path(tmp_name)

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
            os.replace(tmp_path, self._path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

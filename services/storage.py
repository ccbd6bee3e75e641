# services/storage.py
"""
Storage collaborator: holds finished artifacts and issues
time-limited access links for them.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from urllib.parse import urlencode

from models.base import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessLink:
    url: str
    expires_at: datetime


class StorageError(Exception):
    pass


class StorageClient(ABC):
    """Interface the orchestration core depends on."""

    @abstractmethod
    async def write_artifact(self, artifact_ref: str, data: bytes) -> None:
        ...

    @abstractmethod
    async def issue_access_link(self, artifact_ref: str) -> AccessLink:
        ...

    @abstractmethod
    async def delete(self, artifact_ref: str) -> bool:
        """Remove the artifact. Returns False if it was already gone."""
        ...

    @abstractmethod
    async def check_connection(self) -> bool:
        """True when artifacts can currently be written."""
        ...


class LocalArtifactStorage(StorageClient):
    """Artifacts on local disk, links signed with HMAC-SHA256."""

    def __init__(
        self,
        base_dir: str | Path,
        base_url: str,
        signing_secret: str,
        link_ttl_seconds: int = 900,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._base_dir = Path(base_dir)
        self._base_url = base_url.rstrip("/")
        self._secret = signing_secret.encode("utf-8")
        self._ttl = link_ttl_seconds
        self._clock = clock

    def _path(self, artifact_ref: str) -> Path:
        path = (self._base_dir / artifact_ref).resolve()
        if self._base_dir.resolve() not in path.parents:
            raise StorageError(f"Artifact ref escapes storage root: {artifact_ref}")
        return path

    def sign(self, artifact_ref: str, expires: int) -> str:
        payload = f"{artifact_ref}:{expires}".encode("utf-8")
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    def verify(self, artifact_ref: str, expires: int, signature: str) -> bool:
        if expires < int(self._clock().timestamp()):
            return False
        return hmac.compare_digest(self.sign(artifact_ref, expires), signature)

    async def write_artifact(self, artifact_ref: str, data: bytes) -> None:
        path = self._path(artifact_ref)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.info("Storage: wrote %s (%d bytes)", artifact_ref, len(data))

    async def issue_access_link(self, artifact_ref: str) -> AccessLink:
        path = self._path(artifact_ref)
        if not path.exists():
            raise StorageError(f"Artifact not found: {artifact_ref}")

        expires_at = self._clock() + timedelta(seconds=self._ttl)
        expires = int(expires_at.timestamp())
        query = urlencode({"expires": expires, "signature": self.sign(artifact_ref, expires)})
        return AccessLink(url=f"{self._base_url}/{artifact_ref}?{query}", expires_at=expires_at)

    async def delete(self, artifact_ref: str) -> bool:
        path = self._path(artifact_ref)
        if not path.exists():
            return False
        await asyncio.to_thread(path.unlink)
        logger.info("Storage: deleted %s", artifact_ref)
        return True

    async def check_connection(self) -> bool:
        def _writable() -> bool:
            self._base_dir.mkdir(parents=True, exist_ok=True)
            return os.access(self._base_dir, os.W_OK)

        try:
            return await asyncio.to_thread(_writable)
        except OSError as exc:
            logger.warning("Storage: %s is not usable: %s", self._base_dir, exc)
            return False

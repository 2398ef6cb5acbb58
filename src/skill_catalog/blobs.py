"""Blob store for manifest content and archive snapshots.

Storage backends implement a small key/value interface so the pipeline can
run against a local directory in development and tests and an object store
in production. Keys are ``/``-separated relative paths.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Any

from loguru import logger

from skill_catalog.telemetry import get_tracer

_tracer = get_tracer(__name__)

_META_DIR = ".meta"


class BlobStoreError(Exception):
    """Raised when a blob operation fails."""

    def __init__(self, message: str, key: str | None = None) -> None:
        self.message = message
        self.key = key
        super().__init__(message)


# ---------------------------------------------------------------------------
# Key layout
# ---------------------------------------------------------------------------


def manifest_blob_path(repo_owner: str, repo_name: str, skill_path: str = "") -> str:
    """Deterministic hot-manifest key for a skill's natural key."""
    parts = ["skills", repo_owner, repo_name]
    if skill_path:
        parts.append(skill_path.strip("/"))
    parts.append("SKILL.md")
    return "/".join(parts)


def archive_blob_path(skill_id: str, archived_at: datetime) -> str:
    return f"archive/{archived_at:%Y}/{archived_at:%m}/{skill_id}.json"


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class BlobStore(ABC):
    """Abstract async blob store."""

    @abstractmethod
    async def put(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
    ) -> None:
        """Write *data* under *key*, replacing any previous object.

        Raises:
            BlobStoreError: If the write fails.
        """

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Return the object's bytes, or ``None`` if absent."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete an object. Returns False when it did not exist."""

    @abstractmethod
    async def exists(self, key: str) -> bool: ...

    @abstractmethod
    async def list_prefix(self, prefix: str) -> list[str]:
        """Return all keys starting with *prefix*, sorted."""

    async def get_metadata(self, key: str) -> dict[str, Any] | None:
        """Return stored content type + metadata. Optional for backends."""
        return None

    async def ping(self) -> bool:
        return True

    @property
    @abstractmethod
    def backend_type(self) -> str: ...


# ---------------------------------------------------------------------------
# Filesystem backend
# ---------------------------------------------------------------------------


class FileBlobStore(BlobStore):
    """Blob store rooted at a local directory.

    Objects are written atomically (temp file + rename). Content type and
    metadata live in a sidecar JSON tree under ``.meta/``.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root)

    @property
    def backend_type(self) -> str:
        return "filesystem"

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        rel = PurePosixPath(key)
        if rel.is_absolute() or ".." in rel.parts or not rel.parts or rel.parts[0] == _META_DIR:
            raise BlobStoreError(f"Invalid blob key: {key!r}", key)
        return self._root.joinpath(*rel.parts)

    def _meta_path(self, key: str) -> Path:
        return self._root / _META_DIR / (key + ".json")

    @staticmethod
    def _atomic_write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            Path(tmp).replace(path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    async def put(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
    ) -> None:
        path = self._path(key)
        meta = json.dumps({"content_type": content_type, "metadata": metadata or {}}).encode()

        def _write() -> None:
            self._atomic_write(path, data)
            self._atomic_write(self._meta_path(key), meta)

        with _tracer.start_as_current_span("blobs.put", attributes={"key": key}):
            try:
                await asyncio.to_thread(_write)
            except OSError as exc:
                raise BlobStoreError(f"Failed to write blob: {exc}", key) from exc

    async def get(self, key: str) -> bytes | None:
        path = self._path(key)

        def _read() -> bytes | None:
            try:
                return path.read_bytes()
            except FileNotFoundError:
                return None

        try:
            return await asyncio.to_thread(_read)
        except OSError as exc:
            raise BlobStoreError(f"Failed to read blob: {exc}", key) from exc

    async def get_metadata(self, key: str) -> dict[str, Any] | None:
        meta_path = self._meta_path(key)

        def _read() -> dict[str, Any] | None:
            try:
                return json.loads(meta_path.read_text(encoding="utf-8"))
            except FileNotFoundError:
                return None

        return await asyncio.to_thread(_read)

    async def delete(self, key: str) -> bool:
        path = self._path(key)

        def _delete() -> bool:
            self._meta_path(key).unlink(missing_ok=True)
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            return True

        try:
            deleted = await asyncio.to_thread(_delete)
        except OSError as exc:
            raise BlobStoreError(f"Failed to delete blob: {exc}", key) from exc
        if deleted:
            logger.debug("Deleted blob {}", key)
        return deleted

    async def exists(self, key: str) -> bool:
        path = self._path(key)
        return await asyncio.to_thread(path.is_file)

    async def list_prefix(self, prefix: str) -> list[str]:
        # Walk from the deepest directory fully contained in the prefix
        head = prefix.rsplit("/", 1)[0] if "/" in prefix else ""
        base = self._path(head) if head else self._root

        def _walk() -> list[str]:
            if not base.is_dir():
                return []
            keys: list[str] = []
            for p in base.rglob("*"):
                if not p.is_file() or p.name.startswith(".tmp-"):
                    continue
                key = p.relative_to(self._root).as_posix()
                if key.startswith(_META_DIR + "/"):
                    continue
                if key.startswith(prefix):
                    keys.append(key)
            return sorted(keys)

        return await asyncio.to_thread(_walk)

    async def ping(self) -> bool:
        def _check() -> bool:
            self._root.mkdir(parents=True, exist_ok=True)
            return os.access(self._root, os.W_OK)

        return await asyncio.to_thread(_check)

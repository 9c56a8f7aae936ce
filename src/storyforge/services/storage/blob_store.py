"""Blob backends for generated media.

A blob store writes bytes under a path and returns where they ended up:
a storage reference (stable, backend-specific) and, when the backend serves
files publicly, a URL.
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from storyforge.models.job import Capability
from storyforge.services.exceptions import StorageError


@dataclass(frozen=True)
class StoredBlob:
    storage_ref: str
    public_url: str | None = None


class BlobStore(Protocol):
    async def put(
        self, path: str, data: bytes, media_type: str, capability: Capability
    ) -> StoredBlob: ...


class InMemoryBlobStore:
    """Keeps blobs in a dict. Used by tests and the memory backend."""

    def __init__(self):
        self.blobs: dict[str, tuple[bytes, str]] = {}

    async def put(
        self, path: str, data: bytes, media_type: str, capability: Capability
    ) -> StoredBlob:
        self.blobs[path] = (data, media_type)
        return StoredBlob(storage_ref=f"memory://{path}")


class LocalBlobStore:
    """Writes blobs below a root directory on the local filesystem."""

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    async def put(
        self, path: str, data: bytes, media_type: str, capability: Capability
    ) -> StoredBlob:
        target = (self.root / path).resolve()
        if self.root not in target.parents:
            raise StorageError(f"Refusing to write outside artifact root: {path}")

        try:
            await asyncio.to_thread(self._write, target, data)
        except OSError as e:
            raise StorageError(f"Failed to write {target}: {e}") from e
        return StoredBlob(storage_ref=path, public_url=target.as_uri())

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        # Write then rename so readers never see a partial file
        partial = target.with_name(target.name + ".partial")
        partial.write_bytes(data)
        partial.replace(target)

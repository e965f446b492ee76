from __future__ import annotations

import asyncio
import json
import os
import shutil
import time
import weakref
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Protocol, runtime_checkable

from ..core.config import ArtifactSettings
from ..core.errors import ArtifactNotFoundError, CacheWriteConflict, InvalidArtifactPathError
from ..core.logging import get_logger
from ..core import metrics
from ..schemas.artifacts import Artifact, ArtifactMetadata, ContentType
from ..utils.json_encoding import safe_json_dumps

logger = get_logger(name=__name__)

METADATA_SUFFIX = ".metadata"


def to_base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value == 0:
        return "0"
    sign = "-" if value < 0 else ""
    value = abs(value)
    out: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        out.append(digits[remainder])
    return sign + "".join(reversed(out))


class LogicalClock:
    """Millisecond clock that never repeats or goes backwards."""

    def __init__(self, now: Callable[[], int] | None = None) -> None:
        self._now = now or (lambda: int(time.time() * 1000))
        self._last = -1

    def tick(self) -> int:
        self._last = max(self._last + 1, self._now())
        return self._last

    def observe(self, value: int) -> None:
        self._last = max(self._last, value)


@runtime_checkable
class ArtifactStore(Protocol):
    async def get_latest_metadata(self, name: str) -> ArtifactMetadata | None: ...

    async def get_latest_artifact(self, name: str) -> Artifact: ...

    async def save_artifact(self, artifact: Artifact) -> Artifact: ...

    async def remove_artifact(self, name: str) -> None: ...

    async def list_artifacts(self, prefix: str = "") -> list[str]: ...

    def next_sequence(self) -> int: ...


def encoded_size(content: Any) -> int:
    if isinstance(content, (bytes, bytearray)):
        return len(content)
    if isinstance(content, str):
        return len(content.encode("utf-8"))
    return len(safe_json_dumps(content).encode("utf-8"))


def new_artifact(name: str, content: Any, content_type: ContentType = "text") -> Artifact:
    """Build an unsaved artifact; the store assigns version and timestamp."""
    return Artifact(
        metadata=ArtifactMetadata(name=name, content_type=content_type, size_bytes=encoded_size(content)),
        content=content,
    )


class BaseArtifactStore(ABC):
    """Shared save protocol: per-name lock, compare-and-swap on version, logical timestamps."""

    kind = "base"

    def __init__(self, *, clock: LogicalClock | None = None) -> None:
        self._clock = clock or LogicalClock()
        # A name's lock lives only while some save or remove holds it.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def next_sequence(self) -> int:
        return self._clock.tick()

    async def get_latest_artifact(self, name: str) -> Artifact:
        self._validate_name(name)
        artifact = await self._read_artifact(name)
        if artifact is None:
            raise ArtifactNotFoundError(f"Artifact not found: {name}")
        logger.debug("artifact_read", store=self.kind, name=name, version=artifact.metadata.version)
        return artifact

    async def get_latest_metadata(self, name: str) -> ArtifactMetadata | None:
        self._validate_name(name)
        return await self._read_metadata(name)

    async def save_artifact(self, artifact: Artifact) -> Artifact:
        name = artifact.metadata.name
        self._validate_name(name)
        async with self._lock_for(name):
            current = await self._read_metadata(name)
            actual = current.version if current is not None else 0
            expected = artifact.metadata.version
            if expected != actual:
                metrics.record_artifact_write(store=self.kind, outcome="conflict")
                raise CacheWriteConflict(name, expected=expected, actual=actual)
            metadata = artifact.metadata.model_copy(
                update={"version": expected + 1, "timestamp": self._clock.tick()}
            )
            saved = Artifact(metadata=metadata, content=artifact.content)
            await self._write(saved)
        metrics.record_artifact_write(store=self.kind, outcome="saved")
        logger.debug("artifact_saved", store=self.kind, name=name, version=metadata.version)
        return saved

    async def remove_artifact(self, name: str) -> None:
        self._validate_name(name)
        async with self._lock_for(name):
            removed = await self._delete(name)
        if removed:
            logger.debug("artifact_removed", store=self.kind, name=name)

    async def list_artifacts(self, prefix: str = "") -> list[str]:
        names = await self._names()
        return sorted(name for name in names if name.startswith(prefix or ""))

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    def _validate_name(self, name: str) -> None:
        if not name or not isinstance(name, str):
            raise InvalidArtifactPathError("Artifact name must be a non-empty string")

    @abstractmethod
    async def _read_artifact(self, name: str) -> Artifact | None: ...

    @abstractmethod
    async def _read_metadata(self, name: str) -> ArtifactMetadata | None: ...

    @abstractmethod
    async def _write(self, artifact: Artifact) -> None: ...

    @abstractmethod
    async def _delete(self, name: str) -> bool: ...

    @abstractmethod
    async def _names(self) -> list[str]: ...


class MemoryArtifactStore(BaseArtifactStore):
    kind = "memory"

    def __init__(self, *, clock: LogicalClock | None = None) -> None:
        super().__init__(clock=clock)
        self._artifacts: dict[str, Artifact] = {}

    async def _read_metadata(self, name: str) -> ArtifactMetadata | None:
        artifact = self._artifacts.get(name)
        return artifact.metadata.model_copy(deep=True) if artifact is not None else None

    async def _read_artifact(self, name: str) -> Artifact | None:
        artifact = self._artifacts.get(name)
        return artifact.model_copy(deep=True) if artifact is not None else None

    async def _write(self, artifact: Artifact) -> None:
        self._artifacts[artifact.metadata.name] = artifact.model_copy(deep=True)

    async def _delete(self, name: str) -> bool:
        return self._artifacts.pop(name, None) is not None

    async def _names(self) -> list[str]:
        return list(self._artifacts)


class NullArtifactStore(BaseArtifactStore):
    """Store that keeps nothing; every lookup misses."""

    kind = "null"

    async def _read_metadata(self, name: str) -> ArtifactMetadata | None:
        return None

    async def _read_artifact(self, name: str) -> Artifact | None:
        return None

    async def _write(self, artifact: Artifact) -> None:
        return None

    async def _delete(self, name: str) -> bool:
        return False

    async def _names(self) -> list[str]:
        return []


class FileSystemArtifactStore(BaseArtifactStore):
    """Content files under ``root`` with JSON ``.metadata`` sidecars.

    Overwritten and removed content is kept as ``<name>.<ts36>.bak``. A content
    file without a sidecar is still visible (version 0, mtime as timestamp) so
    hand-placed inputs participate in timestamp-based staleness checks.
    """

    kind = "filesystem"

    def __init__(self, root: str | os.PathLike[str], *, clock: LogicalClock | None = None) -> None:
        super().__init__(clock=clock)
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def subdir(self, path: str) -> "FileSystemArtifactStore":
        self._validate_name(path)
        if path.startswith("."):
            raise InvalidArtifactPathError(f"Invalid path {path}")
        return FileSystemArtifactStore(self._root / path, clock=self._clock)

    def _validate_name(self, name: str) -> None:
        super()._validate_name(name)
        pure = PurePosixPath(name)
        if pure.is_absolute() or ".." in pure.parts or name.endswith(METADATA_SUFFIX):
            raise InvalidArtifactPathError(f"Invalid path {name}")

    def _content_path(self, name: str) -> Path:
        return self._root / name

    def _metadata_path(self, name: str) -> Path:
        return self._root / f"{name}{METADATA_SUFFIX}"

    def _backup_path(self, path: Path) -> Path:
        return path.with_name(f"{path.name}.{to_base36(self._clock.tick())}.bak")

    def _backup(self, path: Path) -> None:
        if path.exists():
            path.rename(self._backup_path(path))

    def _replace_atomically(self, path: Path, data: bytes) -> None:
        """Write ``data`` next to ``path`` and swap it in; ``path`` is untouched if writing fails."""
        temp_path = path.with_name(f"{path.name}.{to_base36(self._clock.tick())}.tmp")
        try:
            temp_path.write_bytes(data)
            os.replace(temp_path, path)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

    def _read_metadata_sync(self, name: str) -> ArtifactMetadata | None:
        content_path = self._content_path(name)
        if not content_path.is_file():
            return None
        stat = content_path.stat()
        mtime_ms = int(stat.st_mtime * 1000)
        self._clock.observe(mtime_ms)
        metadata_path = self._metadata_path(name)
        if metadata_path.is_file():
            metadata = ArtifactMetadata.model_validate_json(metadata_path.read_text(encoding="utf-8"))
            return metadata.model_copy(
                update={"timestamp": max(metadata.timestamp, mtime_ms), "size_bytes": stat.st_size}
            )
        return ArtifactMetadata(name=name, version=0, timestamp=mtime_ms, content_type="text", size_bytes=stat.st_size)

    def _read_artifact_sync(self, name: str) -> Artifact | None:
        metadata = self._read_metadata_sync(name)
        if metadata is None:
            return None
        content_path = self._content_path(name)
        content: Any
        if metadata.content_type == "binary":
            content = content_path.read_bytes()
        else:
            content = content_path.read_text(encoding="utf-8")
            if metadata.content_type == "json":
                content = json.loads(content)
        return Artifact(metadata=metadata, content=content)

    def _write_sync(self, artifact: Artifact) -> None:
        name = artifact.metadata.name
        content_path = self._content_path(name)
        content_path.parent.mkdir(parents=True, exist_ok=True)
        content = artifact.content
        if artifact.metadata.content_type == "binary" or isinstance(content, (bytes, bytearray)):
            data = bytes(content)
        elif isinstance(content, str):
            data = content.encode("utf-8")
        else:
            data = safe_json_dumps(content).encode("utf-8")
        # Content first, sidecar last: a failed write leaves the previous version readable.
        if content_path.exists():
            shutil.copy2(content_path, self._backup_path(content_path))
        self._replace_atomically(content_path, data)
        self._replace_atomically(self._metadata_path(name), artifact.metadata.model_dump_json().encode("utf-8"))

    def _delete_sync(self, name: str) -> bool:
        content_path = self._content_path(name)
        existed = content_path.exists()
        self._backup(content_path)
        self._metadata_path(name).unlink(missing_ok=True)
        return existed

    def _names_sync(self) -> list[str]:
        names: list[str] = []
        for path in self._root.rglob(f"*{METADATA_SUFFIX}"):
            relative = path.relative_to(self._root).as_posix()
            names.append(relative[: -len(METADATA_SUFFIX)])
        return names

    async def _read_metadata(self, name: str) -> ArtifactMetadata | None:
        return await asyncio.to_thread(self._read_metadata_sync, name)

    async def _read_artifact(self, name: str) -> Artifact | None:
        return await asyncio.to_thread(self._read_artifact_sync, name)

    async def _write(self, artifact: Artifact) -> None:
        await asyncio.to_thread(self._write_sync, artifact)

    async def _delete(self, name: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, name)

    async def _names(self) -> list[str]:
        return await asyncio.to_thread(self._names_sync)


def create_store(settings: ArtifactSettings) -> BaseArtifactStore:
    if settings.backend == "filesystem":
        return FileSystemArtifactStore(settings.root_path)
    if settings.backend == "null":
        return NullArtifactStore()
    return MemoryArtifactStore()


__all__ = [
    "ArtifactStore",
    "BaseArtifactStore",
    "MemoryArtifactStore",
    "NullArtifactStore",
    "FileSystemArtifactStore",
    "LogicalClock",
    "create_store",
    "new_artifact",
    "encoded_size",
    "to_base36",
]

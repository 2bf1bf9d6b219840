"""Key-value backends for the record store.

Keys are colon-separated (``page:{slug}``, ``wallet:{wallet}:pages``).
Values are either plain documents or string sets, mirroring the small
subset of a Redis-style store that the page engine needs.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import yaml

from tokenpage.core.errors import ServiceError

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Abstract base class for record storage."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Get a document. Returns None if not found."""
        ...

    @abstractmethod
    async def put(self, key: str, value: Any) -> None:
        """Store a document, replacing any previous value."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a key. Returns True if deleted, False if not found."""
        ...

    @abstractmethod
    async def set_add(self, key: str, member: str) -> bool:
        """Add a member to a set. Returns True if it was not present."""
        ...

    @abstractmethod
    async def set_remove(self, key: str, member: str) -> bool:
        """Remove a member from a set. Returns True if it was present."""
        ...

    @abstractmethod
    async def set_members(self, key: str) -> set[str]:
        """All members of a set; empty if the key does not exist."""
        ...

    @abstractmethod
    async def keys(self, prefix: str = "") -> list[str]:
        """List keys starting with prefix, sorted."""
        ...


class MemoryKeyValueStore(KeyValueStore):
    """In-process store, used for tests and local runs."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    async def get(self, key: str) -> Any | None:
        value = self._data.get(key)
        if isinstance(value, set):
            raise ServiceError(f"Key '{key}' holds a set, not a document")
        return value

    async def put(self, key: str, value: Any) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def set_add(self, key: str, member: str) -> bool:
        members = self._data.setdefault(key, set())
        if member in members:
            return False
        members.add(member)
        return True

    async def set_remove(self, key: str, member: str) -> bool:
        members = self._data.get(key)
        if not members or member not in members:
            return False
        members.discard(member)
        if not members:
            del self._data[key]
        return True

    async def set_members(self, key: str) -> set[str]:
        return set(self._data.get(key) or ())

    async def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))


class FileKeyValueStore(KeyValueStore):
    """File-based store.

    Each key is a YAML file; the colon-separated key parts become
    directories, so ``page:alice`` lives at ``page/alice.yaml``.
    Sets are stored as sorted YAML lists.
    """

    SUFFIX = ".yaml"

    def __init__(self, base_path: Path):
        self.base_path = base_path
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _key_to_path(self, key: str) -> Path:
        """Convert a key to its file path, rejecting unsafe parts."""
        parts = key.split(":")
        for part in parts:
            if not part or part in (".", "..") or "/" in part or "\\" in part:
                raise ValueError(f"Invalid storage key: {key!r}")
        return self.base_path.joinpath(*parts[:-1], parts[-1] + self.SUFFIX)

    def _path_to_key(self, path: Path) -> str:
        relative = path.relative_to(self.base_path)
        parts = list(relative.parts)
        parts[-1] = parts[-1].removesuffix(self.SUFFIX)
        return ":".join(parts)

    def _read(self, key: str) -> Any | None:
        path = self._key_to_path(key)
        if not path.exists():
            return None
        try:
            return yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            logger.exception("Failed to read %s", path)
            raise ServiceError("Record store read failed") from exc

    def _write(self, key: str, value: Any) -> None:
        path = self._key_to_path(key)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(
                yaml.safe_dump(value, default_flow_style=False, sort_keys=False),
                encoding="utf-8",
            )
            tmp_path.replace(path)
        except OSError as exc:
            logger.exception("Failed to write %s", path)
            raise ServiceError("Record store write failed") from exc

    def _unlink(self, key: str) -> bool:
        path = self._key_to_path(key)
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as exc:
            logger.exception("Failed to delete %s", path)
            raise ServiceError("Record store delete failed") from exc
        return True

    async def get(self, key: str) -> Any | None:
        return self._read(key)

    async def put(self, key: str, value: Any) -> None:
        self._write(key, value)

    async def delete(self, key: str) -> bool:
        return self._unlink(key)

    async def set_add(self, key: str, member: str) -> bool:
        members = await self.set_members(key)
        if member in members:
            return False
        members.add(member)
        self._write(key, sorted(members))
        return True

    async def set_remove(self, key: str, member: str) -> bool:
        members = await self.set_members(key)
        if member not in members:
            return False
        members.discard(member)
        if members:
            self._write(key, sorted(members))
        else:
            self._unlink(key)
        return True

    async def set_members(self, key: str) -> set[str]:
        value = self._read(key)
        if value is None:
            return set()
        if not isinstance(value, list):
            raise ServiceError(f"Key '{key}' does not hold a set")
        return {str(member) for member in value}

    async def keys(self, prefix: str = "") -> list[str]:
        keys = []
        for path in self.base_path.rglob("*" + self.SUFFIX):
            key = self._path_to_key(path)
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

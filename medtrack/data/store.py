"""Key/value stores injected into the engine.

Every key carries a version number that increases on each write. Writers
pass the version they read; a mismatch raises StaleWriteError instead of
silently overwriting a concurrent change.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from medtrack.core.config import Settings
from medtrack.core.errors import StaleWriteError
from medtrack.data.encryption import decrypt_document, encrypt_document

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Document store of JSON-serializable values with per-key versions."""

    @abstractmethod
    def _read_document(self) -> dict[str, Any]:
        """Return {"data": {...}, "versions": {...}}."""

    @abstractmethod
    def _write_document(self, document: dict[str, Any]) -> None:
        """Persist the whole document in one step."""

    def get(self, key: str, default: Any = None) -> Any:
        """Return a copy of the value stored under key."""
        data = self._read_document()["data"]
        if key not in data:
            return default
        return copy.deepcopy(data[key])

    def version(self, key: str) -> int:
        """Current version of key; 0 when it was never written."""
        return int(self._read_document()["versions"].get(key, 0))

    def set_many(
        self,
        values: Mapping[str, Any],
        expected_versions: Mapping[str, int] | None = None,
        deletes: Iterable[str] = (),
    ) -> None:
        """Write several keys at once; either all land or none do."""
        document = self._read_document()
        versions: dict[str, int] = document["versions"]
        deletes = list(deletes)
        for key, expected in (expected_versions or {}).items():
            actual = int(versions.get(key, 0))
            if actual != expected:
                logger.warning("Stale write on %s: expected v%d, found v%d", key, expected, actual)
                raise StaleWriteError(key, expected, actual)
        for key, value in values.items():
            document["data"][key] = copy.deepcopy(value)
            versions[key] = int(versions.get(key, 0)) + 1
        for key in deletes:
            document["data"].pop(key, None)
            versions[key] = int(versions.get(key, 0)) + 1
        self._write_document(document)
        logger.debug("Store wrote %s, deleted %s", sorted(values), deletes)

    def set(self, key: str, value: Any, expected_version: int | None = None) -> None:
        """Write a single key."""
        expected = {key: expected_version} if expected_version is not None else None
        self.set_many({key: value}, expected)

    def append(self, key: str, item: Any) -> None:
        """Append an item to the list stored under key."""
        current_version = self.version(key)
        items = self.get(key, [])
        if not isinstance(items, list):
            items = []
        items.append(item)
        self.set(key, items, expected_version=current_version)

    def delete(self, key: str, expected_version: int | None = None) -> None:
        """Remove key."""
        expected = {key: expected_version} if expected_version is not None else None
        self.set_many({}, expected, deletes=[key])


def _empty_document() -> dict[str, Any]:
    return {"data": {}, "versions": {}}


class InMemoryStore(KeyValueStore):
    """Store kept in process memory (tests, throwaway sessions)."""

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._document = _empty_document()
        for key, value in (initial or {}).items():
            self._document["data"][key] = copy.deepcopy(value)
            self._document["versions"][key] = 1

    def _read_document(self) -> dict[str, Any]:
        return copy.deepcopy(self._document)

    def _write_document(self, document: dict[str, Any]) -> None:
        self._document = copy.deepcopy(document)


class JsonFileStore(KeyValueStore):
    """Single JSON document on disk, replaced atomically on every write."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def _decode(self, raw: bytes) -> dict[str, Any]:
        result: dict[str, Any] = json.loads(raw.decode("utf-8"))
        return result

    def _encode(self, document: dict[str, Any]) -> bytes:
        return json.dumps(document, ensure_ascii=False, default=str).encode("utf-8")

    def _read_document(self) -> dict[str, Any]:
        if not self.path.exists():
            return _empty_document()
        document = self._decode(self.path.read_bytes())
        document.setdefault("data", {})
        document.setdefault("versions", {})
        return document

    def _write_document(self, document: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = self._encode(document)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


class EncryptedFileStore(JsonFileStore):
    """JsonFileStore whose document is age-encrypted at rest."""

    def __init__(self, path: Path, recipient: str, identity: str) -> None:
        super().__init__(path)
        self.recipient = recipient
        self.identity = identity

    def _decode(self, raw: bytes) -> dict[str, Any]:
        return decrypt_document(raw, self.identity)

    def _encode(self, document: dict[str, Any]) -> bytes:
        return encrypt_document(document, self.recipient)


def build_store(config: Settings) -> KeyValueStore:
    """Create the store selected by config.store_backend."""
    backend = config.store_backend.lower()
    if backend == "memory":
        return InMemoryStore()
    if backend == "json":
        return JsonFileStore(config.data_store_path)
    if backend == "encrypted":
        if not config.age_recipient or not config.age_identity:
            msg = "Encrypted store requires age_recipient and age_identity"
            raise ValueError(msg)
        return EncryptedFileStore(config.data_store_path, config.age_recipient, config.age_identity)
    msg = f"Unknown store backend: {config.store_backend}"
    raise ValueError(msg)

"""Key/value storage with a primary and a fallback backend.

Settings are written to every backend so a wiped primary (deleted session
directory, read-only filesystem) can be restored from the fallback. Storage
failures are logged and treated as "no data"; nothing here raises.
"""

import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

import structlog

from .config import SETTINGS_KEY
from .errors import StorageError

log = structlog.get_logger(__name__)


class StorageBackend(Protocol):
    """Minimal synchronous key/value interface."""

    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class MemoryStorage:
    """Process-local storage used as the fallback backend."""

    def __init__(self) -> None:
        self._items: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class FileStorage:
    """One file per key inside a private directory.

    The directory is created with 0o700 and each file is chmod'ed to 0o600.
    """

    _unsafe_chars = re.compile(r"[^A-Za-z0-9_.-]")

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def _path_for(self, key: str) -> Path:
        return self.directory / f"{self._unsafe_chars.sub('_', key)}.json"

    def get_item(self, key: str) -> Optional[str]:
        path = self._path_for(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}") from e

    def set_item(self, key: str, value: str) -> None:
        path = self._path_for(key)
        try:
            self.directory.mkdir(mode=0o700, parents=True, exist_ok=True)
            path.write_text(value, encoding="utf-8")
            path.chmod(0o600)
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}") from e

    def remove_item(self, key: str) -> None:
        path = self._path_for(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to remove {path}: {e}") from e


class StorageProvider:
    """Single storage interface over an ordered list of backends.

    Reads return the first non-empty value; writes and removals go to every
    backend. Any backend exception means "unavailable" for that backend.
    """

    def __init__(self, backends: Sequence[StorageBackend]) -> None:
        if not backends:
            raise ValueError("StorageProvider needs at least one backend")
        self.backends: List[StorageBackend] = list(backends)

    def get_item(self, key: str) -> Optional[str]:
        for backend in self.backends:
            try:
                raw = backend.get_item(key)
            except Exception as e:
                log.warning("Storage backend read failed", key=key, backend=type(backend).__name__, error=str(e))
                continue
            if raw:
                return raw
        return None

    def set_item(self, key: str, value: str) -> None:
        for backend in self.backends:
            try:
                backend.set_item(key, value)
            except Exception as e:
                log.warning("Storage backend write failed", key=key, backend=type(backend).__name__, error=str(e))

    def remove_item(self, key: str) -> None:
        for backend in self.backends:
            try:
                backend.remove_item(key)
            except Exception as e:
                log.warning("Storage backend remove failed", key=key, backend=type(backend).__name__, error=str(e))

    def get_json(self, key: str, default: Any = None) -> Any:
        raw = self.get_item(key)
        if not raw:
            return default
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            log.warning("Ignoring malformed JSON in storage", key=key)
            return default

    def set_json(self, key: str, value: Any) -> None:
        try:
            serialized = json.dumps(value)
        except (TypeError, ValueError) as e:
            log.warning("Value is not JSON serializable, not stored", key=key, error=str(e))
            return
        self.set_item(key, serialized)


class CredentialStore:
    """The persisted settings blob: session token, credentials and caller preferences."""

    def __init__(self, provider: StorageProvider, key: str = SETTINGS_KEY) -> None:
        self.provider = provider
        self.key = key

    def get(self) -> Dict[str, Any]:
        settings = self.provider.get_json(self.key, default={})
        return settings if isinstance(settings, dict) else {}

    def save(self, partial: Dict[str, Any]) -> None:
        """Merge ``partial`` over the stored blob and write it to every backend."""
        merged = {**self.get(), **(partial or {})}
        self.provider.set_json(self.key, merged)

    def clear(self) -> None:
        self.provider.remove_item(self.key)


def default_provider(storage_dir: Path) -> StorageProvider:
    """File storage under ``storage_dir`` with an in-memory fallback."""
    return StorageProvider([FileStorage(storage_dir), MemoryStorage()])

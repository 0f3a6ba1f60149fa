"""Pluggable persistence for the settings record.

Provides SettingsStore ABC and concrete implementations for in-memory
and JSON-file storage. Records hold only ciphertext for secrets, so the
file backend needs no further encryption.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import tempfile
import threading

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .types import SettingsRecord


logger = logging.getLogger("ssoauth.storage")


class SettingsStore(ABC):
    """Abstract base class for settings-record storage.

    All methods are async to support both local and network-backed stores.
    """

    @abstractmethod
    async def load(self) -> SettingsRecord:
        """Load the record, returning an empty one if nothing is stored."""

    @abstractmethod
    async def save(self, record: SettingsRecord) -> None:
        """Persist ``record``, replacing what was stored.

        Parameters
        ----------
        record : SettingsRecord
            The record to persist.
        """

    @abstractmethod
    async def clear(self) -> None:
        """Delete the stored record."""


class MemorySettingsStore(SettingsStore):
    """In-memory store for tests and single-process use."""

    def __init__(self, record: SettingsRecord | None = None) -> None:
        """Initialize the memory store."""
        self._data: str | None = record.model_dump_json() if record is not None else None
        self._lock = asyncio.Lock()

    async def load(self) -> SettingsRecord:
        """Load the record from memory."""
        async with self._lock:
            if self._data is None:
                return SettingsRecord()
            return SettingsRecord.model_validate_json(self._data)

    async def save(self, record: SettingsRecord) -> None:
        """Save the record in memory."""
        async with self._lock:
            self._data = record.model_dump_json()

    async def clear(self) -> None:
        """Delete the record from memory."""
        async with self._lock:
            self._data = None


class FileSettingsStore(SettingsStore):
    """JSON file store written atomically with owner-only permissions.

    Parameters
    ----------
    path : Path or str
        Location of the JSON file.
    """

    def __init__(self, path: Path | str) -> None:
        """Initialize the file store."""
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def _read(self) -> SettingsRecord:
        with self._lock:
            try:
                data = self.path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return SettingsRecord()
        try:
            return SettingsRecord.model_validate_json(data)
        except ValidationError as exc:
            logger.warning("Ignoring unreadable settings record at %s: %s", self.path, exc)
            return SettingsRecord()

    def _write(self, record: SettingsRecord) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".sso-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(record.model_dump_json(indent=2))
                with contextlib.suppress(OSError):
                    os.chmod(tmp_name, 0o600)
                os.replace(tmp_name, self.path)
            except BaseException:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_name)
                raise

    def _delete(self) -> None:
        with self._lock, contextlib.suppress(FileNotFoundError):
            self.path.unlink()

    async def load(self) -> SettingsRecord:
        """Load the record from disk."""
        return await asyncio.to_thread(self._read)

    async def save(self, record: SettingsRecord) -> None:
        """Write the record to disk."""
        await asyncio.to_thread(self._write, record)

    async def clear(self) -> None:
        """Remove the file."""
        await asyncio.to_thread(self._delete)


_store_instance: SettingsStore | None = None
_store_lock = threading.Lock()


def get_settings_store(backend: str = "file", **kwargs: Any) -> SettingsStore:
    """Factory function for settings stores.

    Returns a singleton instance. Call ``reset_settings_store()`` to clear
    the cached instance (e.g. in tests).

    Parameters
    ----------
    backend : str
        Storage backend: "memory" or "file".
    **kwargs : Any
        ``path`` for the file backend.

    Returns
    -------
    SettingsStore
        A configured settings store instance.
    """
    global _store_instance  # noqa: PLW0603

    with _store_lock:
        if _store_instance is not None:
            return _store_instance

        if backend == "memory":
            _store_instance = MemorySettingsStore()
        elif backend == "file":
            path = kwargs.get("path")
            if path is None:
                msg = "File settings store requires a path"
                raise ValueError(msg)
            _store_instance = FileSettingsStore(path)
        else:
            msg = f"Unknown settings store backend: {backend}"
            raise ValueError(msg)

        return _store_instance


def reset_settings_store() -> None:
    """Reset the singleton settings store instance."""
    global _store_instance  # noqa: PLW0603

    with _store_lock:
        _store_instance = None

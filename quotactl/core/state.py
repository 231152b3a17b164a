# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
quotactl State

Keyed JSON document guarded by one global lock. Every read and write of
persisted data (quota groups, registered snaps, feature flags) happens
while the calling thread holds the lock; values are copied in and out so
callers never share mutable structures with the store.

With a backing file, taking the lock also takes an exclusive flock on
``<state file>.lock`` and re-reads the document, so separate quotactl
processes take turns on the latest copy. The document is checkpointed
atomically before the lock is released after a modification.

Usage:
    st = State.load(Path("~/.quotactl/state.json").expanduser())

    with st.locked():
        quotas = st.get("quotas")
        st.set("quotas", quotas)
"""

import fcntl
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from .exceptions import NoStateError, StateCorruptError, StateLockError

logger = logging.getLogger("quotactl.state")


class State:
    """The persisted state document of the daemon."""

    def __init__(self, path: Optional[Path] = None, data: Optional[Dict[str, Any]] = None):
        self.path = Path(path) if path else None
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._owner: Optional[int] = None
        self._lock_fd: Optional[int] = None
        self._modified = False

        for key, value in (data or {}).items():
            self._data[key] = json.dumps(value, sort_keys=True)

    @staticmethod
    def _read_document(path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StateCorruptError(f"cannot read state file {path}", cause=e) from e

        if not isinstance(data, dict):
            raise StateCorruptError(f"state file {path} does not hold a mapping")
        return data

    @classmethod
    def load(cls, path: Path) -> "State":
        """Read a state document from disk (missing file means empty state)"""
        path = Path(path)
        data = cls._read_document(path)
        if data is None:
            return cls(path=path)

        logger.debug(f"Loaded state from {path} ({len(data)} keys)")
        return cls(path=path, data=data)

    # ==========================================================================
    # Locking
    # ==========================================================================

    @property
    def lock_path(self) -> Optional[Path]:
        """File holding the cross-process lock, next to the state file"""
        if self.path is None:
            return None
        return self.path.with_name(f"{self.path.name}.lock")

    def lock(self):
        """
        Acquire the global state lock.

        With a backing file this also takes an exclusive flock on
        ``lock_path`` (blocking until other processes release it) and
        re-reads the document, so every holder sees the last checkpoint.
        """
        if self._owner == threading.get_ident():
            raise StateLockError("state lock is not reentrant")
        self._lock.acquire()
        try:
            if self.path is not None:
                self._lock_file()
                self._refresh()
        except BaseException:
            self._unlock_file()
            self._lock.release()
            raise
        self._owner = threading.get_ident()

    def unlock(self):
        """Release the lock, checkpointing first if anything changed"""
        self._ensure_locked()
        try:
            if self._modified:
                self.checkpoint()
        finally:
            self._owner = None
            self._unlock_file()
            self._lock.release()

    @contextmanager
    def locked(self) -> Iterator["State"]:
        """Hold the state lock for the duration of the block"""
        self.lock()
        try:
            yield self
        finally:
            self.unlock()

    def _ensure_locked(self):
        if self._owner != threading.get_ident():
            raise StateLockError("internal error: accessing state without lock")

    def _lock_file(self):
        lock_path = self.lock_path
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(lock_path), os.O_CREAT | os.O_RDWR, 0o600)
        except OSError as e:
            raise StateLockError(f"cannot open state lock {lock_path}", cause=e) from e

        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
        except OSError as e:
            os.close(fd)
            raise StateLockError(f"cannot lock {lock_path}", cause=e) from e
        self._lock_fd = fd

    def _unlock_file(self):
        if self._lock_fd is None:
            return
        fd, self._lock_fd = self._lock_fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def _refresh(self):
        # another process may have checkpointed since this copy was read
        data = self._read_document(self.path)
        if data is None:
            return
        self._data = {key: json.dumps(value, sort_keys=True) for key, value in data.items()}
        self._modified = False

    # ==========================================================================
    # Access
    # ==========================================================================

    def get(self, key: str) -> Any:
        """
        Return a copy of the value stored under key.

        Raises:
            NoStateError: If nothing is stored under key
        """
        self._ensure_locked()
        try:
            raw = self._data[key]
        except KeyError:
            raise NoStateError(key) from None
        return json.loads(raw)

    def set(self, key: str, value: Any):
        """Store a JSON-serializable value under key (None deletes it)"""
        self._ensure_locked()
        if value is None:
            if key in self._data:
                del self._data[key]
                self._modified = True
            return

        self._data[key] = json.dumps(value, sort_keys=True)
        self._modified = True

    def keys(self):
        self._ensure_locked()
        return sorted(self._data)

    # ==========================================================================
    # Persistence
    # ==========================================================================

    def checkpoint(self):
        """Write the whole document to the backing file atomically"""
        self._ensure_locked()
        if self.path is None:
            self._modified = False
            return

        document = {key: json.loads(raw) for key, raw in self._data.items()}
        self.path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{self.path.name}.", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        self._modified = False
        logger.debug(f"Checkpointed state to {self.path}")

# fleetgate/state_store.py
"""Durable, lockable record of the last-applied cluster state.

Everything goes through a key-value store with compare-and-swap semantics.
The cluster lock is itself a CAS-acquired lease in that store, so two
controllers on different machines sharing the store serialize correctly.
"""
from __future__ import annotations

import fcntl
import json
import logging
import os
import socket
import tempfile
import threading
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional, Protocol, Tuple

from pydantic import ValidationError

from fleetgate.errors import LockContention, ObservationError
from fleetgate.models.state import ClusterState

log = logging.getLogger(__name__)

Versioned = Tuple[str, int]


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[Versioned]:
        """Return (value, version) or None if the key does not exist."""

    def compare_and_swap(self, key: str, value: str, expected_version: Optional[int]) -> Optional[int]:
        """Write if the current version matches (None: only if absent). Return the new version or None."""

    def delete(self, key: str, expected_version: Optional[int]) -> bool:
        """Delete if the current version matches (None: unconditionally)."""


# ---------------------------------------------------------------------------
# Store backends
# ---------------------------------------------------------------------------
class MemoryKeyValueStore:
    """Process-local store, for embedding and tests."""

    def __init__(self):
        self._data: Dict[str, Versioned] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Versioned]:
        with self._lock:
            return self._data.get(key)

    def compare_and_swap(self, key: str, value: str, expected_version: Optional[int]) -> Optional[int]:
        with self._lock:
            cur = self._data.get(key)
            cur_version = cur[1] if cur else None
            if cur_version != expected_version:
                return None
            new_version = (cur_version or 0) + 1
            self._data[key] = (value, new_version)
            return new_version

    def delete(self, key: str, expected_version: Optional[int]) -> bool:
        with self._lock:
            cur = self._data.get(key)
            if cur is None:
                return expected_version is None
            if expected_version is not None and cur[1] != expected_version:
                return False
            del self._data[key]
            return True


class FileKeyValueStore:
    """JSON documents in a directory, one file per key.

    Writes go through a temp file + os.replace; read-modify-write cycles are
    serialized across processes with an fcntl lock on `.lock`.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory).expanduser().resolve()
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / (key.replace("/", "__") + ".json")

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        with open(self.directory / ".lock", "a+") as fh:
            fcntl.flock(fh, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fh, fcntl.LOCK_UN)

    def _read(self, key: str) -> Optional[Versioned]:
        path = self._path(key)
        if not path.exists():
            return None
        doc = json.loads(path.read_text())
        return doc["value"], int(doc["version"])

    def get(self, key: str) -> Optional[Versioned]:
        return self._read(key)

    def compare_and_swap(self, key: str, value: str, expected_version: Optional[int]) -> Optional[int]:
        with self._exclusive():
            cur = self._read(key)
            cur_version = cur[1] if cur else None
            if cur_version != expected_version:
                return None
            new_version = (cur_version or 0) + 1
            fd, tmp = tempfile.mkstemp(prefix=".kv-", dir=self.directory)
            with os.fdopen(fd, "w") as f:
                json.dump({"version": new_version, "value": value}, f)
            os.replace(tmp, self._path(key))
            return new_version

    def delete(self, key: str, expected_version: Optional[int]) -> bool:
        with self._exclusive():
            cur = self._read(key)
            if cur is None:
                return expected_version is None
            if expected_version is not None and cur[1] != expected_version:
                return False
            self._path(key).unlink()
            return True


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------
def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class StateStoreAdapter:
    """Lock-guarded access to one cluster's ClusterState."""

    def __init__(
        self,
        kv: KeyValueStore,
        cluster_name: str,
        owner: Optional[str] = None,
        lock_timeout: float = 30.0,
        lease_seconds: float = 600.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.kv = kv
        self.cluster_name = cluster_name
        self.owner = owner or default_owner()
        self.lock_timeout = lock_timeout
        self.lease_seconds = lease_seconds
        self.clock = clock
        self.sleep = sleep
        self._lock_version: Optional[int] = None
        self._state_version: Optional[int] = None

    @property
    def state_key(self) -> str:
        return f"clusters/{self.cluster_name}/state"

    @property
    def lock_key(self) -> str:
        return f"clusters/{self.cluster_name}/lock"

    @property
    def locked(self) -> bool:
        return self._lock_version is not None

    # ------------------------------------------------------------------
    # Lock
    # ------------------------------------------------------------------
    def _lease(self) -> str:
        return json.dumps({"owner": self.owner, "expiresAt": self.clock() + self.lease_seconds})

    def _try_acquire(self) -> Tuple[Optional[int], Optional[str]]:
        """One CAS attempt: (lock version, None) on success, (None, holder) otherwise."""
        cur = self.kv.get(self.lock_key)
        if cur is None:
            return self.kv.compare_and_swap(self.lock_key, self._lease(), None), None
        raw, cur_version = cur
        try:
            held = json.loads(raw)
        except ValueError:
            held = {"owner": "unknown", "expiresAt": 0}
        if held.get("expiresAt", 0) > self.clock():
            return None, held.get("owner")
        log.warning("taking over expired lock of %s on cluster %s", held.get("owner"), self.cluster_name)
        return self.kv.compare_and_swap(self.lock_key, self._lease(), cur_version), held.get("owner")

    def acquire(self) -> None:
        if self.locked:
            raise LockContention(f"cluster {self.cluster_name} lock is already held by this controller", self.owner)
        deadline = self.clock() + self.lock_timeout
        delay = 0.1
        while True:
            try:
                version, holder = self._try_acquire()
            except (OSError, ValueError) as e:
                raise ObservationError(f"state store unavailable while locking: {e}") from e
            if version is not None:
                self._lock_version = version
                log.debug("lock on cluster %s acquired by %s", self.cluster_name, self.owner)
                return
            remaining = deadline - self.clock()
            if remaining <= 0:
                raise LockContention(
                    f"cluster {self.cluster_name} is locked by {holder or 'another controller'}; retry later", holder
                )
            self.sleep(min(delay, remaining))
            delay = min(delay * 2, 2.0)

    def release(self) -> None:
        if not self.locked:
            return
        try:
            if not self.kv.delete(self.lock_key, self._lock_version):
                log.warning("lock on cluster %s was taken over before release", self.cluster_name)
        finally:
            self._lock_version = None
            self._state_version = None

    def renew(self) -> None:
        """Extend the lease; long applies renew on every save."""
        version = self.kv.compare_and_swap(self.lock_key, self._lease(), self._lock_version)
        if version is None:
            self._lock_version = None
            raise LockContention(f"lost the lock on cluster {self.cluster_name}")
        self._lock_version = version

    @contextmanager
    def lock(self) -> Iterator["StateStoreAdapter"]:
        self.acquire()
        try:
            yield self
        finally:
            self.release()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    def load(self) -> Optional[ClusterState]:
        """Read the stored state; None if the cluster was never applied."""
        try:
            item = self.kv.get(self.state_key)
        except (OSError, ValueError, KeyError) as e:
            raise ObservationError(f"cannot read state of cluster {self.cluster_name}: {e}") from e
        if item is None:
            self._state_version = None
            return None
        raw, version = item
        try:
            state = ClusterState.model_validate_json(raw)
        except ValidationError as e:
            raise ObservationError(f"stored state of cluster {self.cluster_name} is unreadable: {e}") from e
        self._state_version = version
        return state

    def _require_lock(self) -> None:
        if not self.locked:
            raise RuntimeError("cluster state can only be changed while holding the cluster lock")

    def save(self, state: ClusterState) -> None:
        self._require_lock()
        self.renew()
        state.revision += 1
        version = self.kv.compare_and_swap(self.state_key, state.model_dump_json(), self._state_version)
        if version is None:
            state.revision -= 1
            raise LockContention(f"state of cluster {self.cluster_name} changed concurrently")
        self._state_version = version
        log.debug("saved state of cluster %s (revision %d)", self.cluster_name, state.revision)

    def delete(self) -> None:
        self._require_lock()
        if not self.kv.delete(self.state_key, self._state_version):
            raise LockContention(f"state of cluster {self.cluster_name} changed concurrently")
        self._state_version = None
        log.info("state of cluster %s deleted", self.cluster_name)

"""Storage provider abstraction.

Every object is stored under a string key together with a generation
number (1 on first write, +1 on each replacement, 0 means absent). The
catalog pointer is swapped with a generation-checked CAS; log entries are
written with put_if_absent so each version slot can be claimed once.

Key types:
- StorageObject: Immutable bytes + generation read from a key
- StorageResult: Immutable result of a conditional write
- LatencyDistribution: Protocol for opaque latency sampling (simulation)
- LognormalLatency / FixedLatency: Concrete distributions
- StorageProvider: ABC with get/put/put_if_absent/cas/list_keys
- UnsupportedOperationError: Raised for unavailable operations

Concrete providers:
- InMemoryStorageProvider: Dict-backed, one lock per provider
- LocalFileStorageProvider: One file per key, os.replace for swaps
- ReadOnlyStorageProvider: Wraps another provider, rejects writes
"""

from __future__ import annotations

import json
import logging
import os
import socket
import struct
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from tablelog.errors import LockTimeoutError, NotFoundError

logger = logging.getLogger(__name__)

_VALID_PROVIDERS = frozenset({"memory", "local"})

# Big-endian generation prefix on every locally stored object
_HEADER = struct.Struct(">Q")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StorageObject:
    """Immutable snapshot of a stored object."""
    data: bytes
    generation: int


@dataclass(frozen=True)
class StorageResult:
    """Immutable result of a conditional write.

    On failure, generation is the generation found in storage (0 if absent).
    """
    success: bool
    generation: int


class UnsupportedOperationError(Exception):
    """Raised when a storage operation is not supported by the provider."""
    pass


# ---------------------------------------------------------------------------
# Latency distributions (used by the contention simulation)
# ---------------------------------------------------------------------------

class LatencyDistribution(ABC):
    """Opaque latency distribution that samples values in milliseconds."""

    @abstractmethod
    def sample(self, rng: np.random.RandomState) -> float:
        ...


@dataclass(frozen=True)
class LognormalLatency(LatencyDistribution):
    """Lognormal distribution with minimum floor.

    - mu = ln(median)
    - sigma controls tail heaviness
    - min_latency_ms is the physical network floor
    """
    mu: float
    sigma: float
    min_latency_ms: float = 1.0

    def sample(self, rng: np.random.RandomState) -> float:
        raw = rng.lognormal(mean=self.mu, sigma=self.sigma)
        return max(float(raw), self.min_latency_ms)

    @classmethod
    def from_median(cls, median_ms: float, sigma: float,
                    min_latency_ms: float = 1.0) -> LognormalLatency:
        """Construct from median latency (convenience)."""
        return cls(mu=float(np.log(median_ms)), sigma=sigma,
                   min_latency_ms=min_latency_ms)


@dataclass(frozen=True)
class FixedLatency(LatencyDistribution):
    """Fixed (deterministic) latency. Useful for testing."""
    latency_ms: float

    def sample(self, rng: np.random.RandomState) -> float:
        return self.latency_ms


# ---------------------------------------------------------------------------
# StorageProvider ABC
# ---------------------------------------------------------------------------

class StorageProvider(ABC):
    """Abstract key/value object store with conditional writes."""

    @abstractmethod
    def get(self, key: str) -> StorageObject | None:
        """Read object, or None if the key does not exist."""
        ...

    @abstractmethod
    def put(self, key: str, data: bytes) -> StorageResult:
        """Unconditional write. Always succeeds and bumps the generation."""
        ...

    @abstractmethod
    def put_if_absent(self, key: str, data: bytes) -> StorageResult:
        """Create key only if it does not exist yet."""
        ...

    @abstractmethod
    def cas(self, key: str, expected_generation: int, data: bytes) -> StorageResult:
        """Replace key only if its generation equals expected_generation.

        expected_generation=0 means the key must be absent.

        Raises:
            UnsupportedOperationError: If provider doesn't support CAS.
        """
        ...

    @abstractmethod
    def list_keys(self, prefix: str = "") -> list[str]:
        """Sorted keys that start with prefix."""
        ...

    @property
    @abstractmethod
    def supports_cas(self) -> bool:
        """Whether this provider supports conditional writes."""
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable provider name."""
        ...


# ---------------------------------------------------------------------------
# Concrete providers
# ---------------------------------------------------------------------------

class InMemoryStorageProvider(StorageProvider):
    """Dict-backed storage, safe for concurrent use from many threads."""

    def __init__(self):
        self._objects: dict[str, StorageObject] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> StorageObject | None:
        with self._lock:
            return self._objects.get(key)

    def put(self, key: str, data: bytes) -> StorageResult:
        with self._lock:
            current = self._objects.get(key)
            generation = (current.generation if current else 0) + 1
            self._objects[key] = StorageObject(bytes(data), generation)
            return StorageResult(success=True, generation=generation)

    def put_if_absent(self, key: str, data: bytes) -> StorageResult:
        with self._lock:
            current = self._objects.get(key)
            if current is not None:
                return StorageResult(success=False, generation=current.generation)
            self._objects[key] = StorageObject(bytes(data), 1)
            return StorageResult(success=True, generation=1)

    def cas(self, key: str, expected_generation: int, data: bytes) -> StorageResult:
        with self._lock:
            current = self._objects.get(key)
            found = current.generation if current else 0
            if found != expected_generation:
                return StorageResult(success=False, generation=found)
            self._objects[key] = StorageObject(bytes(data), found + 1)
            return StorageResult(success=True, generation=found + 1)

    def list_keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._objects if k.startswith(prefix))

    @property
    def supports_cas(self) -> bool:
        return True

    @property
    def name(self) -> str:
        return "memory"


class LocalFileStorageProvider(StorageProvider):
    """One file per key under a root directory.

    Each file holds an 8-byte generation header followed by the payload.
    put_if_absent uses os.link (fails if the target exists); cas holds an
    exclusive lock file while it compares and os.replace()s the object.
    Safe across threads and processes sharing the directory.

    Args:
        root: Warehouse directory.
        lock_timeout_s: How long a writer waits for a held lock.
        stale_lock_s: Age after which a lock left by a crashed writer is
            broken. Locks of dead processes on this host break at once.
        create: Create root if missing; otherwise a missing root raises
            NotFoundError.
    """

    _TMP_SUFFIX = ".tmp"
    _LOCK_SUFFIX = ".lock"

    def __init__(self, root: str | os.PathLike, lock_timeout_s: float = 10.0,
                 stale_lock_s: float = 5.0, create: bool = True):
        self._root = Path(root)
        if create:
            self._root.mkdir(parents=True, exist_ok=True)
        elif not self._root.is_dir():
            raise NotFoundError(f"Warehouse {str(self._root)!r} does not exist")
        self._lock_timeout_s = lock_timeout_s
        self._stale_lock_s = stale_lock_s

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        if key.startswith("/") or ".." in key.split("/"):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self._root / key

    def _write_tmp(self, path: Path, data: bytes, generation: int) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}{self._TMP_SUFFIX}")
        with open(tmp, "wb") as f:
            f.write(_HEADER.pack(generation))
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        return tmp

    @staticmethod
    def _read(path: Path) -> StorageObject | None:
        try:
            with open(path, "rb") as f:
                raw = f.read()
        except FileNotFoundError:
            return None
        (generation,) = _HEADER.unpack_from(raw)
        return StorageObject(raw[_HEADER.size:], generation)

    def _acquire(self, path: Path) -> tuple[Path, str]:
        """Take the lock file next to path; returns (lock, owner token).

        The lock records pid, host and a token. A waiter breaks the lock
        when its owner process on this host is gone, or when the file is
        older than stale_lock_s.

        Raises:
            LockTimeoutError: lock still held after lock_timeout_s.
        """
        lock = path.with_name(path.name + self._LOCK_SUFFIX)
        lock.parent.mkdir(parents=True, exist_ok=True)
        token = uuid.uuid4().hex
        owner = json.dumps({
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "token": token,
        }).encode("utf-8")
        deadline = time.monotonic() + self._lock_timeout_s
        delay = 0.0005
        while True:
            try:
                fd = os.open(lock, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if self._break_if_stale(lock):
                    continue
                if time.monotonic() > deadline:
                    raise LockTimeoutError(f"Timed out waiting for lock {lock}")
                time.sleep(delay)
                delay = min(delay * 2, 0.05)
                continue
            try:
                os.write(fd, owner)
            finally:
                os.close(fd)
            return lock, token

    @staticmethod
    def _release(lock: Path, token: str) -> None:
        try:
            owner = json.loads(lock.read_bytes())
        except (FileNotFoundError, ValueError):
            owner = {}
        if owner.get("token") == token:
            os.unlink(lock)
        else:
            logger.warning(f"Lock {lock} was broken while held")

    @staticmethod
    def _owner_alive(raw: bytes) -> bool:
        """False only when the owner is known to be a dead local process."""
        try:
            owner = json.loads(raw)
            pid, host = int(owner["pid"]), owner["host"]
        except (ValueError, KeyError, TypeError):
            # Still being written, or foreign; only age can break it
            return True
        if host != socket.gethostname():
            return True
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            pass
        return True

    def _break_if_stale(self, lock: Path) -> bool:
        """Remove lock if stale. True means the caller should retry at once."""
        try:
            raw = lock.read_bytes()
            age_s = time.time() - lock.stat().st_mtime
        except FileNotFoundError:
            return True
        if age_s <= self._stale_lock_s and self._owner_alive(raw):
            return False

        aside = lock.with_name(f".{lock.name}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(lock, aside)
        except FileNotFoundError:
            return True
        if aside.read_bytes() != raw:
            # A new owner took the lock after we looked; hand it back
            try:
                os.link(aside, lock)
            except FileExistsError:
                pass
        else:
            logger.warning(f"Broke stale lock {lock} (age {age_s:.1f}s)")
        os.unlink(aside)
        return True

    def get(self, key: str) -> StorageObject | None:
        return self._read(self._path(key))

    def put(self, key: str, data: bytes) -> StorageResult:
        path = self._path(key)
        lock, token = self._acquire(path)
        try:
            current = self._read(path)
            generation = (current.generation if current else 0) + 1
            os.replace(self._write_tmp(path, data, generation), path)
        finally:
            self._release(lock, token)
        return StorageResult(success=True, generation=generation)

    def put_if_absent(self, key: str, data: bytes) -> StorageResult:
        path = self._path(key)
        tmp = self._write_tmp(path, data, 1)
        try:
            os.link(tmp, path)
        except FileExistsError:
            current = self._read(path)
            return StorageResult(success=False,
                                 generation=current.generation if current else 0)
        finally:
            os.unlink(tmp)
        return StorageResult(success=True, generation=1)

    def cas(self, key: str, expected_generation: int, data: bytes) -> StorageResult:
        path = self._path(key)
        lock, token = self._acquire(path)
        try:
            current = self._read(path)
            found = current.generation if current else 0
            if found != expected_generation:
                return StorageResult(success=False, generation=found)
            os.replace(self._write_tmp(path, data, found + 1), path)
            return StorageResult(success=True, generation=found + 1)
        finally:
            self._release(lock, token)

    def list_keys(self, prefix: str = "") -> list[str]:
        keys = []
        for path in self._root.rglob("*"):
            if not path.is_file() or path.name.startswith("."):
                continue
            if path.name.endswith(self._LOCK_SUFFIX):
                continue
            key = path.relative_to(self._root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    @property
    def supports_cas(self) -> bool:
        return True

    @property
    def name(self) -> str:
        return "local"


class ReadOnlyStorageProvider(StorageProvider):
    """Read-only view over another provider (used by the inspection CLI)."""

    def __init__(self, inner: StorageProvider):
        self._inner = inner

    def get(self, key: str) -> StorageObject | None:
        return self._inner.get(key)

    def put(self, key: str, data: bytes) -> StorageResult:
        raise UnsupportedOperationError("read-only storage does not support put")

    def put_if_absent(self, key: str, data: bytes) -> StorageResult:
        raise UnsupportedOperationError("read-only storage does not support put_if_absent")

    def cas(self, key: str, expected_generation: int, data: bytes) -> StorageResult:
        raise UnsupportedOperationError("read-only storage does not support cas")

    def list_keys(self, prefix: str = "") -> list[str]:
        return self._inner.list_keys(prefix)

    @property
    def supports_cas(self) -> bool:
        return False

    @property
    def name(self) -> str:
        return f"readonly({self._inner.name})"


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_provider(provider_name: str,
                    root: str | os.PathLike | None = None,
                    read_only: bool = False) -> StorageProvider:
    """Factory function to create a StorageProvider from a provider name.

    Args:
        provider_name: One of 'memory', 'local'.
        root: Warehouse directory (required for 'local').
        read_only: Wrap the provider so that writes are rejected.
    """
    if provider_name not in _VALID_PROVIDERS:
        raise ValueError(
            f"Unknown provider: {provider_name!r}. Valid: {sorted(_VALID_PROVIDERS)}"
        )

    if provider_name == "memory":
        provider: StorageProvider = InMemoryStorageProvider()
    else:
        if root is None:
            raise ValueError("local storage provider requires a root directory")
        provider = LocalFileStorageProvider(root, create=not read_only)

    logger.debug(f"Created {provider.name} storage provider")
    return ReadOnlyStorageProvider(provider) if read_only else provider

"""Mutual exclusion keyed by order, product and cart IDs."""

import fcntl
import logging
import re
import threading
import time
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Iterator

from .errors import ContentionError

logger = logging.getLogger(__name__)

# Poll interval while waiting for another process's file lock
_POLL_INTERVAL = 0.01

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def order_key(order_id: str) -> str:
    return f"order:{order_id}"


def product_key(product_id: str) -> str:
    return f"product:{product_id}"


def cart_key(user_id: str) -> str:
    return f"cart:{user_id}"


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0  # holders plus waiters


class KeyedLocks:
    """
    One lock per key, created on first use and dropped when nobody holds or
    waits for it.

    hold() acquires all requested keys in sorted order, so two callers
    asking for overlapping key sets can't deadlock. Each wait is bounded;
    on timeout everything acquired so far is released and ContentionError
    is raised.

    With a lock_dir, every key is also guarded by an fcntl lock file in that
    directory, which extends the exclusion to other processes sharing the
    same data directory (a CLI run next to the API server, for example).
    """

    def __init__(self, timeout: float, lock_dir: Path | None = None):
        self.timeout = timeout
        self.lock_dir = Path(lock_dir) if lock_dir else None
        self._guard = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def _checkout(self, key: str) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.users += 1
            return entry

    def _checkin(self, key: str, entry: _Entry) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._entries[key]

    def _lock_path(self, key: str) -> Path:
        assert self.lock_dir is not None
        return self.lock_dir / f"{_UNSAFE_CHARS.sub('_', key)}.lock"

    @contextmanager
    def _thread_lock(self, key: str, deadline: float) -> Iterator[None]:
        entry = self._checkout(key)
        try:
            if not entry.lock.acquire(timeout=max(0.0, deadline - time.monotonic())):
                logger.warning("Lock contention on %s after %.2fs", key, self.timeout)
                raise ContentionError(key, self.timeout)
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)

    @contextmanager
    def _file_lock(self, key: str, deadline: float) -> Iterator[None]:
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        with open(self._lock_path(key), "w") as lock_file:
            while True:
                try:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        logger.warning(
                            "Lock contention on %s (held by another process) after %.2fs",
                            key, self.timeout,
                        )
                        raise ContentionError(key, self.timeout) from None
                    time.sleep(_POLL_INTERVAL)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                deadline = time.monotonic() + self.timeout
                stack.enter_context(self._thread_lock(key, deadline))
                if self.lock_dir is not None:
                    stack.enter_context(self._file_lock(key, deadline))
            yield

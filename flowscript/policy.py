from __future__ import annotations
import threading
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

from .types import CircuitState

PolicyKey = Tuple[str, str]  # (flow id, node id)


@dataclass(frozen=True)
class CircuitEntry:
    state: CircuitState = CircuitState.closed
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    failure_times: Tuple[float, ...] = ()

    def record_failure(self, now: float, threshold: int, window: Optional[float]) -> "CircuitEntry":
        if self.state == CircuitState.half_open:
            return CircuitEntry(CircuitState.open, self.consecutive_failures + 1, now)
        times = self.failure_times + (now,)
        if window is not None:
            times = tuple(t for t in times if now - t <= window)
        if len(times) >= threshold:
            return CircuitEntry(CircuitState.open, self.consecutive_failures + 1, now)
        return replace(self, consecutive_failures=self.consecutive_failures + 1, failure_times=times)

    def record_success(self) -> "CircuitEntry":
        return CircuitEntry()

    def accepts(self, admitted: CircuitState) -> bool:
        """Whether a call let through while the circuit was ``admitted`` may
        still settle this entry. A call that started closed must not close a
        circuit that concurrent failures have opened since."""
        return self.state in (CircuitState.closed, admitted)


@dataclass(frozen=True)
class RateEntry:
    """Debounce/throttle bookkeeping. ``pending`` is the generation of the
    most recent debounce trigger; an older trigger that wakes up and finds a
    newer generation has been superseded."""
    last_fire_at: Optional[float] = None
    pending: int = 0


class PolicyStore:
    """Keyed runtime state shared by every execution of a compiled program.

    Reads and writes to one key are linearized by a lock owned by that key,
    so unrelated circuits never contend. ``compare_and_swap`` compares by
    equality; entries are immutable, so a successful swap means nothing
    changed the entry in between.
    """

    def __init__(self):
        self._entries: Dict[Hashable, Any] = {}
        self._key_locks: Dict[Hashable, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, key: Hashable) -> threading.Lock:
        lock = self._key_locks.get(key)
        if lock is None:
            with self._registry_lock:
                lock = self._key_locks.setdefault(key, threading.Lock())
        return lock

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock_for(key):
            return self._entries.get(key, default)

    def compare_and_swap(self, key: Hashable, expected: Any, new: Any) -> bool:
        """Store ``new`` only if the current entry equals ``expected``
        (``None`` meaning absent)."""
        with self._lock_for(key):
            if self._entries.get(key) != expected:
                return False
            self._entries[key] = new
            return True

    def update(self, key: Hashable, fn: Callable[[Any], Any], default: Any = None) -> Tuple[Any, Any]:
        """Apply ``fn`` to the entry with a CAS loop; returns ``(old, new)``."""
        while True:
            current = self.get(key)
            new = fn(current if current is not None else default)
            if self.compare_and_swap(key, current, new):
                return current if current is not None else default, new

    def discard(self, key: Hashable):
        with self._lock_for(key):
            self._entries.pop(key, None)

    def keys(self):
        with self._registry_lock:
            return [k for k in self._key_locks if k in self._entries]

    def clear(self):
        """Drop every entry, one key at a time under that key's lock."""
        with self._registry_lock:
            keys = list(self._key_locks)
        for key in keys:
            self.discard(key)

    def __len__(self) -> int:
        return len(self._entries)

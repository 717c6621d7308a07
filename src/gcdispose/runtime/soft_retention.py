"""
Soft retention for SOFT tracking references.

CPython only has weak references, so a soft reference is a weak reference
plus a strong pin held here. The pool drops pins following the JVM's LRU
soft-reference policy: a pin survives while

    idle_ms <= available_memory_mb * ms_per_mb

so owners are kept longer when memory is plentiful and let go quickly under
pressure. A capacity bound evicts the least recently used pins first. Once a
pin is dropped, the owner is collectable again and its weakref callback
enqueues the tracking reference as usual.
"""

from __future__ import annotations

import gc
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional

import psutil

from gcdispose.config.logging_config import get_logger

if TYPE_CHECKING:
    from gcdispose.runtime.reference import TrackingReference

log = get_logger(__name__)

_BYTES_PER_MB = 1024 * 1024


def get_available_memory_mb() -> float:
    """Available system memory in megabytes."""
    return psutil.virtual_memory().available / _BYTES_PER_MB


@dataclass
class _Pin:
    owner: Any
    last_access: float


class SoftRetentionPool:
    """
    Strong pins keeping SOFT owners alive until policy lets them go.

    Thread-safe. Owners evicted by any operation are released after the pool
    lock is dropped, so finalizers triggered by the release never run under
    it.
    """

    def __init__(
        self,
        ms_per_mb: float = 1000.0,
        max_retained: int = 0,
        maintenance_interval: float = 1.0,
        available_memory_mb: Callable[[], float] = get_available_memory_mb,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            ms_per_mb: Idle milliseconds a pin survives per MB of available memory.
            max_retained: Maximum number of pins; 0 means unbounded.
            maintenance_interval: Minimum seconds between two sweeps triggered
                by `maintain()` without a pending full-collection notice.
            available_memory_mb: Source of available memory.
            clock: Monotonic time source in seconds.
        """
        if ms_per_mb < 0:
            raise ValueError("ms_per_mb must be non-negative")
        if max_retained < 0:
            raise ValueError("max_retained must be non-negative")
        if maintenance_interval < 0:
            raise ValueError("maintenance_interval must be non-negative")

        self._ms_per_mb = ms_per_mb
        self._max_retained = max_retained
        self._maintenance_interval = maintenance_interval
        self._available_memory_mb = available_memory_mb
        self._clock = clock
        self._pins: OrderedDict[TrackingReference, _Pin] = OrderedDict()
        self._lock = threading.Lock()
        self._last_sweep = clock()
        self._sweep_requested = False
        self._gc_hook: Optional[Callable[[str, dict], None]] = None

    @property
    def max_retained(self) -> int:
        return self._max_retained

    def __len__(self) -> int:
        with self._lock:
            return len(self._pins)

    def __contains__(self, ref: object) -> bool:
        with self._lock:
            return ref in self._pins

    def retain(self, ref: TrackingReference, owner: Any) -> None:
        """Pin `owner` on behalf of `ref`, evicting LRU pins over capacity."""
        evicted: list[_Pin] = []
        with self._lock:
            self._pins[ref] = _Pin(owner=owner, last_access=self._clock())
            self._pins.move_to_end(ref)
            if self._max_retained:
                while len(self._pins) > self._max_retained:
                    _, pin = self._pins.popitem(last=False)
                    evicted.append(pin)
        if evicted:
            log.debug(f"Soft retention over capacity, evicted {len(evicted)} owner(s)")
        del evicted

    def release(self, ref: TrackingReference) -> bool:
        """Drop the pin held for `ref`. Returns True if there was one."""
        with self._lock:
            pin = self._pins.pop(ref, None)
        return pin is not None

    def touch(self, ref: TrackingReference) -> None:
        """Mark the pin for `ref` as recently used."""
        with self._lock:
            pin = self._pins.get(ref)
            if pin is None:
                return
            pin.last_access = self._clock()
            self._pins.move_to_end(ref)

    def idle_limit_ms(self) -> float:
        """Current idle budget in milliseconds, derived from available memory."""
        return max(self._available_memory_mb(), 0.0) * self._ms_per_mb

    def evict_stale(self) -> int:
        """Drop every pin idle for longer than the current budget."""
        limit_ms = self.idle_limit_ms()
        evicted: list[_Pin] = []
        with self._lock:
            now = self._clock()
            self._last_sweep = now
            self._sweep_requested = False
            # Pins are in LRU order: stop at the first one still within budget
            while self._pins:
                ref, pin = next(iter(self._pins.items()))
                if (now - pin.last_access) * 1000.0 <= limit_ms:
                    break
                del self._pins[ref]
                evicted.append(pin)
        count = len(evicted)
        if count:
            log.debug(f"Evicted {count} stale soft owner(s), idle limit {limit_ms:.0f}ms")
        del evicted
        return count

    def evict_all(self) -> int:
        """Drop every pin, e.g. before an allocation that may run out of memory."""
        with self._lock:
            evicted = list(self._pins.values())
            self._pins.clear()
        count = len(evicted)
        if count:
            log.info(f"Evicted all {count} soft owner(s)")
        del evicted
        return count

    def maintain(self, force: bool = False) -> int:
        """
        Sweep stale pins if a sweep is due.

        A sweep is due when forced, after a full collection was observed by
        the gc hook, or once `maintenance_interval` has elapsed.
        """
        with self._lock:
            due = (
                force
                or self._sweep_requested
                or (self._clock() - self._last_sweep) >= self._maintenance_interval
            )
        if not due:
            return 0
        return self.evict_stale()

    def request_sweep(self) -> None:
        """Make the next `maintain()` call sweep regardless of the interval."""
        self._sweep_requested = True

    def _on_gc(self, phase: str, info: dict) -> None:
        # No locking here: this runs inside the collector
        if phase == "stop" and info.get("generation") == 2:
            self._sweep_requested = True

    def install_gc_hook(self) -> None:
        """Request a sweep after every full collection."""
        if self._gc_hook is None:
            self._gc_hook = self._on_gc
            gc.callbacks.append(self._gc_hook)

    def uninstall_gc_hook(self) -> None:
        if self._gc_hook is not None:
            try:
                gc.callbacks.remove(self._gc_hook)
            except ValueError:
                pass
            self._gc_hook = None

    def __repr__(self) -> str:
        return f"SoftRetentionPool(retained={len(self)}, max_retained={self._max_retained}, ms_per_mb={self._ms_per_mb})"


_default_pool: Optional[SoftRetentionPool] = None
_default_pool_lock = threading.Lock()


def get_soft_retention_pool() -> SoftRetentionPool:
    """Return the process-wide soft retention pool, configured from Environment."""
    global _default_pool
    if _default_pool is None:
        with _default_pool_lock:
            if _default_pool is None:
                from gcdispose.config.environment import Environment

                settings = Environment.get_disposal_settings()
                pool = SoftRetentionPool(
                    ms_per_mb=settings.soft_ms_per_mb,
                    max_retained=settings.soft_max_retained,
                    maintenance_interval=settings.soft_maintenance_interval,
                )
                pool.install_gc_hook()
                _default_pool = pool
    return _default_pool


def reset_soft_retention_pool() -> None:
    """Release every pin and forget the process-wide pool (for testing)."""
    global _default_pool
    with _default_pool_lock:
        pool, _default_pool = _default_pool, None
    if pool is not None:
        pool.uninstall_gc_hook()
        pool.evict_all()

"""
The queue through which the collector reports cleared tracking references.
"""

from __future__ import annotations

import queue
import threading
from typing import TYPE_CHECKING, Optional

from gcdispose.config.logging_config import get_logger
from gcdispose.observability.metrics import record_pending

if TYPE_CHECKING:
    from gcdispose.runtime.reference import TrackingReference

log = get_logger(__name__)


class DisposalQueue:
    """
    Concurrent FIFO of tracking references whose owners have been cleared.

    Producers are weakref callbacks, which may run on any thread and in the
    middle of a garbage collection, so `enqueue` only calls
    `queue.SimpleQueue.put` (reentrant, never blocks). Consumers are
    DisposalDrainer workers calling `get`.

    The queue also keeps every registered reference alive until it is
    disposed: a weakref whose holder has itself been collected never fires
    its callback.
    """

    def __init__(self) -> None:
        self._queue: queue.SimpleQueue[TrackingReference] = queue.SimpleQueue()
        self._pending: set[TrackingReference] = set()
        self._lock = threading.RLock()

    @property
    def pending_count(self) -> int:
        """Number of registered references not yet disposed."""
        with self._lock:
            return len(self._pending)

    def qsize(self) -> int:
        """Approximate number of cleared references waiting to be drained."""
        return self._queue.qsize()

    def empty(self) -> bool:
        return self._queue.empty()

    def register(self, ref: TrackingReference) -> None:
        with self._lock:
            self._pending.add(ref)
            pending = len(self._pending)
        record_pending(pending)

    def unregister(self, ref: TrackingReference) -> None:
        with self._lock:
            self._pending.discard(ref)
            pending = len(self._pending)
        record_pending(pending)

    def enqueue(self, ref: TrackingReference) -> None:
        """Hand a cleared reference to the drainer. Safe inside weakref callbacks."""
        self._queue.put(ref)

    def get(self, timeout: Optional[float] = None) -> Optional[TrackingReference]:
        """
        Wait for the next cleared reference.

        Args:
            timeout: Seconds to wait. None blocks indefinitely, <= 0 does not
                block at all.

        Returns:
            The next reference, or None if the timeout expired.
        """
        try:
            if timeout is not None and timeout <= 0:
                return self._queue.get_nowait()
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain_nowait(self) -> list[TrackingReference]:
        """Remove and return every reference currently queued."""
        drained: list[TrackingReference] = []
        while True:
            try:
                drained.append(self._queue.get_nowait())
            except queue.Empty:
                return drained

    def __repr__(self) -> str:
        return f"DisposalQueue(pending={self.pending_count}, queued={self.qsize()})"


_default_queue: Optional[DisposalQueue] = None
_default_queue_lock = threading.Lock()


def get_default_queue() -> DisposalQueue:
    """Return the process-wide disposal queue, creating it on first use."""
    global _default_queue
    if _default_queue is None:
        with _default_queue_lock:
            if _default_queue is None:
                _default_queue = DisposalQueue()
    return _default_queue


def reset_default_queue() -> None:
    """Forget the process-wide queue (for testing)."""
    global _default_queue
    with _default_queue_lock:
        if _default_queue is not None and _default_queue.pending_count:
            log.warning(f"Resetting default disposal queue with {_default_queue.pending_count} pending references")
        _default_queue = None

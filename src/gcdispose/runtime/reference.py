"""
Tracking references: bind a disposer to the reachability of an owner object.

A TrackingReference holds a weak reference to its owner and a zero-argument
disposer. The disposer runs at most once, either when application code calls
`dispose()` or when the owner is collected and the Drainer picks the
reference off its DisposalQueue. Both paths go through the same method and
the same per-instance lock.

SOFT references additionally pin the owner in a SoftRetentionPool, which
lets go of it under memory pressure, when it has been idle too long, or when
the pool is over capacity. Only then can the owner be collected.
"""

from __future__ import annotations

import threading
import weakref
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from gcdispose.config.logging_config import get_logger

if TYPE_CHECKING:
    from gcdispose.runtime.disposal_queue import DisposalQueue
    from gcdispose.runtime.soft_retention import SoftRetentionPool

log = get_logger(__name__)

Disposer = Callable[[], Any]


class ReferenceStrength(str, Enum):
    """How strongly a tracking reference holds on to its owner."""

    WEAK = "weak"
    SOFT = "soft"


class InvalidOwnerError(ValueError):
    """Raised when an owner cannot be tracked (None or not weak-referenceable)."""

    pass


class TrackingReference:
    """
    A weak or soft reference to an owner that carries a dispose-once action.

    Example:
        queue = DisposalQueue()
        handle = open_native_buffer()
        owner = Buffer(handle)
        ref = TrackingReference(owner, lambda: free_native_buffer(handle), queue=queue)

        # Either release explicitly...
        ref.dispose()
        # ...or drop `owner` and let a DisposalDrainer on `queue` do it.

    The disposer must not capture the owner itself, otherwise the owner stays
    reachable through the queue and is never collected.
    """

    __slots__ = ("_strength", "_disposer", "_lock", "_ref", "_queue", "_retention", "__weakref__")

    def __init__(
        self,
        owner: Any,
        disposer: Disposer,
        strength: ReferenceStrength = ReferenceStrength.WEAK,
        queue: Optional[DisposalQueue] = None,
        retention: Optional[SoftRetentionPool] = None,
    ):
        """
        Args:
            owner: Object whose reachability controls disposal. Must not be None
                and must support weak references.
            disposer: Zero-argument callable releasing the resource.
            strength: WEAK or SOFT.
            queue: Queue to enqueue this reference on when the owner is
                cleared. None leaves the reference untracked by the collector;
                it can then only be disposed explicitly.
            retention: Pool pinning SOFT owners. Defaults to the process-wide
                pool. Ignored for WEAK references.

        Raises:
            InvalidOwnerError: If owner is None or cannot be weakly referenced.
            TypeError: If disposer is not callable.
        """
        if owner is None:
            raise InvalidOwnerError("Cannot track a None owner")
        if not callable(disposer):
            raise TypeError(f"disposer must be callable, got {type(disposer).__name__}")

        strength = ReferenceStrength(strength)
        callback = self._on_owner_cleared if queue is not None else None
        try:
            owner_ref = weakref.ref(owner, callback)
        except TypeError as e:
            raise InvalidOwnerError(f"Objects of type {type(owner).__name__} cannot be tracked: {e}") from e

        self._strength = strength
        self._disposer: Optional[Disposer] = disposer
        self._lock = threading.RLock()
        self._ref: Optional[weakref.ref] = owner_ref
        self._queue = queue
        self._retention: Optional[SoftRetentionPool] = None

        # Resolve the pool first: a misconfigured pool must not leave this
        # reference registered with the queue.
        if strength is ReferenceStrength.SOFT and retention is None:
            from gcdispose.runtime.soft_retention import get_soft_retention_pool

            retention = get_soft_retention_pool()

        if queue is not None:
            queue.register(self)

        if strength is ReferenceStrength.SOFT:
            self._retention = retention
            try:
                retention.retain(self, owner)
            except BaseException:
                self._detach()
                raise

    @classmethod
    def create(
        cls,
        owner: Any,
        disposer: Disposer,
        strength: ReferenceStrength = ReferenceStrength.WEAK,
        queue: Optional[DisposalQueue] = None,
        retention: Optional[SoftRetentionPool] = None,
    ) -> "TrackingReference":
        """Create a tracking reference; see the constructor for arguments."""
        return cls(owner, disposer, strength=strength, queue=queue, retention=retention)

    @property
    def strength(self) -> ReferenceStrength:
        return self._strength

    @property
    def disposed(self) -> bool:
        """True once the disposer has been consumed."""
        return self._disposer is None

    def _on_owner_cleared(self, _ref: weakref.ref) -> None:
        # Runs inside the collector, possibly on any thread: enqueue only.
        queue = self._queue
        if queue is not None:
            queue.enqueue(self)

    def _detach(self) -> None:
        """Drop the owner link, queue registration and soft pin."""
        self._ref = None
        queue, self._queue = self._queue, None
        if queue is not None:
            queue.unregister(self)
        retention, self._retention = self._retention, None
        if retention is not None:
            retention.release(self)

    def dispose(self) -> bool:
        """
        Run the disposer if it has not run yet.

        The disposer is cleared before it is invoked, so a disposer that
        raises still counts as consumed and a re-entrant call from inside the
        disposer is a no-op. Concurrent callers wait for the first one to
        finish.

        Returns:
            True if this call ran the disposer, False if it had already run.
        """
        with self._lock:
            disposer = self._disposer
            if disposer is None:
                return False
            self._disposer = None
            self._detach()
            disposer()
            return True

    def peek(self) -> Optional[Any]:
        """
        Return the owner if it is still reachable, else None.

        Advisory only: the owner may be collected right after this returns,
        unless the caller keeps the returned object alive.
        """
        owner_ref = self._ref
        if owner_ref is None:
            return None
        owner = owner_ref()
        if owner is not None:
            retention = self._retention
            if retention is not None:
                retention.touch(self)
        return owner

    def __enter__(self) -> "TrackingReference":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.dispose()

    def __repr__(self) -> str:
        if self._disposer is None:
            status = "disposed"
        elif self._ref is not None and self._ref() is None:
            status = "cleared"
        else:
            status = "live"
        return f"TrackingReference(strength={self._strength.value}, status={status})"

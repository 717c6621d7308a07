"""
Tracking API and resource scopes.

`track()` is the main entry point: it attaches a disposer to an owner and
decides who is responsible for calling it. GC tracking hands the reference
to the process-wide DisposalQueue and its drainer. Stack tracking binds it
to the innermost ResourceScope, which disposes everything it holds when the
`with` block exits.
"""

from __future__ import annotations

import contextvars
import threading
from enum import Enum
from typing import Any, Optional

from gcdispose.config.logging_config import get_logger
from gcdispose.runtime.disposal_queue import DisposalQueue
from gcdispose.runtime.drainer import get_default_drainer
from gcdispose.runtime.reference import Disposer, ReferenceStrength, TrackingReference

log = get_logger(__name__)


class TrackType(str, Enum):
    """Who is responsible for disposing a tracked resource."""

    GC = "gc"
    STACK = "stack"
    AUTO = "auto"


# ContextVar to store the current scope
_current_scope: contextvars.ContextVar[Optional[ResourceScope]] = contextvars.ContextVar("_current_scope", default=None)


def require_scope() -> ResourceScope:
    """Get the current resource scope or raise if none is bound.

    Raises:
        RuntimeError: If no scope is currently bound
    """
    scope = _current_scope.get()
    if scope is None:
        raise RuntimeError("No ResourceScope is currently bound")
    return scope


def maybe_scope() -> Optional[ResourceScope]:
    """Get the current resource scope or None if not bound."""
    return _current_scope.get()


class ResourceScope:
    """
    Disposes the references registered with it when the scope exits.

    References are disposed in reverse registration order. Every reference
    is attempted even if an earlier disposer fails; failures are logged and
    the first one is re-raised once all have been processed.

    Example:
        with ResourceScope():
            buf = Buffer(handle)
            track(buf, lambda: free(handle), track_type=TrackType.STACK)
            ...
        # free(handle) has run here
    """

    def __init__(self) -> None:
        self._references: list[TrackingReference] = []
        self._lock = threading.Lock()
        self._token: Optional[contextvars.Token] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        with self._lock:
            return len(self._references)

    def add(self, ref: TrackingReference) -> TrackingReference:
        """Register a reference to be disposed when the scope closes."""
        with self._lock:
            if self._closed:
                raise RuntimeError("ResourceScope is closed")
            self._references.append(ref)
        return ref

    def close(self) -> int:
        """
        Dispose every registered reference.

        Returns:
            The number of disposers that ran.
        """
        with self._lock:
            self._closed = True
            references = self._references[::-1]
            self._references.clear()

        ran = 0
        first_error: Optional[Exception] = None
        for ref in references:
            try:
                if ref.dispose():
                    ran += 1
            except Exception as e:
                ran += 1
                log.warning(f"Disposer for {ref!r} failed while closing scope: {e}")
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error
        return ran

    def __enter__(self) -> "ResourceScope":
        if self._token is not None:
            raise RuntimeError("ResourceScope is already entered")
        self._token = _current_scope.set(self)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        token, self._token = self._token, None
        if token is not None:
            _current_scope.reset(token)
        self.close()


def track(
    owner: Any,
    disposer: Disposer,
    strength: ReferenceStrength = ReferenceStrength.WEAK,
    track_type: TrackType = TrackType.AUTO,
    queue: Optional[DisposalQueue] = None,
) -> TrackingReference:
    """
    Attach `disposer` to `owner` and return the tracking reference.

    Args:
        owner: Object whose lifetime governs the resource.
        disposer: Zero-argument callable releasing the resource. It must not
            capture `owner`.
        strength: WEAK or SOFT (GC tracking only).
        track_type: GC hands disposal to the collector and the default
            drainer; STACK binds it to the current ResourceScope; AUTO does
            GC tracking and, when a scope is active, stack tracking too.
        queue: Queue for GC and AUTO tracking. Defaults to the process-wide
            queue served by the default drainer; a custom queue needs its own
            DisposalDrainer. Not accepted with STACK tracking.

    Raises:
        InvalidOwnerError: If owner is None or not weak-referenceable.
        RuntimeError: If track_type is STACK and no scope is active.
        ValueError: If track_type is STACK and a queue is given.
    """
    track_type = TrackType(track_type)

    if track_type is TrackType.STACK:
        if queue is not None:
            raise ValueError("STACK tracking is not collector-driven and takes no queue")
        scope = require_scope()
        return scope.add(TrackingReference(owner, disposer, strength=strength))

    if queue is None:
        queue = get_default_drainer().queue
    ref = TrackingReference(owner, disposer, strength=strength, queue=queue)

    if track_type is TrackType.AUTO:
        scope = maybe_scope()
        if scope is not None:
            scope.add(ref)
    return ref

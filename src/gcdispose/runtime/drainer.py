"""
Background workers turning cleared references into disposer calls.
"""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING, Callable, Optional, Union

from gcdispose.config.logging_config import get_logger
from gcdispose.observability.metrics import DisposalOutcome, get_registry, record_disposal, record_drainer_restarts
from gcdispose.runtime.disposal_queue import DisposalQueue, get_default_queue

if TYPE_CHECKING:
    from gcdispose.runtime.reference import TrackingReference
    from gcdispose.runtime.soft_retention import SoftRetentionPool

log = get_logger(__name__)

ErrorHandler = Callable[["TrackingReference", BaseException], None]


class DisposalDrainer:
    """
    Consumes a DisposalQueue on one or more daemon threads and disposes each
    reference it receives.

    A disposer that raises never stops the drainer: the failure is reported
    through `on_error` (or logged) and draining continues with the next
    entry. With a single worker, references are disposed in the order the
    collector enqueued them.

    Each worker tick also gives the soft retention pool a chance to sweep,
    so SOFT owners are let go without a dedicated thread. Unless told
    otherwise a drainer maintains the process-wide pool, which is where SOFT
    references pin their owners by default.

    Example:
        queue = DisposalQueue()
        with DisposalDrainer(queue) as drainer:
            ref = TrackingReference(owner, close_handle, queue=queue)
            del owner  # the drainer calls close_handle()
    """

    def __init__(
        self,
        queue: Optional[DisposalQueue] = None,
        workers: int = 1,
        poll_interval: float = 0.5,
        on_error: Optional[ErrorHandler] = None,
        retention: Union[SoftRetentionPool, bool, None] = None,
        name: str = "gcdispose-drainer",
    ):
        """
        Args:
            queue: Queue to consume. Defaults to the process-wide queue.
            workers: Number of worker threads. Must be >= 1.
            poll_interval: Seconds a worker blocks on the queue before checking
                for shutdown and running soft retention maintenance.
            on_error: Called with (reference, exception) when a disposer fails.
                Defaults to logging the exception.
            retention: Soft retention pool to maintain between entries.
                None maintains the process-wide pool; False maintains none.
            name: Thread name prefix.

        Raises:
            ValueError: If workers < 1 or poll_interval <= 0.
        """
        if workers < 1:
            raise ValueError("workers must be a positive integer")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")

        self._queue = queue if queue is not None else get_default_queue()
        self._workers = workers
        self._poll_interval = poll_interval
        self._on_error = on_error
        if retention is None:
            from gcdispose.runtime.soft_retention import get_soft_retention_pool

            retention = get_soft_retention_pool()
        self._retention: Optional[SoftRetentionPool] = None if retention is False else retention
        self._name = name
        self._threads: list[Optional[threading.Thread]] = [None] * workers
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._started = False

    @property
    def queue(self) -> DisposalQueue:
        return self._queue

    @property
    def workers(self) -> int:
        return self._workers

    @property
    def is_running(self) -> bool:
        """True while every worker thread is alive."""
        with self._lock:
            return self._started and all(t is not None and t.is_alive() for t in self._threads)

    def start(self) -> "DisposalDrainer":
        """Start the worker threads. Starting a running drainer is a no-op."""
        with self._lock:
            if self._started:
                return self
            # A fresh event per start: workers left over from a timed-out
            # stop keep seeing theirs set and exit.
            self._stop_event = threading.Event()
            self._started = True
            for index in range(self._workers):
                self._spawn(index)
        log.debug(f"Started {self._name} with {self._workers} worker(s)")
        return self

    def _spawn(self, index: int) -> None:
        thread = threading.Thread(
            target=self._run,
            name=f"{self._name}-{index}",
            args=(index, self._stop_event),
            daemon=True,
        )
        self._threads[index] = thread
        thread.start()

    def ensure_running(self) -> int:
        """
        Start the drainer if needed and restart workers that died.

        Worker death means no further automatic disposal on that worker,
        which is why callers that rely on the drainer invoke this regularly.

        Returns:
            The number of workers restarted.
        """
        if not self._started:
            self.start()
            return 0

        restarted = 0
        with self._lock:
            if self._stop_event.is_set():
                return 0
            for index, thread in enumerate(self._threads):
                if thread is None or not thread.is_alive():
                    log.warning(f"Drainer worker {self._name}-{index} is not running, restarting")
                    self._spawn(index)
                    restarted += 1
        record_drainer_restarts(restarted)
        return restarted

    def _run(self, index: int, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            ref = self._queue.get(timeout=self._poll_interval)
            if ref is not None:
                self.dispose_one(ref)
            # A single worker maintains the pool to avoid redundant sweeps
            if index == 0 and self._retention is not None:
                try:
                    self._retention.maintain()
                except Exception:
                    log.exception("Soft retention maintenance failed")

    def dispose_one(self, ref: TrackingReference) -> bool:
        """
        Dispose a single dequeued reference, isolating disposer failures.

        Returns:
            True if the disposer ran (successfully or not), False if the
            reference had already been disposed.
        """
        started = time.perf_counter()
        try:
            disposed = ref.dispose()
        except Exception as e:
            record_disposal(DisposalOutcome.FAILED)
            self._report(ref, e)
            return True

        if disposed:
            record_disposal(DisposalOutcome.DISPOSED, time.perf_counter() - started)
        else:
            record_disposal(DisposalOutcome.SKIPPED)
        return disposed

    def _report(self, ref: TrackingReference, exc: Exception) -> None:
        if self._on_error is None:
            log.error(f"Disposer for {ref!r} failed: {exc}", exc_info=exc)
            return
        try:
            self._on_error(ref, exc)
        except Exception:
            log.exception(f"Error handler failed while reporting disposer failure for {ref!r}")

    def drain_pending(self) -> int:
        """
        Dispose everything currently queued on the calling thread.

        Returns:
            The number of disposers that ran.
        """
        count = 0
        for ref in self._queue.drain_nowait():
            if self.dispose_one(ref):
                count += 1
        return count

    def stop(self, timeout: Optional[float] = None, drain: bool = True) -> int:
        """
        Stop the workers and wait for them to exit.

        Args:
            timeout: Seconds to wait for each worker. None waits for the
                current poll tick to finish.
            drain: Dispose references still queued after the workers exit.

        Returns:
            The number of disposers run while draining.
        """
        with self._lock:
            self._stop_event.set()
            threads = [t for t in self._threads if t is not None]
            self._threads = [None] * self._workers
            self._started = False

        for thread in threads:
            if thread is not threading.current_thread():
                thread.join(timeout)
                if thread.is_alive():
                    log.warning(
                        f"Drainer worker {thread.name} did not stop within {timeout}s, "
                        "it exits after its current entry"
                    )

        drained = self.drain_pending() if drain else 0
        log.debug(f"Stopped {self._name}, drained {drained} pending reference(s)")
        return drained

    def __enter__(self) -> "DisposalDrainer":
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    def __repr__(self) -> str:
        status = "running" if self.is_running else "stopped"
        return f"DisposalDrainer(name={self._name}, workers={self._workers}, status={status})"


_default_drainer: Optional[DisposalDrainer] = None
_default_drainer_lock = threading.Lock()


def get_default_drainer() -> DisposalDrainer:
    """
    Return the process-wide drainer for the default queue, started and
    supervised (dead workers are restarted on every call).
    """
    global _default_drainer
    with _default_drainer_lock:
        if _default_drainer is None:
            from gcdispose.config.environment import Environment
            from gcdispose.observability.metrics import init_metrics
            from gcdispose.runtime.soft_retention import get_soft_retention_pool

            settings = Environment.get_disposal_settings()
            if settings.metrics_enabled and get_registry() is None:
                init_metrics(enabled=True)
            _default_drainer = DisposalDrainer(
                queue=get_default_queue(),
                workers=settings.workers,
                poll_interval=settings.poll_interval,
                retention=get_soft_retention_pool(),
            )
        drainer = _default_drainer
    drainer.ensure_running()
    return drainer


def shutdown_default_drainer(timeout: Optional[float] = None, drain: bool = True) -> int:
    """Stop and forget the process-wide drainer."""
    global _default_drainer
    with _default_drainer_lock:
        drainer, _default_drainer = _default_drainer, None
    if drainer is None:
        return 0
    return drainer.stop(timeout=timeout, drain=drain)

"""Controller wiring store watch events to reconcile workers.

The controller owns a ``WorkQueue`` and N worker threads. Store events
enqueue record keys; workers run the reconciler and turn its
``ReconcileResult`` into the next queue operation.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any

from issue_operator.logging import get_logger
from issue_operator.models import ObjectKey
from issue_operator.reconciler import IssueRequestReconciler, ReconcileResult
from issue_operator.store import RecordStore, WatchEvent
from issue_operator.types import ObjectKind, Outcome
from issue_operator.workqueue import WorkQueue

logger = get_logger(__name__)

DEFAULT_WORKERS = 2
DEFAULT_SHUTDOWN_TIMEOUT = 30.0  # seconds


class Controller:
    """Runs reconcile passes for IssueRequest records.

    Event handling:
    - Record added/modified/deleted: enqueue the record.
    - Status-only record update: ignored, so a pass's own status write
      does not trigger another pass.
    - Credential holder change: enqueue the owning record, so a token
      filled in by an operator is picked up immediately.
    """

    def __init__(
        self,
        store: RecordStore,
        reconciler: IssueRequestReconciler,
        workers: int = DEFAULT_WORKERS,
        queue: WorkQueue | None = None,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
    ) -> None:
        if workers < 1:
            raise ValueError(f"workers must be at least 1, got {workers}")
        self.store = store
        self.reconciler = reconciler
        self.workers = workers
        self.queue = queue if queue is not None else WorkQueue(name="issue-requests")
        self.shutdown_timeout = shutdown_timeout
        self._threads: list[threading.Thread] = []
        self._unsubscribe: Callable[[], None] | None = None
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started and any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        """Subscribe to the store, enqueue every existing record and start workers."""
        if self._started:
            raise RuntimeError("controller already started")
        self._started = True

        self._unsubscribe = self.store.watch(self.handle_event)
        records = self.store.list_records()
        for record in records:
            self.queue.add(record.key)

        for i in range(self.workers):
            thread = threading.Thread(
                target=self._run_worker,
                name=f"issue-operator-worker-{i}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

        logger.info(
            "Controller started with %s worker(s), %s record(s) queued",
            self.workers,
            len(records),
        )

    def stop(self) -> None:
        """Stop accepting events, shut the queue down and join workers."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.queue.shut_down()

        deadline = time.monotonic() + self.shutdown_timeout
        for thread in self._threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))

        alive = [t.name for t in self._threads if t.is_alive()]
        if alive:
            logger.warning(
                "Shutdown timeout (%ss) reached with workers still running: %s",
                self.shutdown_timeout,
                ", ".join(alive),
            )
        else:
            logger.info("Controller stopped")

    def handle_event(self, event: WatchEvent) -> None:
        """Map a store event to the record key to reconcile, if any."""
        if event.kind == ObjectKind.CREDENTIAL:
            if event.owner is not None:
                self.queue.add(event.owner)
            return

        if event.status_only:
            return

        self.queue.add(event.key)

    def process(self, key: ObjectKey) -> ReconcileResult | None:
        """Run one pass for ``key`` and schedule what follows.

        Returns:
            The pass result, or None if the reconciler raised.
        """
        try:
            result = self.reconciler.reconcile(key)
        except Exception:
            logger.exception("Unexpected error reconciling %s", key)
            self.queue.add_rate_limited(key)
            return None

        self._apply(key, result)
        return result

    def get_status(self) -> dict[str, Any]:
        """Snapshot of worker and queue state for health reporting."""
        return {
            "running": self.is_running,
            "workers": self.workers,
            "workers_alive": sum(1 for t in self._threads if t.is_alive()),
            "queue_depth": len(self.queue),
        }

    def _apply(self, key: ObjectKey, result: ReconcileResult) -> None:
        log = logger.with_context(record=str(key), outcome=result.outcome.value)

        if result.outcome == Outcome.DONE:
            self.queue.forget(key)
        elif result.outcome == Outcome.FATAL:
            log.debug("Not retrying: %s", result.error)
            self.queue.forget(key)
        elif result.outcome == Outcome.REQUEUE:
            self.queue.add(key)
        elif result.outcome == Outcome.REQUEUE_AFTER:
            self.queue.forget(key)
            self.queue.add_after(key, result.delay)
        elif result.outcome == Outcome.BACKOFF:
            delay = self.queue.add_rate_limited(key)
            log.debug("Retrying in %.3fs: %s", delay, result.error)

    def _run_worker(self) -> None:
        while True:
            key = self.queue.get()
            if key is None:
                return
            try:
                self.process(key)  # type: ignore[arg-type]
            finally:
                self.queue.done(key)

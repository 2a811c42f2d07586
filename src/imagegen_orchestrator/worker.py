from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait

from .errors import ConcurrencyError
from .loops import IterationLoop, LoopResult
from .state_store import GenerationStateStore

logger = logging.getLogger(__name__)


class GenerationWorker:
    """Polls the pending queue and drives claimed requests on a bounded thread pool.

    One claimed request is owned by exactly one pool thread until its loop
    returns. Lost claims are skipped; the next pending row is tried instead.
    """

    def __init__(
        self,
        *,
        store: GenerationStateStore,
        loop: IterationLoop,
        max_concurrent: int = 3,
        poll_interval_seconds: float = 2.0,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got: {max_concurrent}")
        self.store = store
        self.loop = loop
        self.max_concurrent = max_concurrent
        self.poll_interval_seconds = poll_interval_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_concurrent, thread_name_prefix="imagegen-worker")
        self._lock = threading.Lock()
        self._active: dict[str, Future[LoopResult]] = {}

    def _prune_locked(self) -> None:
        # Done callbacks run after waiters wake, so finished futures can linger briefly.
        self._active = {request_id: future for request_id, future in self._active.items() if not future.done()}

    @property
    def active_request_ids(self) -> list[str]:
        with self._lock:
            self._prune_locked()
            return list(self._active)

    def poll(self) -> list[str]:
        """Claim as many pending requests as there are free slots and start them.

        Returns:
            Ids of the requests claimed by this call, in pickup order.
        """
        with self._lock:
            self._prune_locked()
            free_slots = self.max_concurrent - len(self._active)
        if free_slots <= 0:
            return []

        claimed: list[str] = []
        for request_id in self.store.get_pending_request_ids():
            if len(claimed) >= free_slots:
                break
            try:
                self.loop.claim(request_id)
            except ConcurrencyError:
                logger.debug("lost claim on %s; trying the next pending request", request_id)
                continue
            future = self._executor.submit(self.loop.run, request_id)
            with self._lock:
                self._active[request_id] = future
            future.add_done_callback(lambda done, request_id=request_id: self._finished(request_id, done))
            claimed.append(request_id)
        if claimed:
            logger.info("claimed %d pending requests: %s", len(claimed), ", ".join(claimed))
        return claimed

    def _finished(self, request_id: str, future: Future[LoopResult]) -> None:
        with self._lock:
            self._active.pop(request_id, None)
        error = future.exception()
        if error is not None:
            logger.error("loop for request %s raised: %s", request_id, error)
            return
        result = future.result()
        logger.info(
            "request %s finished as %s (%s)",
            request_id,
            result.status.value,
            result.completion_reason.value if result.completion_reason else "no reason",
        )

    def wait(self, timeout: float | None = None) -> None:
        """Block until every running loop has returned."""
        with self._lock:
            futures = list(self._active.values())
        if futures:
            wait(futures, timeout=timeout)

    def run_forever(self, stop_event: threading.Event) -> None:
        logger.info("worker started (max_concurrent=%d)", self.max_concurrent)
        while not stop_event.is_set():
            self.poll()
            stop_event.wait(self.poll_interval_seconds)
        logger.info("worker stopping")

    def shutdown(self, wait_for_running: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_running)
        if wait_for_running:
            self.loop.close()

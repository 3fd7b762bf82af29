"""appointment_etl.worker

Background worker pool.

WorkerPool wraps a ThreadPoolExecutor.  submit() runs one unit of work;
submit_chain() runs a step function and, when the step returns a next
cursor, enqueues the following step as a new unit.  Steps of one chain are
strictly sequential: step n+1 is submitted only after step n has returned.

inline=True runs every unit in the caller's thread (CLI, tests); a chain
then runs to exhaustion in a loop before submit_chain() returns.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, TypeVar

log = logging.getLogger(__name__)

C = TypeVar("C")


class WorkerPool:
    def __init__(self, max_workers: int = 2, inline: bool = False) -> None:
        self._inline = inline
        self._executor = (
            None if inline
            else ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ingest")
        )
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._pending = 0

    # ------------------------------------------------------------------
    # bookkeeping
    # ------------------------------------------------------------------

    def _enter(self) -> None:
        with self._lock:
            self._pending += 1

    def _leave(self, fut: Future) -> None:
        exc = fut.exception()
        if exc is not None:
            log.error("Background unit failed: %s", exc, exc_info=exc)
        with self._lock:
            self._pending -= 1
            if self._pending == 0:
                self._idle.notify_all()

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        self._enter()
        if self._executor is None:
            fut: Future = Future()
            try:
                fut.set_result(fn(*args, **kwargs))
            except Exception as exc:
                fut.set_exception(exc)
        else:
            fut = self._executor.submit(fn, *args, **kwargs)
        fut.add_done_callback(self._leave)
        return fut

    def submit_chain(self, step: Callable[[C], C | None], cursor: C) -> Future:
        """Run step(cursor); a non-None return value becomes the next unit.

        Inline pools drive the whole chain as one unit in a loop.
        """
        if self._executor is None:

            def _drain(current: C | None) -> None:
                while current is not None:
                    current = step(current)

            return self.submit(_drain, cursor)

        def _run(current: C) -> C | None:
            nxt = step(current)
            if nxt is not None:
                self.submit_chain(step, nxt)
            return nxt

        return self.submit(_run, cursor)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until no unit (chained ones included) is pending."""
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)

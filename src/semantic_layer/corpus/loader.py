"""Background page loading with "last requested page wins" semantics."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from ..core.common import SemanticLayerError
from .accessor import CorpusAccessor, MessageRecord, decode_all

logger = logging.getLogger(__name__)

Post = Callable[[Callable[[], None]], None]


def _call_now(func: Callable[[], None]) -> None:
    func()


@dataclass
class PageResult:
    epoch: int
    session_id: object
    window_index: int
    window_size: int
    records: List[MessageRecord] = field(default_factory=list)
    error: Optional[SemanticLayerError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


PageCallback = Callable[[PageResult], None]


class PageLoader:
    """Fetch and decode session windows off the interaction thread.

    Every :meth:`request` bumps the epoch and cancels the previous pending
    future.  Results from an older epoch are dropped when the worker finishes
    and checked again right before the callback runs, because a newer request
    may land between the two.  ``post`` hands the delivery to the thread that
    owns the display.
    """

    def __init__(
        self,
        accessor: CorpusAccessor,
        *,
        executor: Optional[Executor] = None,
        post: Post = _call_now,
    ) -> None:
        self.accessor = accessor
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="page-loader")
        self._post = post
        self._lock = threading.RLock()
        self._epoch = 0
        self._pending: Optional[Future] = None

    @property
    def epoch(self) -> int:
        with self._lock:
            return self._epoch

    def is_current(self, epoch: int) -> bool:
        with self._lock:
            return epoch == self._epoch

    def request(
        self,
        session_id: object,
        window_index: int,
        window_size: int,
        callback: PageCallback,
    ) -> int:
        """Schedule a window fetch; returns the epoch identifying this request."""

        with self._lock:
            self._epoch += 1
            epoch = self._epoch
            if self._pending is not None and self._pending.cancel():
                logger.debug("Cancelled superseded page request (epoch %d)", epoch - 1)
            future = self._executor.submit(self._work, epoch, session_id, window_index, window_size, callback)
            self._pending = future
        future.add_done_callback(self._report_failure)
        logger.debug("Requested window %d of session %r (epoch %d)", window_index, session_id, epoch)
        return epoch

    def cancel(self) -> None:
        """Invalidate every outstanding request."""

        with self._lock:
            self._epoch += 1
            if self._pending is not None:
                self._pending.cancel()
            self._pending = None

    def shutdown(self) -> None:
        self.cancel()
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def _work(
        self,
        epoch: int,
        session_id: object,
        window_index: int,
        window_size: int,
        callback: PageCallback,
    ) -> Optional[PageResult]:
        if not self.is_current(epoch):
            return None
        result = PageResult(epoch, session_id, window_index, window_size)
        try:
            result.records = decode_all(self.accessor.fetch_window(session_id, window_index, window_size))
        except SemanticLayerError as exc:
            logger.warning("Loading window %d of session %r failed: %s", window_index, session_id, exc)
            result.error = exc
        except Exception as exc:
            logger.exception("Unexpected failure loading window %d of session %r", window_index, session_id)
            result.error = SemanticLayerError(f"Loading window {window_index} failed: {exc!r}")
            result.error.__cause__ = exc
        if not self.is_current(epoch):
            logger.debug("Dropping stale window %d (epoch %d)", window_index, epoch)
            return None
        self._post(lambda: self._deliver(result, callback))
        return result

    def _deliver(self, result: PageResult, callback: PageCallback) -> None:
        if not self.is_current(result.epoch):
            logger.debug("Discarding stale window %d at delivery (epoch %d)", result.window_index, result.epoch)
            return
        callback(result)

    @staticmethod
    def _report_failure(future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Page loader task failed", exc_info=exc)


__all__ = ["PageCallback", "PageLoader", "PageResult", "Post"]

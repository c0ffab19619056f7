from __future__ import annotations

import threading
from concurrent.futures import Executor, Future
from pathlib import Path
from typing import Callable, List, Tuple

import msgpack
import pytest

from semantic_layer.core.common import SemanticLayerError
from semantic_layer.corpus.accessor import CorpusAccessor
from semantic_layer.corpus.loader import PageLoader, PageResult


class ManualExecutor(Executor):
    """Queues work until the test runs it, in whatever order it likes."""

    def __init__(self) -> None:
        self.tasks: List[Tuple[Future, Callable[[], object]]] = []

    def submit(self, fn, /, *args, **kwargs) -> Future:  # type: ignore[override]
        future: Future = Future()
        self.tasks.append((future, lambda: fn(*args, **kwargs)))
        return future

    def run(self, index: int, *, ignore_cancel: bool = False) -> None:
        future, task = self.tasks[index]
        if not ignore_cancel and not future.set_running_or_notify_cancel():
            return
        result = task()
        if not future.cancelled():
            if future.running():
                future.set_result(result)


@pytest.fixture()
def big_db(capture_db_factory) -> Path:
    rows = [("s1", "p", f"t{i:03d}", msgpack.packb({"i": i})) for i in range(40)]
    return capture_db_factory(rows, name="big.sqlite")


def test_last_requested_window_wins(big_db: Path) -> None:
    executor = ManualExecutor()
    delivered: List[PageResult] = []
    with CorpusAccessor(big_db) as accessor:
        loader = PageLoader(accessor, executor=executor)

        loader.request("s1", 2, 5, delivered.append)
        loader.request("s1", 5, 5, delivered.append)

        # The window 2 job was cancelled before it started.
        executor.run(0)
        executor.run(1)

    assert [result.window_index for result in delivered] == [5]
    assert [r.value.to_python()["i"] for r in delivered[0].records] == [25, 26, 27, 28, 29]
    assert all(r.status == "ok" for r in delivered[0].records)


def test_stale_result_finishing_late_is_dropped(big_db: Path) -> None:
    executor = ManualExecutor()
    delivered: List[PageResult] = []
    with CorpusAccessor(big_db) as accessor:
        loader = PageLoader(accessor, executor=executor)

        loader.request("s1", 2, 5, delivered.append)
        loader.request("s1", 5, 5, delivered.append)
        executor.run(1)
        # Simulates a worker that had already started on window 2.
        executor.run(0, ignore_cancel=True)

    assert [result.window_index for result in delivered] == [5]


def test_result_superseded_between_worker_and_delivery(big_db: Path) -> None:
    executor = ManualExecutor()
    delivered: List[PageResult] = []
    posted: List[Callable[[], None]] = []
    with CorpusAccessor(big_db) as accessor:
        loader = PageLoader(accessor, executor=executor, post=posted.append)

        loader.request("s1", 2, 5, delivered.append)
        executor.run(0)
        assert len(posted) == 1

        loader.request("s1", 5, 5, delivered.append)
        executor.run(1)
        for func in posted:
            func()

    assert [result.window_index for result in delivered] == [5]


def test_store_errors_are_delivered(big_db: Path) -> None:
    executor = ManualExecutor()
    delivered: List[PageResult] = []
    accessor = CorpusAccessor(big_db)
    loader = PageLoader(accessor, executor=executor)

    loader.request("s1", 0, 5, delivered.append)
    accessor.close()
    executor.run(0)

    assert len(delivered) == 1
    assert not delivered[0].ok
    assert "closed" in str(delivered[0].error)


def test_cancel_invalidates_outstanding_requests(big_db: Path) -> None:
    executor = ManualExecutor()
    delivered: List[PageResult] = []
    with CorpusAccessor(big_db) as accessor:
        loader = PageLoader(accessor, executor=executor)
        epoch = loader.request("s1", 0, 5, delivered.append)
        loader.cancel()
        executor.run(0, ignore_cancel=True)

    assert delivered == []
    assert not loader.is_current(epoch)


def test_thread_pool_delivery(big_db: Path) -> None:
    done = threading.Event()
    delivered: List[PageResult] = []

    def on_page(result: PageResult) -> None:
        delivered.append(result)
        done.set()

    with CorpusAccessor(big_db) as accessor:
        loader = PageLoader(accessor)
        try:
            loader.request("s1", 7, 5, on_page)
            assert done.wait(timeout=5)
        finally:
            loader.shutdown()

    assert [r.record_id for r in delivered[0].records] == [36, 37, 38, 39, 40]


def test_unexpected_failures_are_delivered_as_errors(big_db: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    executor = ManualExecutor()
    delivered: List[PageResult] = []
    with CorpusAccessor(big_db) as accessor:
        loader = PageLoader(accessor, executor=executor)

        def broken(*_args: object) -> list:
            raise TypeError("unexpected column type")

        monkeypatch.setattr(accessor, "fetch_window", broken)
        loader.request("s1", 0, 5, delivered.append)
        executor.run(0)

    assert len(delivered) == 1
    assert not delivered[0].ok
    assert isinstance(delivered[0].error, SemanticLayerError)
    assert isinstance(delivered[0].error.__cause__, TypeError)


def test_bad_payloads_do_not_abort_the_window(capture_db_factory) -> None:
    rows = [
        ("s1", "p", "t0", 7),
        ("s1", "p", "t1", b"[" * 5000 + b"]" * 5000),
        ("s1", "p", "t2", msgpack.packb({"i": 1})),
    ]
    db = capture_db_factory(rows, name="mixed.sqlite")
    executor = ManualExecutor()
    delivered: List[PageResult] = []
    with CorpusAccessor(db) as accessor:
        loader = PageLoader(accessor, executor=executor)
        loader.request("s1", 0, 5, delivered.append)
        executor.run(0)

    assert delivered[0].ok
    assert [r.status for r in delivered[0].records] == ["undecodable", "undecodable", "ok"]

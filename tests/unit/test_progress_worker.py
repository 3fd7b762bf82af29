"""Unit tests for appointment_etl.progress (memory store) and
appointment_etl.worker.
"""

from __future__ import annotations

import logging
import threading

import pytest

from appointment_etl.progress import (
    KIND_IMPORT,
    KIND_SYNC,
    STATE_COMPLETE,
    MemoryProgressStore,
    ProgressState,
)
from appointment_etl.worker import WorkerPool


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# ProgressState
# ---------------------------------------------------------------------------

class TestProgressState:
    def test_advance_copies(self):
        s = ProgressState(run_id="r1", kind=KIND_IMPORT)
        s2 = s.advance(unit=3, imported=10)
        assert s.unit == 0
        assert (s2.unit, s2.imported, s2.run_id) == (3, 10, "r1")
        assert s2.updated_at >= s.updated_at

    def test_to_dict_is_json_friendly(self):
        d = ProgressState(run_id="r1", kind=KIND_SYNC, cursor={"page": 2}).to_dict()
        assert d["state"] == "running"
        assert d["cursor"] == {"page": 2}
        assert isinstance(d["started_at"], str)


# ---------------------------------------------------------------------------
# MemoryProgressStore
# ---------------------------------------------------------------------------

class TestMemoryProgressStore:
    def test_get_after_begin(self):
        store = MemoryProgressStore()
        store.begin(ProgressState(run_id="r1", kind=KIND_IMPORT))
        assert store.get("r1").run_id == "r1"
        assert store.latest(KIND_IMPORT).run_id == "r1"
        assert store.latest(KIND_SYNC) is None

    def test_put_does_not_move_latest(self):
        store = MemoryProgressStore()
        store.begin(ProgressState(run_id="r1", kind=KIND_IMPORT))
        store.put(ProgressState(run_id="r0", kind=KIND_IMPORT, state=STATE_COMPLETE))
        assert store.latest(KIND_IMPORT).run_id == "r1"
        assert store.get("r0").state == STATE_COMPLETE

    def test_latest_follows_newest_begin(self):
        store = MemoryProgressStore()
        store.begin(ProgressState(run_id="r1", kind=KIND_SYNC))
        store.begin(ProgressState(run_id="r2", kind=KIND_SYNC))
        assert store.latest(KIND_SYNC).run_id == "r2"
        assert store.get("r1") is not None

    def test_expires_after_ttl(self):
        clock = FakeClock()
        store = MemoryProgressStore(ttl_seconds=60, clock=clock)
        store.begin(ProgressState(run_id="r1", kind=KIND_IMPORT))
        clock.now += 59
        assert store.get("r1") is not None
        clock.now += 1
        assert store.get("r1") is None
        assert store.latest(KIND_IMPORT) is None

    def test_put_refreshes_ttl(self):
        clock = FakeClock()
        store = MemoryProgressStore(ttl_seconds=60, clock=clock)
        state = ProgressState(run_id="r1", kind=KIND_IMPORT)
        store.begin(state)
        clock.now += 50
        store.put(state.advance(unit=1))
        clock.now += 50
        assert store.get("r1").unit == 1

    def test_begin_drops_expired_states(self):
        clock = FakeClock()
        store = MemoryProgressStore(ttl_seconds=60, clock=clock)
        store.begin(ProgressState(run_id="r1", kind=KIND_IMPORT))
        store.begin(ProgressState(run_id="r2", kind=KIND_SYNC))
        clock.now += 60
        store.begin(ProgressState(run_id="r3", kind=KIND_IMPORT))
        assert set(store._states) == {"r3"}


# ---------------------------------------------------------------------------
# WorkerPool
# ---------------------------------------------------------------------------

def _countdown(seen: list[int]):
    def step(n: int) -> int | None:
        seen.append(n)
        return n - 1 if n > 1 else None
    return step


class TestWorkerPoolInline:
    def test_submit_returns_result(self):
        pool = WorkerPool(inline=True)
        assert pool.submit(lambda a, b: a + b, 2, 3).result() == 5

    def test_submit_captures_exception(self, caplog):
        pool = WorkerPool(inline=True)

        def boom():
            raise RuntimeError("boom")

        with caplog.at_level(logging.ERROR, logger="appointment_etl.worker"):
            fut = pool.submit(boom)
        with pytest.raises(RuntimeError):
            fut.result()
        assert "boom" in caplog.text
        assert pool.wait(timeout=0)

    def test_chain_runs_every_step_in_order(self):
        seen: list[int] = []
        pool = WorkerPool(inline=True)
        pool.submit_chain(_countdown(seen), 4)
        assert seen == [4, 3, 2, 1]
        assert pool.wait(timeout=0)

    def test_long_chain_completes(self):
        seen: list[int] = []
        pool = WorkerPool(inline=True)
        fut = pool.submit_chain(_countdown(seen), 1500)
        fut.result()
        assert len(seen) == 1500
        assert seen[-1] == 1
        assert pool.wait(timeout=0)


class TestWorkerPoolThreaded:
    def test_chain_and_wait(self):
        seen: list[int] = []
        pool = WorkerPool(max_workers=2)
        try:
            pool.submit_chain(_countdown(seen), 5)
            assert pool.wait(timeout=5)
        finally:
            pool.shutdown()
        assert seen == [5, 4, 3, 2, 1]

    def test_runs_off_caller_thread(self):
        pool = WorkerPool(max_workers=1)
        try:
            name = pool.submit(lambda: threading.current_thread().name).result(timeout=5)
        finally:
            pool.shutdown()
        assert name.startswith("ingest")

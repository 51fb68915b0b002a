"""Unit tests for the ContinuousScheduler."""

from __future__ import annotations

import time

import pytest

from lmengine.cache.slotted import CacheLayout, CacheSlotPool
from lmengine.engine.config import EngineConfig
from lmengine.engine.request import FinishReason, Request, RequestState
from lmengine.engine.sampler import SamplingParams
from lmengine.engine.scheduler import ContinuousScheduler
from lmengine.errors import QueueFullError


def _make_request(request_id: str, prompt_len: int = 3) -> Request:
    """Helper to create a dummy request."""
    return Request(
        request_id=request_id,
        prompt_token_ids=tuple(range(prompt_len)),
        sampling_params=SamplingParams(max_new_tokens=10),
        arrival_time_s=time.perf_counter(),
    )


def _make_scheduler(num_slots: int = 2, **overrides: object) -> ContinuousScheduler:
    config = EngineConfig(max_seq_len=16, num_slots=num_slots, **overrides)  # type: ignore[arg-type]
    pool = CacheSlotPool.allocate(CacheLayout(1, 1, 2), num_slots=num_slots, capacity=16)
    return ContinuousScheduler(config, pool)


class TestAdmission:
    def test_fifo_admission_up_to_pool_size(self) -> None:
        sched = _make_scheduler(num_slots=2)
        a, b, c = _make_request("a"), _make_request("b"), _make_request("c")
        for r in [a, b, c]:
            sched.add_request(r)

        admitted = sched.admit()
        assert [r.request_id for r in admitted] == ["a", "b"]
        assert a.state is RequestState.PREFILLING
        assert c.state is RequestState.QUEUED
        assert sched.num_active == 2
        assert sched.num_waiting == 1

    def test_admitted_requests_get_distinct_slots(self) -> None:
        sched = _make_scheduler(num_slots=3)
        reqs = [_make_request(str(i)) for i in range(3)]
        for r in reqs:
            sched.add_request(r)
        sched.admit()
        slots = [r.slot for r in reqs]
        assert all(s is not None for s in slots)
        assert len({s.index for s in slots if s is not None}) == 3
        assert [s.owner for s in slots if s is not None] == ["0", "1", "2"]

    def test_admit_after_retire(self) -> None:
        sched = _make_scheduler(num_slots=1)
        a, b = _make_request("a"), _make_request("b")
        sched.add_request(a)
        sched.add_request(b)
        sched.admit()
        assert sched.admit() == []

        a.state = RequestState.COMPLETED
        sched.retire(a)
        assert a.slot is None
        assert [r.request_id for r in sched.admit()] == ["b"]

    def test_running_excludes_terminal(self) -> None:
        sched = _make_scheduler(num_slots=2)
        a, b = _make_request("a"), _make_request("b")
        sched.add_request(a)
        sched.add_request(b)
        sched.admit()
        b.state = RequestState.DECODING
        assert [r.request_id for r in sched.running()] == ["a", "b"]

    def test_queue_full(self) -> None:
        sched = _make_scheduler(num_slots=1, max_waiting_requests=2)
        sched.add_request(_make_request("a"))
        sched.add_request(_make_request("b"))
        with pytest.raises(QueueFullError):
            sched.add_request(_make_request("c"))
        assert sched.num_waiting == 2

    def test_has_work(self) -> None:
        sched = _make_scheduler()
        assert not sched.has_work()
        req = _make_request("a")
        sched.add_request(req)
        assert sched.has_work()
        sched.admit()
        sched.retire(req)
        assert not sched.has_work()


class TestCancellation:
    def test_cancel_waiting(self) -> None:
        sched = _make_scheduler(num_slots=1)
        a, b = _make_request("a"), _make_request("b")
        sched.add_request(a)
        sched.add_request(b)
        b.cancel_requested = True

        cancelled = sched.process_cancellations()
        assert cancelled == [b]
        assert b.state is RequestState.CANCELLED
        assert b.finish_reason is FinishReason.CANCELLED
        assert [r.request_id for r in sched.waiting] == ["a"]

    def test_cancel_active_releases_slot(self) -> None:
        sched = _make_scheduler(num_slots=1)
        a = _make_request("a")
        sched.add_request(a)
        sched.admit()
        assert sched.pool.free_slot_count() == 0

        a.cancel_requested = True
        assert sched.process_cancellations() == [a]
        assert a.slot is None
        assert sched.pool.free_slot_count() == 1
        assert sched.num_active == 0

    def test_nothing_to_cancel(self) -> None:
        sched = _make_scheduler()
        sched.add_request(_make_request("a"))
        assert sched.process_cancellations() == []

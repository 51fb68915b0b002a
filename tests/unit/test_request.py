"""Unit tests for request lifecycle types."""

from __future__ import annotations

import time

import pytest

from lmengine.engine.request import FinishReason, OutputEvent, Request, RequestState
from lmengine.engine.sampler import SamplingParams


def _make_request(prompt_len: int = 5) -> Request:
    return Request(
        request_id="req-1",
        prompt_token_ids=tuple(range(1, prompt_len + 1)),
        sampling_params=SamplingParams(),
        arrival_time_s=time.perf_counter(),
    )


class TestRequestState:
    @pytest.mark.parametrize(
        "state", [RequestState.COMPLETED, RequestState.CANCELLED, RequestState.FAILED]
    )
    def test_terminal(self, state: RequestState) -> None:
        assert state.is_terminal
        assert not state.is_active

    @pytest.mark.parametrize("state", [RequestState.PREFILLING, RequestState.DECODING])
    def test_active(self, state: RequestState) -> None:
        assert state.is_active
        assert not state.is_terminal

    def test_queued_is_neither(self) -> None:
        assert not RequestState.QUEUED.is_active
        assert not RequestState.QUEUED.is_terminal


class TestRequest:
    def test_initial_state(self) -> None:
        req = _make_request()
        assert req.state is RequestState.QUEUED
        assert req.generated_token_ids == []
        assert req.finish_reason is None
        assert req.slot is None
        assert req.events.empty()

    def test_cursor(self) -> None:
        req = _make_request(prompt_len=4)
        assert req.cursor == 4
        req.generated_token_ids.extend([9, 9])
        assert req.cursor == 6

    def test_prefill_input_whole_prompt(self) -> None:
        req = _make_request(prompt_len=5)
        req.state = RequestState.PREFILLING
        assert req.next_input_tokens() == [1, 2, 3, 4, 5]

    def test_prefill_input_chunked(self) -> None:
        req = _make_request(prompt_len=5)
        req.state = RequestState.PREFILLING
        assert req.next_input_tokens(2) == [1, 2]
        req.prefill_progress = 4
        assert req.next_input_tokens(2) == [5]
        assert not req.prefill_done
        req.prefill_progress = 5
        assert req.prefill_done

    def test_decode_input_is_last_token(self) -> None:
        req = _make_request()
        req.state = RequestState.DECODING
        req.generated_token_ids.extend([7, 8])
        assert req.next_input_tokens(2) == [8]

    def test_no_input_when_queued(self) -> None:
        with pytest.raises(RuntimeError):
            _make_request().next_input_tokens()


class TestOutputEvent:
    def test_defaults(self) -> None:
        event = OutputEvent(request_id="r", token_id=3, is_final=False)
        assert event.finish_reason is None
        assert event.text_delta == ""
        assert event.error is None

    def test_final(self) -> None:
        event = OutputEvent("r", None, True, finish_reason=FinishReason.CANCELLED)
        assert event.is_final
        assert event.finish_reason.value == "cancelled"

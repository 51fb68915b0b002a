"""Request lifecycle types for the generation engine."""

from __future__ import annotations

import queue
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

import torch

from lmengine.engine.sampler import SamplingParams

if TYPE_CHECKING:
    from lmengine.cache.slotted import CacheSlot
    from lmengine.engine.stop import StopChecker


class RequestState(Enum):
    """Lifecycle states for a generation request.

    Transitions::

        QUEUED ──(slot bound)──> PREFILLING ──(prompt consumed)──> DECODING ──(stop)──> COMPLETED
           │                        │                                 │
           └────────(cancel)────────┴─────────────────────────────────┴──> CANCELLED
                                    │                                 │
                                    └────────(error)──────────────────┴──> FAILED
    """

    QUEUED = "queued"
    PREFILLING = "prefilling"
    DECODING = "decoding"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES

    @property
    def is_active(self) -> bool:
        return self in (RequestState.PREFILLING, RequestState.DECODING)


_TERMINAL_STATES = frozenset({RequestState.COMPLETED, RequestState.CANCELLED, RequestState.FAILED})


class FinishReason(Enum):
    """Why a request reached a terminal state."""

    LENGTH = "length"
    STOP = "stop"
    EOS = "eos"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass
class OutputEvent:
    """Per-step result delivered to the caller through :meth:`Engine.poll`.

    One event is produced per sampled token.  The last event for a request
    has ``is_final=True`` and a ``finish_reason``; cancellation and failure
    events carry no token.
    """

    request_id: str
    token_id: int | None
    is_final: bool
    finish_reason: FinishReason | None = None
    text_delta: str = ""
    error: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass
class Request:
    """A single generation request tracked by the engine.

    Created by ``Engine.submit()``.  The scheduler and engine mutate
    ``state``, ``slot`` and ``generated_token_ids`` as the request
    progresses; nothing else writes to ``generated_token_ids``.
    """

    request_id: str
    prompt_token_ids: tuple[int, ...]
    sampling_params: SamplingParams
    arrival_time_s: float

    # Mutable state
    state: RequestState = RequestState.QUEUED
    generated_token_ids: list[int] = field(default_factory=list)
    finish_reason: FinishReason | None = None
    error: str | None = None

    # Per-request RNG; None means non-deterministic sampling.
    generator: torch.Generator | None = field(default=None, repr=False)

    # Bound cache slot while PREFILLING/DECODING, None otherwise.  A plain
    # reference: the pool owns the slot and retire() clears this field.
    slot: CacheSlot | None = field(default=None, repr=False)

    # Number of prompt tokens already written to the slot.
    prefill_progress: int = field(default=0, repr=False)

    # Set by Engine.cancel(); acted on at the start of the next tick.
    cancel_requested: bool = field(default=False, repr=False)

    stop_checker: StopChecker | None = field(default=None, repr=False)

    # Output channel read by Engine.poll().
    events: queue.Queue[OutputEvent] = field(default_factory=queue.Queue, repr=False)

    @property
    def cursor(self) -> int:
        """Logical sequence length: prompt plus generated tokens."""
        return len(self.prompt_token_ids) + len(self.generated_token_ids)

    @property
    def prefill_done(self) -> bool:
        return self.prefill_progress >= len(self.prompt_token_ids)

    def next_input_tokens(self, chunk_size: int | None = None) -> list[int]:
        """Tokens this request feeds to the next forward pass.

        Prefilling requests contribute their remaining prompt (capped at
        *chunk_size*); decoding requests contribute their last sampled token.
        """
        if self.state is RequestState.PREFILLING:
            end = len(self.prompt_token_ids)
            if chunk_size is not None:
                end = min(end, self.prefill_progress + chunk_size)
            return list(self.prompt_token_ids[self.prefill_progress : end])
        if self.state is RequestState.DECODING:
            return [self.generated_token_ids[-1]]
        raise RuntimeError(f"request {self.request_id} has no input in state {self.state.value}")

"""Decode step executor: one batched forward pass with per-element isolation."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from torch import Tensor

from lmengine.cache.slotted import CacheSlot, CacheSlotPool
from lmengine.engine.backend import ForwardBatch, ModelBackend
from lmengine.engine.request import Request
from lmengine.errors import BackendError, CapacityExceeded, EngineError

logger = logging.getLogger(__name__)


@dataclass
class StepInput:
    """One batch element: a request, its bound slot, and the tokens to feed."""

    request: Request
    slot: CacheSlot
    token_ids: list[int]


@dataclass
class StepResult:
    """Outcome for one batch element: ``logits`` on success, ``error`` otherwise."""

    input: StepInput
    logits: Tensor | None = None
    error: EngineError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class DecodeStepExecutor:
    """Runs the model forward pass for a batch of active requests.

    Each element writes ``len(token_ids)`` new K/V positions into its slot
    at ``[slot.length, slot.length + len(token_ids))``.  Slot lengths are
    only advanced after the backend returns, so a failing call leaves the
    slots as they were.

    Failures are isolated per element:

    - An element that would overflow its slot gets ``CapacityExceeded``
      and is left out of the forward pass.
    - If the batched call raises, every element is re-run alone so only
      the element(s) that actually fail get a ``BackendError``.

    Args:
        backend: The model backend.
        pool: The pool the slots belong to.
    """

    def __init__(self, backend: ModelBackend, pool: CacheSlotPool) -> None:
        self.backend = backend
        self.pool = pool

    def execute(self, batch: list[StepInput]) -> list[StepResult]:
        """Advance every element of *batch* by one forward pass.

        Returns one :class:`StepResult` per element, in input order.
        """
        if not batch:
            raise ValueError("batch must not be empty")

        results = [StepResult(item) for item in batch]
        runnable: list[int] = []
        for i, item in enumerate(batch):
            if not item.token_ids:
                raise ValueError(f"request {item.request.request_id} has no input tokens")
            end = item.slot.length + len(item.token_ids)
            if end > item.slot.capacity:
                results[i].error = CapacityExceeded(
                    f"request {item.request.request_id}: writing to position {end} "
                    f"but slot capacity is {item.slot.capacity}"
                )
                logger.warning("Capacity exceeded for request %s", item.request.request_id)
            else:
                runnable.append(i)

        if not runnable:
            return results

        try:
            logits = self._forward([batch[i] for i in runnable])
        except Exception as exc:
            if len(runnable) == 1:
                results[runnable[0]].error = _as_engine_error(exc)
                return results
            logger.warning(
                "Batched forward failed (%s); retrying %d elements one by one", exc, len(runnable)
            )
            for i in runnable:
                try:
                    results[i].logits = self._forward([batch[i]])[0]
                except Exception as single_exc:
                    logger.warning(
                        "Forward failed for request %s: %s",
                        batch[i].request.request_id,
                        single_exc,
                    )
                    results[i].error = _as_engine_error(single_exc)
            return results

        for row, i in enumerate(runnable):
            results[i].logits = logits[row]
        return results

    def _forward(self, items: list[StepInput]) -> Tensor:
        slots = [item.slot for item in items]
        start_positions = [slot.length for slot in slots]
        token_ids = [item.token_ids for item in items]
        view = self.pool.batched_view(slots, start_positions, [len(t) for t in token_ids])

        logits = self.backend.forward(ForwardBatch(token_ids, start_positions, view))
        if logits.dim() != 2 or logits.shape[0] != len(items):
            raise BackendError(
                f"backend returned logits of shape {tuple(logits.shape)} "
                f"for a batch of {len(items)}"
            )

        for item in items:
            item.slot.advance(len(item.token_ids))
        return logits


def _as_engine_error(exc: Exception) -> EngineError:
    if isinstance(exc, EngineError):
        return exc
    error = BackendError(f"{type(exc).__name__}: {exc}")
    error.__cause__ = exc
    return error

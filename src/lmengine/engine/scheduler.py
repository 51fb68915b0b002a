"""Continuous batching scheduler: waiting queue, active set, admission."""

from __future__ import annotations

import logging
from collections import deque

from lmengine.cache.slotted import CacheSlotPool
from lmengine.engine.config import EngineConfig
from lmengine.engine.request import FinishReason, Request, RequestState
from lmengine.errors import QueueFullError

logger = logging.getLogger(__name__)


class ContinuousScheduler:
    """Per-step bookkeeping for continuous batching.

    Owns the FIFO ``waiting`` queue and the ``active`` set (requests bound to
    a cache slot).  Each engine tick calls, in order:

    1. :meth:`process_cancellations` to drop requests flagged by ``cancel``.
    2. :meth:`admit` to bind free slots to the head of the waiting queue.
    3. :meth:`running` to get the batch for the forward pass.

    and :meth:`retire` for every request that reaches a terminal state.

    Admission is strict FIFO: the head of the queue is never skipped.
    The scheduler is not thread-safe; the engine serializes access.
    """

    def __init__(self, config: EngineConfig, pool: CacheSlotPool) -> None:
        self.config = config
        self.pool = pool
        self.waiting: deque[Request] = deque()
        # Insertion-ordered, so batches follow admission order.
        self.active: dict[str, Request] = {}

    def add_request(self, request: Request) -> None:
        """Append a request to the waiting queue.

        Raises:
            QueueFullError: If ``max_waiting_requests`` requests are waiting.
        """
        if len(self.waiting) >= self.config.max_waiting_requests:
            raise QueueFullError(
                f"waiting queue is full (max_waiting_requests={self.config.max_waiting_requests})"
            )
        request.state = RequestState.QUEUED
        self.waiting.append(request)

    def process_cancellations(self) -> list[Request]:
        """Move every request flagged for cancellation to ``CANCELLED``.

        Releases the slots of cancelled active requests.  Returns the
        cancelled requests so the engine can emit their final events.
        """
        cancelled: list[Request] = []

        if any(r.cancel_requested for r in self.waiting):
            kept: deque[Request] = deque()
            for req in self.waiting:
                if req.cancel_requested:
                    cancelled.append(req)
                else:
                    kept.append(req)
            self.waiting = kept

        for req in [r for r in self.active.values() if r.cancel_requested]:
            self.retire(req)
            cancelled.append(req)

        for req in cancelled:
            req.state = RequestState.CANCELLED
            req.finish_reason = FinishReason.CANCELLED
            logger.debug("Cancelled request %s", req.request_id)
        return cancelled

    def admit(self) -> list[Request]:
        """Bind free slots to waiting requests in FIFO order.

        Returns the newly admitted requests (now ``PREFILLING``).
        """
        admitted: list[Request] = []
        while self.waiting and self.pool.free_slot_count() > 0:
            req = self.waiting.popleft()
            slot = self.pool.acquire(owner=req.request_id)
            assert slot is not None
            req.slot = slot
            req.prefill_progress = 0
            req.state = RequestState.PREFILLING
            self.active[req.request_id] = req
            admitted.append(req)
            logger.debug("Admitted request %s into slot %d", req.request_id, slot.index)
        return admitted

    def running(self) -> list[Request]:
        """Active requests (``PREFILLING`` or ``DECODING``) in admission order."""
        return [r for r in self.active.values() if r.state.is_active]

    def retire(self, request: Request) -> None:
        """Remove a request from the active set and release its slot."""
        self.active.pop(request.request_id, None)
        if request.slot is not None:
            self.pool.release(request.slot)
            request.slot = None
        logger.debug("Retired request %s", request.request_id)

    def has_work(self) -> bool:
        """True if there are active or waiting requests."""
        return bool(self.active) or bool(self.waiting)

    @property
    def num_waiting(self) -> int:
        return len(self.waiting)

    @property
    def num_active(self) -> int:
        return len(self.active)

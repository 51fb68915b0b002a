"""Engine: orchestrates scheduler, step executor, sampling, and request lifecycle."""

from __future__ import annotations

import dataclasses
import logging
import queue
import threading
import time
import uuid
from collections.abc import Iterator, Sequence
from dataclasses import dataclass

from lmengine.cache.slotted import CacheSlotPool
from lmengine.engine.backend import ModelBackend
from lmengine.engine.config import EngineConfig
from lmengine.engine.executor import DecodeStepExecutor, StepInput, StepResult
from lmengine.engine.request import FinishReason, OutputEvent, Request, RequestState
from lmengine.engine.sampler import SamplingParams, make_generator, sample_token
from lmengine.engine.scheduler import ContinuousScheduler
from lmengine.engine.stop import StopChecker
from lmengine.errors import BackendError, UnknownRequestError, ValidationError
from lmengine.loader.protocol import TokenizerProtocol

logger = logging.getLogger(__name__)


@dataclass
class GenerationResult:
    """Result of a blocking :meth:`Engine.generate` call."""

    request_id: str
    token_ids: list[int]
    """Generated token IDs (excluding the prompt)."""

    text: str
    """Concatenated text deltas (empty without a tokenizer)."""

    finish_reason: FinishReason
    prompt_tokens: int
    generated_tokens: int
    error: str | None = None


class Engine:
    """Continuous batching generation engine.

    The engine owns the cache slot pool, the scheduler, and the step
    executor.  The transport layer calls :meth:`submit`, :meth:`poll` and
    :meth:`cancel` from any thread; generation advances one tick per
    :meth:`step` call, driven either by the caller, by :meth:`run_until_idle`,
    or by the background thread started with :meth:`start`.

    One tick:

    1. Apply pending cancellations (slots released, final events emitted).
    2. Admit waiting requests into free slots, FIFO.
    3. Run one batched forward pass over every prefilling/decoding request.
    4. Sample a token for each request whose prompt is fully consumed,
       then evaluate its stop conditions.
    5. Retire finished or failed requests and emit their final events;
       emit a token event for the rest.

    Args:
        config: Engine configuration.
        backend: Model backend providing the batched forward pass.
        tokenizer: Optional tokenizer for text prompts, text stop strings,
            text deltas, and default EOS ids.
    """

    def __init__(
        self,
        config: EngineConfig,
        backend: ModelBackend,
        tokenizer: TokenizerProtocol | None = None,
    ) -> None:
        self.config = config
        self.backend = backend
        self.tokenizer = tokenizer

        if config.eos_token_ids is not None:
            self.eos_token_ids: frozenset[int] = config.eos_token_ids
        elif tokenizer is not None:
            self.eos_token_ids = frozenset(tokenizer.eos_token_ids)
        else:
            self.eos_token_ids = frozenset()

        self.pool = CacheSlotPool.allocate(
            backend.cache_layout,
            num_slots=config.num_slots,
            capacity=config.max_seq_len,
            dtype=config.torch_dtype,
            device=config.device,
        )
        self.scheduler = ContinuousScheduler(config, self.pool)
        self.executor = DecodeStepExecutor(backend, self.pool)

        self._requests: dict[str, Request] = {}
        # Forgotten while running; dropped instead of queueing their final event.
        self._detached: set[str] = set()
        # Guards scheduler state and _requests against submit/cancel/poll threads.
        self._lock = threading.Lock()
        # Serializes ticks.
        self._tick_lock = threading.Lock()

        self._running = False
        self._wakeup = threading.Event()
        self._thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Transport-facing API
    # ------------------------------------------------------------------

    def submit(
        self,
        prompt: str | Sequence[int],
        sampling_params: SamplingParams | None = None,
        *,
        request_id: str | None = None,
    ) -> str:
        """Validate and enqueue a new generation request.

        Returns the request id.

        Raises:
            ValidationError: Empty prompt, prompt that does not fit a cache
                slot, text prompt or stop strings without a tokenizer,
                logit bias outside the vocabulary, or duplicate id.
            QueueFullError: If the waiting queue is full.
        """
        if sampling_params is None:
            params = SamplingParams()
        else:
            # Copy re-runs normalization and validation, and detaches the
            # request from later edits to the caller's object.
            params = dataclasses.replace(sampling_params)
        prompt_token_ids = self._encode_prompt(prompt)
        self._validate(prompt_token_ids, params)

        try:
            stop_checker = StopChecker(
                params, self.eos_token_ids, self.config.max_seq_len, self.tokenizer
            )
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        # Per-request RNG: request seed > global seed > None.
        seed = params.seed if params.seed is not None else self.config.seed
        request = Request(
            request_id=request_id or str(uuid.uuid4()),
            prompt_token_ids=prompt_token_ids,
            sampling_params=params,
            arrival_time_s=time.perf_counter(),
            generator=make_generator(seed),
            stop_checker=stop_checker,
        )

        with self._lock:
            if request.request_id in self._requests:
                raise ValidationError(f"duplicate request id {request.request_id!r}")
            self.scheduler.add_request(request)
            self._requests[request.request_id] = request

        self._wakeup.set()
        logger.debug(
            "Submitted request %s (%d prompt tokens)", request.request_id, len(prompt_token_ids)
        )
        return request.request_id

    def poll(self, request_id: str, timeout: float | None = None) -> OutputEvent | None:
        """Return the next output event for a request, or ``None`` if none is ready.

        With ``timeout=None`` the call never blocks; otherwise it waits up to
        *timeout* seconds.  After the final event is returned the request is
        forgotten and further polls raise ``UnknownRequestError``.
        """
        request = self.get_request(request_id)
        try:
            if timeout is None:
                event = request.events.get_nowait()
            else:
                event = request.events.get(timeout=timeout)
        except queue.Empty:
            return None

        if event.is_final:
            with self._lock:
                self._requests.pop(request_id, None)
        return event

    def cancel(self, request_id: str) -> bool:
        """Flag a request for cancellation at the start of the next tick.

        Returns ``False`` if the request already reached a terminal state.
        """
        request = self.get_request(request_id)
        with self._lock:
            if request.state.is_terminal:
                return False
            request.cancel_requested = True
        self._wakeup.set()
        return True

    def forget(self, request_id: str) -> None:
        """Stop tracking a request whose events will never be polled.

        A finished request is dropped at once.  A running one is cancelled
        and dropped when its final event is produced, without queueing it.
        """
        request = self.get_request(request_id)
        with self._lock:
            if request.state.is_terminal:
                self._requests.pop(request_id, None)
                return
            request.cancel_requested = True
            self._detached.add(request_id)
        self._wakeup.set()

    def get_request(self, request_id: str) -> Request:
        """Return the tracked request, raising ``UnknownRequestError`` if absent."""
        with self._lock:
            request = self._requests.get(request_id)
        if request is None:
            raise UnknownRequestError(request_id)
        return request

    def stream(self, request_id: str) -> Iterator[OutputEvent]:
        """Yield a request's events up to and including the final one.

        Drives ticks itself unless the background loop is running.
        """
        while True:
            if self.is_running:
                event = self.poll(request_id, timeout=max(self.config.idle_wait_s, 0.001))
            else:
                event = self.poll(request_id)
                if event is None:
                    self.step()
                    continue
            if event is None:
                continue
            yield event
            if event.is_final:
                return

    def generate(
        self,
        prompt: str | Sequence[int],
        sampling_params: SamplingParams | None = None,
    ) -> GenerationResult:
        """Submit a request and block until it finishes."""
        request_id = self.submit(prompt, sampling_params)
        token_ids: list[int] = []
        text_parts: list[str] = []
        final: OutputEvent | None = None
        for event in self.stream(request_id):
            if event.token_id is not None:
                token_ids.append(event.token_id)
            text_parts.append(event.text_delta)
            final = event

        assert final is not None and final.finish_reason is not None
        return GenerationResult(
            request_id=request_id,
            token_ids=token_ids,
            text="".join(text_parts),
            finish_reason=final.finish_reason,
            prompt_tokens=final.prompt_tokens,
            generated_tokens=final.completion_tokens,
            error=final.error,
        )

    # ------------------------------------------------------------------
    # Loop control
    # ------------------------------------------------------------------

    def has_work(self) -> bool:
        """True if the scheduler has active or waiting requests."""
        with self._lock:
            return self.scheduler.has_work()

    def run_until_idle(self, max_steps: int | None = None) -> int:
        """Run ticks until no work is left (or *max_steps* ticks).  Returns ticks run."""
        steps = 0
        while self.has_work() and (max_steps is None or steps < max_steps):
            self.step()
            steps += 1
        return steps

    def start(self) -> None:
        """Run ticks on a background daemon thread."""
        if self._thread is not None:
            return
        self._running = True
        self._thread = threading.Thread(target=self._loop, daemon=True, name="lmengine-loop")
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background thread after its current tick."""
        self._running = False
        self._wakeup.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._running

    def _loop(self) -> None:
        logger.info("Engine loop started")
        while self._running:
            try:
                if self.has_work():
                    self.step()
                else:
                    self._wakeup.wait(timeout=self.config.idle_wait_s)
                    self._wakeup.clear()
            except Exception as exc:
                logger.error("Exception in engine loop iteration: %s", exc, exc_info=True)
        logger.info("Engine loop stopped")

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def step(self) -> list[OutputEvent]:
        """Run one tick.  Returns the events emitted (also queued for :meth:`poll`)."""
        with self._tick_lock:
            emitted = self._step()
            for request, event in emitted:
                if event.is_final and request.request_id in self._detached:
                    with self._lock:
                        self._detached.discard(request.request_id)
                        self._requests.pop(request.request_id, None)
                    continue
                request.events.put(event)
        return [event for _, event in emitted]

    def _step(self) -> list[tuple[Request, OutputEvent]]:
        emitted: list[tuple[Request, OutputEvent]] = []

        with self._lock:
            for req in self.scheduler.process_cancellations():
                emitted.append((req, self._final_event(req)))
            self.scheduler.admit()
            running = self.scheduler.running()

        if not running:
            return emitted

        batch: list[StepInput] = []
        for req in running:
            assert req.slot is not None
            batch.append(
                StepInput(req, req.slot, req.next_input_tokens(self.config.prefill_chunk_size))
            )

        try:
            results = self.executor.execute(batch)
        except Exception as exc:
            logger.error("Decode step failed: %s", exc, exc_info=True)
            error = BackendError(f"{type(exc).__name__}: {exc}")
            error.__cause__ = exc
            results = [StepResult(item, error=error) for item in batch]

        with self._lock:
            for result in results:
                event = self._process_result(result)
                if event is not None:
                    emitted.append((result.input.request, event))
        return emitted

    def _process_result(self, result: StepResult) -> OutputEvent | None:
        req = result.input.request
        if result.error is not None:
            return self._fail(req, result.error)
        assert result.logits is not None

        if req.state is RequestState.PREFILLING:
            req.prefill_progress += len(result.input.token_ids)
            if not req.prefill_done:
                return None
            req.state = RequestState.DECODING

        try:
            token = sample_token(
                result.logits,
                [*req.prompt_token_ids, *req.generated_token_ids],
                req.sampling_params,
                req.generator,
            )
        except Exception as exc:
            return self._fail(req, exc)
        req.generated_token_ids.append(token)

        assert req.stop_checker is not None
        decision = req.stop_checker.check(req)
        text_delta = req.stop_checker.text_delta

        if decision.should_stop:
            req.state = RequestState.COMPLETED
            req.finish_reason = decision.reason
            self.scheduler.retire(req)
            logger.debug(
                "Request %s completed (%s, %d tokens)",
                req.request_id,
                req.finish_reason.value if req.finish_reason else None,
                len(req.generated_token_ids),
            )
            return OutputEvent(
                request_id=req.request_id,
                token_id=token,
                is_final=True,
                finish_reason=req.finish_reason,
                text_delta=text_delta,
                prompt_tokens=len(req.prompt_token_ids),
                completion_tokens=len(req.generated_token_ids),
            )

        return OutputEvent(
            request_id=req.request_id,
            token_id=token,
            is_final=False,
            text_delta=text_delta,
        )

    def _fail(self, req: Request, error: Exception) -> OutputEvent:
        req.state = RequestState.FAILED
        req.finish_reason = FinishReason.ERROR
        req.error = str(error)
        self.scheduler.retire(req)
        logger.warning("Request %s failed: %s", req.request_id, error)
        return self._final_event(req)

    @staticmethod
    def _final_event(req: Request) -> OutputEvent:
        """Final event for a cancelled or failed request (no token)."""
        return OutputEvent(
            request_id=req.request_id,
            token_id=None,
            is_final=True,
            finish_reason=req.finish_reason,
            error=req.error,
            prompt_tokens=len(req.prompt_token_ids),
            completion_tokens=len(req.generated_token_ids),
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _encode_prompt(self, prompt: str | Sequence[int]) -> tuple[int, ...]:
        if isinstance(prompt, str):
            if self.tokenizer is None:
                raise ValidationError("text prompts require a tokenizer")
            return tuple(self.tokenizer.encode(prompt))
        return tuple(int(t) for t in prompt)

    def _validate(self, prompt_token_ids: tuple[int, ...], params: SamplingParams) -> None:
        if not prompt_token_ids:
            raise ValidationError("prompt must not be empty")
        # The first sampled token must fit too, so the prompt gets capacity - 1.
        if len(prompt_token_ids) >= self.config.max_seq_len:
            raise ValidationError(
                f"prompt ({len(prompt_token_ids)} tokens) does not fit a cache slot "
                f"(max_seq_len={self.config.max_seq_len})"
            )
        vocab_size = self.backend.vocab_size
        if any(t < 0 or t >= vocab_size for t in prompt_token_ids):
            raise ValidationError(f"prompt contains token ids outside [0, {vocab_size})")
        for token_id in params.logit_bias or {}:
            if token_id >= vocab_size:
                raise ValidationError(
                    f"logit_bias token id {token_id} outside vocabulary of {vocab_size}"
                )

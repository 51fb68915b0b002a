"""Engine configuration."""

from __future__ import annotations

from dataclasses import dataclass

import torch

_DTYPES: dict[str, torch.dtype] = {
    "float32": torch.float32,
    "bfloat16": torch.bfloat16,
    "float16": torch.float16,
}


@dataclass
class EngineConfig:
    """Configuration for the generation engine.

    Attributes:
        max_seq_len: Capacity of every cache slot (prompt + generation).
        num_slots: Number of cache slots, i.e. the most requests in flight.
        max_waiting_requests: Admission limit for the waiting queue.
        seed: Global random seed (per-request seeds override this).
        eos_token_ids: End-of-sequence ids.  ``None`` takes them from the
            tokenizer (or none at all without a tokenizer).
        prefill_chunk_size: Max prompt tokens a request feeds per step.
            ``None`` prefills the whole prompt in one step.
        dtype: KV cache dtype (``"float32"``, ``"bfloat16"`` or ``"float16"``).
        device: Torch device string for the KV cache.
        idle_wait_s: How long the background loop sleeps when idle.
    """

    max_seq_len: int = 2048
    num_slots: int = 8
    max_waiting_requests: int = 64
    seed: int | None = None
    eos_token_ids: frozenset[int] | None = None
    prefill_chunk_size: int | None = None
    dtype: str = "float32"
    device: str = "cpu"
    idle_wait_s: float = 0.01

    def __post_init__(self) -> None:
        if self.eos_token_ids is not None:
            self.eos_token_ids = frozenset(self.eos_token_ids)
        self.validate()

    def validate(self) -> None:
        """Validate configuration values, raising ``ValueError`` on invalid settings."""
        if self.dtype not in _DTYPES:
            raise ValueError(f"Unsupported dtype: {self.dtype!r}. Choose from {sorted(_DTYPES)}")
        if self.max_seq_len < 2:
            raise ValueError(f"max_seq_len must be >= 2, got {self.max_seq_len}")
        if self.num_slots < 1:
            raise ValueError(f"num_slots must be >= 1, got {self.num_slots}")
        if self.max_waiting_requests < 1:
            raise ValueError(f"max_waiting_requests must be >= 1, got {self.max_waiting_requests}")
        if self.prefill_chunk_size is not None and self.prefill_chunk_size < 1:
            raise ValueError(f"prefill_chunk_size must be >= 1, got {self.prefill_chunk_size}")
        if self.idle_wait_s < 0:
            raise ValueError(f"idle_wait_s must be >= 0, got {self.idle_wait_s}")

    @property
    def torch_dtype(self) -> torch.dtype:
        return _DTYPES[self.dtype]

"""Fixed-capacity KV cache slot pool for continuous batching."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Any

import torch
from torch import Tensor

from lmengine.errors import CapacityExceeded


@dataclass(frozen=True)
class CacheLayout:
    """Per-position KV geometry shared by every slot.

    Attributes:
        num_layers: Number of attention layers.
        num_kv_heads: Key/value heads per layer.
        head_dim: Dimension of each head.
    """

    num_layers: int
    num_kv_heads: int
    head_dim: int

    @staticmethod
    def from_model_config(config: Any) -> CacheLayout:
        """Read the layout from a HuggingFace-style model config.

        Uses ``num_hidden_layers`` and ``num_key_value_heads`` (falling back
        to ``num_attention_heads``).  ``head_dim`` falls back to
        ``hidden_size // num_attention_heads``.
        """
        num_kv_heads = getattr(config, "num_key_value_heads", None) or config.num_attention_heads
        head_dim = getattr(config, "head_dim", None)
        if head_dim is None:
            head_dim = config.hidden_size // config.num_attention_heads
        return CacheLayout(
            num_layers=config.num_hidden_layers,
            num_kv_heads=num_kv_heads,
            head_dim=head_dim,
        )


class CacheSlot:
    """One fixed-capacity KV buffer inside a :class:`CacheSlotPool`.

    ``k`` and ``v`` are views into the pool tensors (no copy), each of shape
    ``[num_layers, num_kv_heads, capacity, head_dim]``.  ``length`` counts
    the valid leading positions; ``owner`` is the bound request id.
    """

    def __init__(self, index: int, k: Tensor, v: Tensor) -> None:
        self.index = index
        self.k = k
        self.v = v
        self.capacity: int = k.shape[2]
        self.length: int = 0
        self.owner: str | None = None
        self.in_use = False

    @property
    def is_free(self) -> bool:
        return not self.in_use

    @property
    def remaining(self) -> int:
        """Positions still writable before the slot is full."""
        return self.capacity - self.length

    def write(self, layer_idx: int, start: int, k: Tensor, v: Tensor) -> None:
        """Write K/V for one layer at positions ``[start, start + n)``.

        k, v shape: ``[num_kv_heads, n, head_dim]``.
        """
        end = start + k.shape[1]
        if end > self.capacity:
            raise CapacityExceeded(
                f"slot {self.index}: writing to position {end} but capacity is {self.capacity}"
            )
        self.k[layer_idx, :, start:end, :] = k
        self.v[layer_idx, :, start:end, :] = v

    def advance(self, n: int) -> None:
        """Mark ``n`` more positions as valid."""
        if self.length + n > self.capacity:
            raise CapacityExceeded(
                f"slot {self.index}: advancing to {self.length + n} but capacity is {self.capacity}"
            )
        self.length += n

    def rewind(self, length: int) -> None:
        """Truncate the valid region to ``length`` positions (rollback)."""
        if not 0 <= length <= self.length:
            raise ValueError(f"cannot rewind slot {self.index} from {self.length} to {length}")
        self.length = length

    def __repr__(self) -> str:
        return (
            f"CacheSlot(index={self.index}, length={self.length}, "
            f"capacity={self.capacity}, owner={self.owner!r})"
        )


class CacheSlotPool:
    """Pre-allocated arena of equally sized cache slots.

    All storage is allocated once at construction:
    ``k`` and ``v`` have shape
    ``[num_layers, num_slots, num_kv_heads, capacity, head_dim]`` and each
    :class:`CacheSlot` is a view of one index along dim 1.  Slots are handed
    out from a FIFO free list, so acquire and release are O(1) and nothing
    is ever reallocated or concatenated afterwards.

    The pool itself is not thread-safe; the scheduler serializes access.
    """

    def __init__(self, k: Tensor, v: Tensor) -> None:
        if k.shape != v.shape:
            raise ValueError(f"k/v shape mismatch: {tuple(k.shape)} vs {tuple(v.shape)}")
        self.k = k
        self.v = v
        self.num_slots: int = k.shape[1]
        self.capacity: int = k.shape[3]
        self.slots: list[CacheSlot] = [
            CacheSlot(i, k[:, i], v[:, i]) for i in range(self.num_slots)
        ]
        self._free: deque[int] = deque(range(self.num_slots))

    @staticmethod
    def allocate(
        layout: CacheLayout,
        num_slots: int,
        capacity: int,
        *,
        dtype: torch.dtype = torch.float32,
        device: str | torch.device = "cpu",
    ) -> CacheSlotPool:
        """Allocate a zero-filled pool of ``num_slots`` slots of ``capacity`` positions."""
        if num_slots < 1:
            raise ValueError(f"num_slots must be >= 1, got {num_slots}")
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        shape = (layout.num_layers, num_slots, layout.num_kv_heads, capacity, layout.head_dim)
        k = torch.zeros(shape, dtype=dtype, device=device)
        v = torch.zeros(shape, dtype=dtype, device=device)
        return CacheSlotPool(k, v)

    def acquire(self, owner: str | None = None) -> CacheSlot | None:
        """Claim a free slot, or return ``None`` if the pool is exhausted."""
        if not self._free:
            return None
        slot = self.slots[self._free.popleft()]
        slot.in_use = True
        slot.owner = owner
        slot.length = 0
        return slot

    def release(self, slot: CacheSlot) -> None:
        """Return a slot to the free list.  Releasing a free slot is a no-op."""
        if self.slots[slot.index] is not slot:
            raise ValueError(f"slot {slot.index} does not belong to this pool")
        slot.length = 0
        slot.owner = None
        if not slot.in_use:
            return
        slot.in_use = False
        self._free.append(slot.index)

    def utilization(self) -> tuple[int, int]:
        """Return ``(in_use, total)``."""
        return self.num_slots - len(self._free), self.num_slots

    def free_slot_count(self) -> int:
        """Number of available slots."""
        return len(self._free)

    def batched_view(
        self,
        slots: list[CacheSlot],
        start_positions: list[int],
        input_lens: list[int],
    ) -> BatchedSlotCacheView:
        """Return a multi-slot view for one ragged forward pass."""
        return BatchedSlotCacheView(slots, start_positions, input_lens)

    @property
    def memory_bytes(self) -> int:
        """Total memory used by cache tensors in bytes."""
        return self.k.nbytes + self.v.nbytes


class BatchedSlotCacheView:
    """KVCacheProtocol-compatible view over several slots for one forward pass.

    Batch element ``i`` writes its ``input_lens[i]`` new positions at
    ``[start_positions[i], start_positions[i] + input_lens[i])`` of its own
    slot.  Prefill chunks and single decode tokens can share one pass; the
    model sees right-padded inputs and a padding mask covering each
    element's valid KV positions.

    ``advance()`` only records progress.  Slot lengths are committed by the
    caller after the forward pass returns, so a failed pass leaves every
    slot's ``length`` untouched.
    """

    def __init__(
        self,
        slots: list[CacheSlot],
        start_positions: list[int],
        input_lens: list[int],
    ) -> None:
        if not (len(slots) == len(start_positions) == len(input_lens)):
            raise ValueError("slots, start_positions and input_lens must have equal length")
        self.slots = slots
        self.start_positions = start_positions
        self.input_lens = input_lens
        self._seq_len = max(start_positions) if start_positions else 0
        self.max_kv_len = max(
            (s + n for s, n in zip(start_positions, input_lens, strict=True)), default=0
        )
        self.advanced = 0

    @property
    def seq_len(self) -> int:
        """Max cached length across the batch before this pass."""
        return self._seq_len

    def update(self, layer_idx: int, k: Tensor, v: Tensor) -> tuple[Tensor, Tensor]:
        """Scatter-write per-slot K/V and return the gathered cache for attention.

        k, v shape: ``[batch, num_kv_heads, padded_len, head_dim]``.
        Returns ``[batch, num_kv_heads, max_kv_len, head_dim]``; positions past
        an element's own ``start + len`` hold stale data and must be masked.
        """
        for i, slot in enumerate(self.slots):
            n = self.input_lens[i]
            slot.write(layer_idx, self.start_positions[i], k[i, :, :n, :], v[i, :, :n, :])

        end = self.max_kv_len
        cached_k = torch.stack([slot.k[layer_idx, :, :end, :] for slot in self.slots])
        cached_v = torch.stack([slot.v[layer_idx, :, :end, :] for slot in self.slots])
        return cached_k, cached_v

    def advance(self, n: int) -> None:
        self.advanced += n

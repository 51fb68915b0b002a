"""Model backend interface: one batched forward call per engine step."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import torch
from torch import Tensor, nn

from lmengine.cache.slotted import BatchedSlotCacheView, CacheLayout


@dataclass
class ForwardBatch:
    """Inputs for one forward pass over a ragged batch.

    Element ``i`` feeds ``token_ids[i]`` starting at sequence position
    ``start_positions[i]`` and writes its K/V through ``kv_cache``.
    Prefill chunks and single decode tokens may appear in the same batch.
    """

    token_ids: list[list[int]]
    start_positions: list[int]
    kv_cache: BatchedSlotCacheView

    @property
    def size(self) -> int:
        return len(self.token_ids)

    @property
    def input_lens(self) -> list[int]:
        return [len(t) for t in self.token_ids]


class ModelBackend(Protocol):
    """Capability interface the engine drives.

    Implementations run the model over every element of *batch*, write K/V
    through ``batch.kv_cache`` and return logits for each element's last
    input position, shape ``[batch, vocab_size]``.
    """

    @property
    def cache_layout(self) -> CacheLayout: ...

    @property
    def vocab_size(self) -> int: ...

    def forward(self, batch: ForwardBatch) -> Tensor: ...


class TorchModelBackend:
    """Adapts an ``nn.Module`` to :class:`ModelBackend`.

    The module is called as
    ``model(input_ids, kv_cache=..., padding_mask=..., position_ids=...)``
    and must return logits of shape ``[batch, padded_len, vocab_size]``.
    Ragged inputs are right-padded with token 0; ``padding_mask`` marks
    each element's valid KV positions and ``position_ids`` carries each
    element's absolute positions for RoPE.

    Args:
        model: A loaded model with a ``.config`` attribute.
        device: Device the input tensors are built on.
    """

    def __init__(self, model: nn.Module, device: str | torch.device = "cpu") -> None:
        model_config = getattr(model, "config", None)
        if model_config is None:
            raise TypeError("model must have a .config attribute")
        self.model = model
        self.device = device
        self._cache_layout = CacheLayout.from_model_config(model_config)
        self._vocab_size: int = model_config.vocab_size

    @property
    def cache_layout(self) -> CacheLayout:
        return self._cache_layout

    @property
    def vocab_size(self) -> int:
        return self._vocab_size

    @torch.inference_mode()
    def forward(self, batch: ForwardBatch) -> Tensor:
        device = self.device
        input_lens = batch.input_lens
        batch_size = batch.size
        max_len = max(input_lens)

        # Build padded input_ids [batch, max_len].
        padded = [tokens + [0] * (max_len - len(tokens)) for tokens in batch.token_ids]
        input_ids = torch.tensor(padded, dtype=torch.long, device=device)

        # Build position_ids [batch, max_len].  Padded positions: 0.
        position_ids = torch.zeros(batch_size, max_len, dtype=torch.long, device=device)
        for i, (start, n) in enumerate(zip(batch.start_positions, input_lens, strict=True)):
            position_ids[i, :n] = torch.arange(start, start + n, device=device)

        # Build padding_mask [batch, max_kv_len]: True for valid KV positions.
        padding_mask = torch.zeros(
            batch_size, batch.kv_cache.max_kv_len, dtype=torch.bool, device=device
        )
        for i, (start, n) in enumerate(zip(batch.start_positions, input_lens, strict=True)):
            padding_mask[i, : start + n] = True

        logits = self.model(
            input_ids,
            kv_cache=batch.kv_cache,
            padding_mask=padding_mask,
            position_ids=position_ids,
        )
        # logits: [batch, max_len, vocab_size]

        last = torch.tensor([n - 1 for n in input_lens], dtype=torch.long, device=logits.device)
        rows = torch.arange(batch_size, device=logits.device)
        return logits[rows, last]

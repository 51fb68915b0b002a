"""Cache protocols: structural interface for KV cache views."""

from __future__ import annotations

from typing import Protocol

from torch import Tensor


class KVCacheProtocol(Protocol):
    """Interface a model forward pass uses to read and write KV entries.

    Models call ``update()`` per layer to store new K/V and retrieve the
    full cache for attention, ``advance()`` once per forward pass, and read
    ``seq_len`` for mask width calculation.
    """

    @property
    def seq_len(self) -> int:
        """Positions cached before this forward pass (read by model for mask width)."""
        ...

    def update(self, layer_idx: int, k: Tensor, v: Tensor) -> tuple[Tensor, Tensor]: ...

    def advance(self, n: int) -> None: ...

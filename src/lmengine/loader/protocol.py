"""Tokenizer protocol consumed by the engine."""

from __future__ import annotations

from collections.abc import Set
from typing import Protocol


class TokenizerProtocol(Protocol):
    """Encode/decode contract the engine needs from a tokenizer.

    :class:`lmengine.loader.tokenizer.Tokenizer` satisfies it; tests use
    small character-level mocks.
    """

    @property
    def eos_token_ids(self) -> Set[int]: ...

    def encode(self, text: str, *, add_special_tokens: bool = True) -> list[int]: ...

    def decode(self, token_ids: list[int], *, skip_special_tokens: bool = True) -> str: ...

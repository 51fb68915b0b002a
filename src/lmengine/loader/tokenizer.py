"""HuggingFace tokenizer adapter for the engine.

Exposes exactly :class:`~lmengine.loader.protocol.TokenizerProtocol`, so the
engine never imports ``transformers`` directly.
"""

from __future__ import annotations

from collections.abc import Iterable

from transformers import AutoTokenizer, PreTrainedTokenizerBase

# Chat-turn terminators that end generation alongside the primary EOS token.
DEFAULT_EOS_NAMES: frozenset[str] = frozenset(
    {
        "<|eot_id|>",
        "<|end_of_turn|>",
        "<end_of_turn>",
        "<|im_end|>",
        "<|endoftext|>",
    }
)


class Tokenizer:
    """Adapts a loaded HuggingFace tokenizer to the engine's tokenizer contract.

    EOS ids are resolved once at construction: the tokenizer's
    ``eos_token_id`` plus every added-vocabulary token whose text is in
    *eos_names*.

    Args:
        hf_tokenizer: A loaded ``PreTrainedTokenizerBase``.
        eos_names: Added-token strings treated as end of sequence.
    """

    def __init__(
        self,
        hf_tokenizer: PreTrainedTokenizerBase,
        eos_names: Iterable[str] = DEFAULT_EOS_NAMES,
    ) -> None:
        self._tokenizer = hf_tokenizer
        self._eos_token_ids = self._resolve_eos(frozenset(eos_names))

    @classmethod
    def from_pretrained(
        cls, model_path: str, *, eos_names: Iterable[str] = DEFAULT_EOS_NAMES
    ) -> Tokenizer:
        """Load from a local directory or HF Hub repo ID."""
        return cls(AutoTokenizer.from_pretrained(model_path), eos_names=eos_names)

    def _resolve_eos(self, eos_names: frozenset[str]) -> frozenset[int]:
        ids: set[int] = set()
        if self._tokenizer.eos_token_id is not None:
            ids.add(self._tokenizer.eos_token_id)
        added: dict[str, int] = getattr(self._tokenizer, "added_tokens_encoder", {})
        ids.update(token_id for text, token_id in added.items() if text in eos_names)
        return frozenset(ids)

    @property
    def eos_token_ids(self) -> frozenset[int]:
        return self._eos_token_ids

    def encode(self, text: str, *, add_special_tokens: bool = True) -> list[int]:
        return list(self._tokenizer.encode(text, add_special_tokens=add_special_tokens))

    def decode(self, token_ids: list[int], *, skip_special_tokens: bool = True) -> str:
        text = self._tokenizer.decode(token_ids, skip_special_tokens=skip_special_tokens)
        if not isinstance(text, str):
            raise TypeError(f"tokenizer decode returned {type(text).__name__}, expected str")
        return text

"""Unit tests for the HuggingFace tokenizer adapter (no model downloads)."""

from __future__ import annotations

import pytest

import lmengine.loader.tokenizer as tokenizer_module
from lmengine.loader.protocol import TokenizerProtocol
from lmengine.loader.tokenizer import Tokenizer


class FakeHFTokenizer:
    """Stands in for a PreTrainedTokenizerBase."""

    eos_token_id: int | None = 2
    added_tokens_encoder = {"<|im_end|>": 7, "<|im_start|>": 6, "<|stop|>": 9}

    def encode(self, text: str, add_special_tokens: bool = True) -> list[int]:
        ids = [10 + ord(c) % 50 for c in text]
        return [1, *ids] if add_special_tokens else ids

    def decode(self, token_ids: list[int], skip_special_tokens: bool = True) -> str | list[str]:
        ids = [t for t in token_ids if not (skip_special_tokens and t < 10)]
        return "".join(f"<{t}>" for t in ids)


class BatchDecodingTokenizer(FakeHFTokenizer):
    def decode(self, token_ids: list[int], skip_special_tokens: bool = True) -> str | list[str]:
        return ["x"]


@pytest.fixture()
def tok() -> Tokenizer:
    return Tokenizer(FakeHFTokenizer())  # type: ignore[arg-type]


class TestEncodeDecode:
    def test_encode(self, tok: Tokenizer) -> None:
        assert tok.encode("a") == [1, 10 + ord("a") % 50]
        assert tok.encode("a", add_special_tokens=False) == [10 + ord("a") % 50]

    def test_decode(self, tok: Tokenizer) -> None:
        assert tok.decode([1, 12]) == "<12>"
        assert tok.decode([1, 12], skip_special_tokens=False) == "<1><12>"

    def test_decode_rejects_non_string(self) -> None:
        tok = Tokenizer(BatchDecodingTokenizer())  # type: ignore[arg-type]
        with pytest.raises(TypeError):
            tok.decode([1])

    def test_satisfies_protocol(self, tok: Tokenizer) -> None:
        proto: TokenizerProtocol = tok
        assert proto.eos_token_ids


class TestEosTokenIds:
    def test_default_names(self, tok: Tokenizer) -> None:
        assert tok.eos_token_ids == frozenset({2, 7})

    def test_custom_names(self) -> None:
        tok = Tokenizer(FakeHFTokenizer(), eos_names={"<|stop|>"})  # type: ignore[arg-type]
        assert tok.eos_token_ids == frozenset({2, 9})

    def test_no_primary_eos(self) -> None:
        hf = FakeHFTokenizer()
        hf.eos_token_id = None
        tok = Tokenizer(hf)  # type: ignore[arg-type]
        assert tok.eos_token_ids == frozenset({7})


class TestFromPretrained:
    def test_loads_through_auto_tokenizer(self, monkeypatch: pytest.MonkeyPatch) -> None:
        loaded: list[str] = []

        def fake_from_pretrained(model_path: str) -> FakeHFTokenizer:
            loaded.append(model_path)
            return FakeHFTokenizer()

        monkeypatch.setattr(
            tokenizer_module.AutoTokenizer, "from_pretrained", fake_from_pretrained
        )
        tok = Tokenizer.from_pretrained("some/model", eos_names=())
        assert loaded == ["some/model"]
        assert tok.eos_token_ids == frozenset({2})

"""Unit tests for EngineConfig."""

from __future__ import annotations

import pytest
import torch

from lmengine.engine.config import EngineConfig


class TestEngineConfig:
    def test_defaults(self) -> None:
        config = EngineConfig()
        assert config.max_seq_len == 2048
        assert config.num_slots == 8
        assert config.max_waiting_requests == 64
        assert config.seed is None
        assert config.eos_token_ids is None
        assert config.prefill_chunk_size is None
        assert config.torch_dtype is torch.float32

    def test_eos_normalized_to_frozenset(self) -> None:
        config = EngineConfig(eos_token_ids={1, 2})  # type: ignore[arg-type]
        assert config.eos_token_ids == frozenset({1, 2})

    @pytest.mark.parametrize("dtype", ["bfloat16", "float16"])
    def test_dtypes(self, dtype: str) -> None:
        assert EngineConfig(dtype=dtype).torch_dtype == getattr(torch, dtype)

    @pytest.mark.parametrize(
        ("kwargs", "match"),
        [
            ({"dtype": "int8"}, "dtype"),
            ({"max_seq_len": 1}, "max_seq_len"),
            ({"num_slots": 0}, "num_slots"),
            ({"max_waiting_requests": 0}, "max_waiting_requests"),
            ({"prefill_chunk_size": 0}, "prefill_chunk_size"),
            ({"idle_wait_s": -1.0}, "idle_wait_s"),
        ],
    )
    def test_invalid(self, kwargs: dict[str, object], match: str) -> None:
        with pytest.raises(ValueError, match=match):
            EngineConfig(**kwargs)  # type: ignore[arg-type]

"""Sampling parameters and token sampling pipeline."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

import torch
import torch.nn.functional as F
from torch import Tensor

from lmengine.errors import ValidationError


@dataclass
class SamplingParams:
    """Parameters controlling token sampling and stopping for one request.

    Attributes:
        temperature: Divides logits before softmax.  Must be ``> 0`` when
            ``do_sample`` is set; ignored for greedy decoding.
        top_k: Keep only the k highest logits.  ``0`` disables.
        top_p: Nucleus sampling threshold.  ``1.0`` disables.
        do_sample: ``False`` selects greedy (argmax) decoding.
        repetition_penalty: CTRL-paper penalty for tokens already in the
            context.  ``1.0`` disables.
        max_new_tokens: Maximum tokens to generate (excluding prompt).
        stop_sequences: Token-id sequences that end generation when the
            output ends with one of them.
        stop: Text strings that end generation when the decoded output
            ends with one of them (needs a tokenizer).
        logit_bias: Additive bias per token id, applied before anything else.
        seed: Random seed for reproducible sampling.  ``None`` = engine default.
    """

    temperature: float = 1.0
    top_k: int = 0
    top_p: float = 1.0
    do_sample: bool = True
    repetition_penalty: float = 1.0
    max_new_tokens: int = 128
    stop_sequences: Iterable[Iterable[int]] | None = None
    stop: list[str] | None = None
    logit_bias: Mapping[int, float] | None = None
    seed: int | None = None

    def __post_init__(self) -> None:
        if self.stop_sequences is not None:
            # Deduplicate and freeze; order is irrelevant for matching.
            self.stop_sequences = sorted({tuple(seq) for seq in self.stop_sequences})
        if self.stop is not None:
            self.stop = list(self.stop)
        if self.logit_bias is not None:
            self.logit_bias = {int(k): float(v) for k, v in self.logit_bias.items()}
        self.validate()

    def validate(self) -> None:
        """Validate parameter ranges, raising ``ValidationError`` on invalid values."""
        if self.temperature < 0.0:
            raise ValidationError(f"temperature must be >= 0.0, got {self.temperature}")
        if self.do_sample and self.temperature <= 0.0:
            raise ValidationError(
                f"temperature must be > 0.0 when do_sample is set, got {self.temperature}"
            )
        if self.top_k < 0:
            raise ValidationError(f"top_k must be >= 0, got {self.top_k}")
        if not (0.0 < self.top_p <= 1.0):
            raise ValidationError(f"top_p must be in (0.0, 1.0], got {self.top_p}")
        if self.repetition_penalty <= 0.0:
            raise ValidationError(
                f"repetition_penalty must be > 0.0, got {self.repetition_penalty}"
            )
        if self.max_new_tokens < 1:
            raise ValidationError(f"max_new_tokens must be >= 1, got {self.max_new_tokens}")
        for seq in self.stop_sequences or ():
            if len(seq) == 0:  # type: ignore[arg-type]
                raise ValidationError("stop_sequences must not contain an empty sequence")
        for s in self.stop or ():
            if not s:
                raise ValidationError("stop strings must not be empty")
        for token_id in self.logit_bias or {}:
            if token_id < 0:
                raise ValidationError(f"logit_bias token ids must be >= 0, got {token_id}")


# ---------------------------------------------------------------------------
# Sampling transforms (applied in fixed order)
# ---------------------------------------------------------------------------


def apply_logit_bias(logits: Tensor, logit_bias: Mapping[int, float] | None) -> Tensor:
    """Add ``logit_bias[token]`` to each listed token's logit.

    Args:
        logits: Raw logits, shape ``[vocab_size]``.
        logit_bias: Mapping of token id to additive bias.

    Returns:
        Biased logits (a new tensor unless the bias is empty).
    """
    if not logit_bias:
        return logits
    ids = torch.tensor(list(logit_bias.keys()), dtype=torch.long, device=logits.device)
    bias = torch.tensor(list(logit_bias.values()), dtype=logits.dtype, device=logits.device)
    return logits.clone().index_add_(0, ids, bias)


def apply_repetition_penalty(
    logits: Tensor,
    token_ids: list[int],
    penalty: float,
) -> Tensor:
    """Penalize tokens that appear in the context.

    For each unique token in *token_ids*:
    - Positive logits are divided by *penalty*.
    - Negative logits are multiplied by *penalty*.

    Args:
        logits: Logits, shape ``[vocab_size]``.
        token_ids: All token IDs seen so far (prompt + generated).
        penalty: Penalty factor.  ``1.0`` is a no-op.

    Returns:
        Penalized logits (same shape and dtype).
    """
    if penalty == 1.0 or len(token_ids) == 0:
        return logits

    unique_ids = torch.tensor(sorted(set(token_ids)), dtype=torch.long, device=logits.device)
    penalized = logits.clone()
    scores = penalized[unique_ids]
    penalized[unique_ids] = torch.where(scores > 0, scores / penalty, scores * penalty)
    return penalized


def apply_temperature(logits: Tensor, temperature: float) -> Tensor:
    """Scale logits by temperature.  Identity at ``1.0``."""
    if temperature == 1.0:
        return logits
    return logits / temperature


def apply_top_k(logits: Tensor, k: int) -> Tensor:
    """Keep only the top-k logits, setting the rest to ``-inf``.

    ``k == 0`` or ``k >= vocab_size`` is a no-op.
    """
    if k == 0 or k >= logits.shape[-1]:
        return logits
    top_values, top_indices = torch.topk(logits, k)
    result = torch.full_like(logits, float("-inf"))
    result.scatter_(0, top_indices, top_values)
    return result


def apply_top_p(logits: Tensor, p: float) -> Tensor:
    """Nucleus filtering: keep the smallest prefix with cumulative probability >= *p*.

    Args:
        logits: Logits, shape ``[vocab_size]``.
        p: Cumulative probability threshold.  ``1.0`` is a no-op.

    Returns:
        Filtered logits (same shape and dtype).
    """
    if p == 1.0:
        return logits

    sorted_logits, sorted_indices = torch.sort(logits, descending=True, stable=True)
    sorted_probs = F.softmax(sorted_logits, dim=-1)
    cumulative_probs = torch.cumsum(sorted_probs, dim=-1)

    # A token is dropped once the mass *before* it already reaches p, so the
    # token that crosses the threshold is kept (and the top token always is).
    sorted_mask = (cumulative_probs - sorted_probs) >= p
    sorted_logits = sorted_logits.masked_fill(sorted_mask, float("-inf"))

    result = torch.full_like(logits, float("-inf"))
    result.scatter_(0, sorted_indices, sorted_logits)
    return result


def make_generator(seed: int | None) -> torch.Generator | None:
    """Create a CPU RNG seeded with *seed*, or ``None`` for nondeterministic sampling."""
    if seed is None:
        return None
    generator = torch.Generator(device="cpu")
    generator.manual_seed(seed)
    return generator


def sample_token(
    logits: Tensor,
    context_token_ids: list[int],
    params: SamplingParams,
    generator: torch.Generator | None = None,
) -> int:
    """Sample a single token from logits using the full sampling pipeline.

    Transform order: logit bias -> repetition penalty -> (greedy argmax) ->
    temperature -> top-k -> top-p -> softmax -> draw.

    Greedy decoding returns the lowest token id among tied maxima.  The
    draw happens on CPU with *generator*, so a fixed seed reproduces the
    same token regardless of the device the logits came from.

    Args:
        logits: Raw logits for a single position, shape ``[vocab_size]``.
        context_token_ids: All token IDs seen so far (prompt + generated).
        params: Sampling parameters.
        generator: Optional request-scoped RNG.

    Returns:
        The sampled token ID.
    """
    logits = apply_logit_bias(logits, params.logit_bias)
    logits = apply_repetition_penalty(logits, context_token_ids, params.repetition_penalty)

    if not params.do_sample:
        return int(torch.argmax(logits).item())

    logits = apply_temperature(logits.float(), params.temperature)
    logits = apply_top_k(logits, params.top_k)
    logits = apply_top_p(logits, params.top_p)

    probs = F.softmax(logits, dim=-1).cpu()
    return int(torch.multinomial(probs.unsqueeze(0), num_samples=1, generator=generator).item())

"""Stop-condition evaluation with incremental multi-pattern matching.

Each request owns a :class:`StopChecker`.  After every sampled token the
engine calls :meth:`StopChecker.check`, which applies the checks in order:

1. end-of-sequence token -> ``eos``
2. ``max_new_tokens`` reached, or the slot is full -> ``length``
3. output ends with a stop sequence -> ``stop``

Stop sequences are matched with an Aho-Corasick automaton that is advanced
by exactly the new symbols of each step (one token id, or the newly decoded
characters), so the output buffer is never re-scanned.

A matched stop sequence is *included* in the output: generation halts on
the token that completes the match, that token stays in
``generated_token_ids``, and its text is part of the final text delta.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Hashable, Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from lmengine.engine.request import FinishReason
from lmengine.engine.sampler import SamplingParams
from lmengine.loader.protocol import TokenizerProtocol

if TYPE_CHECKING:
    from lmengine.engine.request import Request


class StopSequenceMatcher:
    """Streaming Aho-Corasick matcher over a fixed set of patterns.

    Patterns are sequences of hashable symbols: token ids for token-level
    stop sequences, characters for text stop strings.  :meth:`feed`
    consumes one symbol and reports whether any pattern ends at it.

    Args:
        patterns: Non-empty symbol sequences to detect.
    """

    def __init__(self, patterns: Iterable[Sequence[Hashable]]) -> None:
        # State 0 is the root.  _goto[s] maps symbol -> next state,
        # _fail[s] is the longest proper suffix state, _out[s] is the length
        # of the longest pattern ending at s (0 = none).
        self._goto: list[dict[Hashable, int]] = [{}]
        self._fail: list[int] = [0]
        self._out: list[int] = [0]
        self.patterns: list[tuple[Hashable, ...]] = []
        for pattern in patterns:
            self._insert(tuple(pattern))
        self._build_failure_links()
        self.state = 0

    def _insert(self, pattern: tuple[Hashable, ...]) -> None:
        if not pattern:
            raise ValueError("stop patterns must be non-empty")
        self.patterns.append(pattern)
        state = 0
        for symbol in pattern:
            nxt = self._goto[state].get(symbol)
            if nxt is None:
                nxt = len(self._goto)
                self._goto.append({})
                self._fail.append(0)
                self._out.append(0)
                self._goto[state][symbol] = nxt
            state = nxt
        self._out[state] = max(self._out[state], len(pattern))

    def _build_failure_links(self) -> None:
        queue: deque[int] = deque(self._goto[0].values())
        while queue:
            state = queue.popleft()
            for symbol, nxt in self._goto[state].items():
                queue.append(nxt)
                fallback = self._fail[state]
                while fallback and symbol not in self._goto[fallback]:
                    fallback = self._fail[fallback]
                target = self._goto[fallback].get(symbol, 0)
                self._fail[nxt] = target if target != nxt else 0
                self._out[nxt] = max(self._out[nxt], self._out[self._fail[nxt]])

    def feed(self, symbol: Hashable) -> int:
        """Advance by one symbol.

        Returns:
            Length of the longest pattern ending at this symbol, or ``0``.
        """
        state = self.state
        while state and symbol not in self._goto[state]:
            state = self._fail[state]
        state = self._goto[state].get(symbol, 0)
        self.state = state
        return self._out[state]

    def reset(self) -> None:
        self.state = 0


class IncrementalDetokenizer:
    """Turns a growing token list into text deltas.

    Decodes the full generated sequence each step and returns only the
    characters not yet emitted.  A trailing run of U+FFFD means the last
    token ended mid-character; only that run is held back until it
    completes.  :meth:`flush` emits it as-is once the request stops.
    """

    def __init__(self, tokenizer: TokenizerProtocol) -> None:
        self.tokenizer = tokenizer
        self._emitted = 0

    def push(self, token_ids: Sequence[int]) -> str:
        text = self.tokenizer.decode(list(token_ids), skip_special_tokens=True)
        return self._advance(text, len(text.rstrip("\ufffd")))

    def flush(self, token_ids: Sequence[int]) -> str:
        """Return everything not yet emitted, incomplete characters included."""
        text = self.tokenizer.decode(list(token_ids), skip_special_tokens=True)
        return self._advance(text, len(text))

    def _advance(self, text: str, end: int) -> str:
        if end <= self._emitted:
            return ""
        delta = text[self._emitted : end]
        self._emitted = end
        return delta


@dataclass(frozen=True)
class StopDecision:
    """Result of a stop check: ``reason is None`` means continue."""

    reason: FinishReason | None = None

    @property
    def should_stop(self) -> bool:
        return self.reason is not None


CONTINUE = StopDecision()


class StopChecker:
    """Per-request stop-condition evaluator.

    Args:
        params: The request's sampling parameters.
        eos_token_ids: Token ids that end generation.
        capacity: Slot capacity; a request whose cursor reaches it stops
            with ``length`` before its next decode step could overflow.
        tokenizer: Needed for text stop strings and for text deltas.

    Raises:
        ValueError: If text stop strings are configured without a tokenizer.
    """

    def __init__(
        self,
        params: SamplingParams,
        eos_token_ids: Iterable[int],
        capacity: int,
        tokenizer: TokenizerProtocol | None = None,
    ) -> None:
        self.max_new_tokens = params.max_new_tokens
        self.eos_token_ids = frozenset(eos_token_ids)
        self.capacity = capacity

        self._token_matcher: StopSequenceMatcher | None = None
        if params.stop_sequences:
            self._token_matcher = StopSequenceMatcher(params.stop_sequences)

        self._text_matcher: StopSequenceMatcher | None = None
        if params.stop:
            if tokenizer is None:
                raise ValueError("text stop strings require a tokenizer")
            self._text_matcher = StopSequenceMatcher(params.stop)

        self._detokenizer = IncrementalDetokenizer(tokenizer) if tokenizer is not None else None
        self._fed = 0
        self.text_delta = ""

    def check(self, request: Request) -> StopDecision:
        """Evaluate stop conditions after a token was appended to *request*.

        Also refreshes :attr:`text_delta` with the text decoded this step.
        On a stop decision the delta includes any held-back text.
        """
        decision = self._decide(request)
        if decision.should_stop and self._detokenizer is not None:
            self.text_delta += self._detokenizer.flush(request.generated_token_ids)
        return decision

    def _decide(self, request: Request) -> StopDecision:
        generated = request.generated_token_ids
        new_tokens = generated[self._fed :]
        self._fed = len(generated)

        self.text_delta = ""
        if self._detokenizer is not None:
            self.text_delta = self._detokenizer.push(generated)

        if new_tokens and new_tokens[-1] in self.eos_token_ids:
            return StopDecision(FinishReason.EOS)
        if len(generated) >= self.max_new_tokens or request.cursor >= self.capacity:
            return StopDecision(FinishReason.LENGTH)

        matched = False
        if self._token_matcher is not None:
            for token in new_tokens:
                matched = bool(self._token_matcher.feed(token)) or matched
        if self._text_matcher is not None:
            for char in self.text_delta:
                matched = bool(self._text_matcher.feed(char)) or matched
        if matched:
            return StopDecision(FinishReason.STOP)
        return CONTINUE

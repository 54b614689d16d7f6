"""Fingerprint mutation: make repeated submissions look distinct upstream.

The remote service caches aggressively on request fingerprints, so identical
images analysed twice can come back with a stale answer. Every non-test
prompt gets a divider phrase, a block of unique tokens and a per-file context
block, and generation parameters drift slightly with each retry.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import itertools
import random
import string
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

_BASE36 = string.digits + string.ascii_lowercase
_HEX = string.hexdigits[:16]

DIVIDER_PHRASES: tuple[str, ...] = (
    "--- Análise única para esta requisição ---",
    "*** Processamento individual desta imagem ***",
    "<<< Solicitação específica e única >>>",
    "=== Análise dedicada para este documento ===",
    "### Processamento exclusivo desta imagem ###",
    "+++ Análise personalizada para este arquivo +++",
    ">>> Processamento dedicado desta imagem <<<",
    "... Análise individual e única ...",
)


def simple_hash(text: str) -> str:
    """Return the 32-bit rolling string hash of *text* as unsigned hex.

    Computed over UTF-16 code units with signed 32-bit wraparound, so the
    value is stable for a given file name across processes.
    """
    h = 0
    raw = text.encode("utf-16-le")
    for i in range(0, len(raw), 2):
        unit = int.from_bytes(raw[i : i + 2], "little")
        h = (h * 31 + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return format(abs(h), "x")


@dataclass(frozen=True)
class TestPromptPolicy:
    """Decides which prompts are probes that must stay unmodified and uncached."""

    __test__ = False  # not a pytest class

    min_length: int = 50
    sentinels: tuple[str, ...] = ("pizza", "teste")

    def __post_init__(self) -> None:
        """Validate the length threshold."""
        if self.min_length < 0:
            raise ValueError("TestPromptPolicy.min_length must be >= 0")

    def is_test_prompt(self, prompt: str) -> bool:
        """Return True for short prompts and prompts mentioning a sentinel."""
        if not prompt:
            return False
        lowered = prompt.lower()
        if any(word in lowered for word in self.sentinels):
            return True
        return len(prompt) < self.min_length


@dataclass(frozen=True)
class GenerationParams:
    """Sampling parameters sent with one remote call."""

    temperature: float = 0.1
    top_k: int = 40
    top_p: float = 0.95
    max_output_tokens: int = 8192
    candidate_count: int = 1


@dataclass(frozen=True)
class MutatedRequest:
    """Prompt and parameters for one physical attempt."""

    prompt: str
    params: GenerationParams
    is_test_prompt: bool


@dataclass
class FingerprintMutator:
    """Appends unique tokens to prompts and varies params per attempt.

    Randomness comes from ``rng`` and wall time from ``clock`` so tests can
    pin both.
    """

    policy: TestPromptPolicy = field(default_factory=TestPromptPolicy)
    rng: random.Random = field(default_factory=random.Random)
    clock: Callable[[], float] = time.time
    _counter: itertools.count[int] = field(
        default_factory=lambda: itertools.count(1), init=False, repr=False
    )

    def is_test_prompt(self, prompt: str) -> bool:
        """Delegate to the configured TestPromptPolicy."""
        return self.policy.is_test_prompt(prompt)

    def mutate(
        self,
        prompt: str,
        file_name: str = "",
        file_index: int | None = None,
        attempt: int = 0,
    ) -> MutatedRequest:
        """Return the prompt and params to send for *attempt* (zero-based)."""
        if self.is_test_prompt(prompt):
            return MutatedRequest(prompt, GenerationParams(), is_test_prompt=True)
        text = self._with_tokens(prompt)
        text = self._with_file_context(text, file_name, file_index)
        return MutatedRequest(text, self.params_for(attempt), is_test_prompt=False)

    def params_for(self, attempt: int = 0) -> GenerationParams:
        """Generation params that drift further from the defaults on each retry."""
        drift = 0.02 * attempt
        return GenerationParams(
            temperature=0.1 + drift + self.rng.uniform(0, 0.05),
            top_k=40 + 5 * attempt + self.rng.randint(0, 4),
            top_p=min(1.0, 0.95 + drift + self.rng.uniform(0, 0.02)),
        )

    def _random_token(self, alphabet: str, length: int) -> str:
        return "".join(self.rng.choice(alphabet) for _ in range(length))

    def _with_tokens(self, prompt: str) -> str:
        now = self.clock()
        tokens = {
            "TIMESTAMP": str(int(now * 1000)),
            "SESSION": self._random_token(_BASE36, 8),
            "PROCESS": self._random_token(_HEX, 6),
            "RANDOM": self._random_token(_BASE36, 13),
            "MICRO": str(int(now * 1_000_000)),
            "HASH": self._random_token(_HEX, 13),
            "UUID": f"{int(now * 1000)}-{self.rng.random()}",
            "COUNTER": str(next(self._counter)),
        }
        block = " ".join(f"[{name}: {value}]" for name, value in tokens.items())
        divider = self.rng.choice(DIVIDER_PHRASES)
        return f"{prompt}\n\n{divider}\n{block}"

    @staticmethod
    def _with_file_context(prompt: str, file_name: str, file_index: int | None) -> str:
        parts = []
        if file_name:
            parts.append(f"[FILE: {file_name[:10]}...]")
        if file_index is not None:
            parts.append(f"[BATCH_INDEX: {file_index}]")
        parts.append(f"[FILE_HASH: {simple_hash(file_name)}]")
        return f"{prompt}\n\n--- Contexto específico ---\n" + " ".join(parts)

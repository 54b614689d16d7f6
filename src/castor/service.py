"""ExtractionService: the caller-facing façade.

Wires the credential pool, rate gate, dispatchers, result cache, mutator,
extractor and prompt registry around one provider. Every remote call picks
its credential at call time, so retries rotate keys naturally.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import hashlib
import logging
from typing import TYPE_CHECKING, Any

from castor.backoff import retry_async
from castor.cache import ResultCache
from castor.credentials import CredentialPool
from castor.dispatch import ParallelDispatcher, SerialDispatcher
from castor.errors import (
    ConfigurationError,
    DispatcherClosedError,
    PromptError,
    with_operation,
)
from castor.extraction import extract_record
from castor.mutator import FingerprintMutator, GenerationParams
from castor.prompts import RECEIPT, SYSTEM_INSTRUCTION, PromptRegistry
from castor.providers.mock import MockProvider
from castor.providers.models import MediaPart, Message, ProviderRequest
from castor.rate_limit import RateGate
from castor.store import AnalysisStore

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping, Sequence

    from castor.config import Config
    from castor.credentials import Credential, KeyStats
    from castor.providers.base import Provider

logger = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"

# Operation names used as error prefixes.
OP_TEXT = "Text generation"
OP_MESSAGE = "Message send"
OP_IMAGE = "Image analysis"
OP_RECEIPT = "Receipt analysis"
OP_PDF = "PDF analysis"
OP_TOKENS = "Token counting"

# Errors that are raised as-is, never wrapped with an operation prefix.
_PASSTHROUGH = (PromptError, DispatcherClosedError, ConfigurationError)


@dataclass(frozen=True)
class TextOptions:
    """Sampling options for free-form text generation and chat."""

    temperature: float = 0.2
    top_p: float = 0.8
    top_k: int = 40
    max_output_tokens: int = 1000
    system_instruction: str | None = None

    def to_params(self) -> GenerationParams:
        """Convert to the wire-level parameter set."""
        return GenerationParams(
            temperature=self.temperature,
            top_k=self.top_k,
            top_p=self.top_p,
            max_output_tokens=self.max_output_tokens,
        )


CHAT_DEFAULTS = TextOptions(temperature=0.7, top_p=0.95)


@dataclass
class ChatSession:
    """Conversation state. History grows only on successful exchanges."""

    history: list[Message] = field(default_factory=list)
    options: TextOptions = CHAT_DEFAULTS


@dataclass(frozen=True)
class AnalysisRequest:
    """One document in a batch analysis."""

    media: bytes = field(repr=False)
    mime_type: str = "image/jpeg"
    file_name: str = ""
    file_index: int | None = None
    prompt: str | None = None
    structured: bool = True
    profile: str = "default"
    kind: str = RECEIPT

    @property
    def operation(self) -> str:
        """Error prefix for this request."""
        return OP_PDF if self.mime_type == PDF_MIME_TYPE else OP_RECEIPT

    @property
    def cache_kind(self) -> str:
        """Cache namespace for this request."""
        return "pdf" if self.mime_type == PDF_MIME_TYPE else "receipt"


def _surface(exc: Exception, operation: str) -> Exception:
    if isinstance(exc, _PASSTHROUGH):
        return exc
    return with_operation(exc, operation)


def _coerce_history(history: Sequence[Message | Mapping[str, str]] | None) -> list[Message]:
    turns: list[Message] = []
    for item in history or ():
        if isinstance(item, Message):
            turns.append(item)
        else:
            role = item.get("role") or "user"
            speaker = "model" if role in ("model", "assistant") else "user"
            turns.append(Message(role=speaker, content=item.get("content", "")))
    return turns


class ExtractionService:
    """Quota-aware access to the remote model for receipts, PDFs, text and chat."""

    def __init__(
        self,
        config: Config,
        *,
        provider: Provider | None = None,
        pool: CredentialPool | None = None,
        gate: RateGate | None = None,
        cache: ResultCache | None = None,
        mutator: FingerprintMutator | None = None,
        prompts: PromptRegistry | None = None,
        store: AnalysisStore | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.provider: Provider = provider or _default_provider(config)
        self.pool = pool or CredentialPool(
            config.api_keys, disable_timeout_s=config.disable_timeout_s
        )
        self.gate = gate or RateGate(
            window_s=config.window_s,
            max_requests=config.max_requests_per_window,
            min_interval_s=config.min_interval_s,
            sleep=sleep,
        )
        self.cache = cache or ResultCache(
            config.cache_entries, enabled=config.enable_cache
        )
        self.mutator = mutator or FingerprintMutator(policy=config.test_prompts)
        self.prompts = prompts or PromptRegistry()
        self.store = store or AnalysisStore()
        self._sleep = sleep
        self.serial = SerialDispatcher(self.gate, config.retry, sleep=sleep)
        self.parallel = ParallelDispatcher(
            self.pool,
            parallelism=config.parallelism,
            max_requeues=config.max_requeues,
        )

    # --- Remote call primitives ---

    async def _call(self, request: ProviderRequest, cred: Credential) -> str:
        logger.debug(
            "Calling %s with %s (%d media part(s))",
            request.model,
            cred.masked,
            len(request.media),
        )
        response = await self.provider.generate(request, api_key=cred.secret)
        return response.text

    def _serial_job(
        self, build: Callable[[int], ProviderRequest]
    ) -> Callable[[int], Awaitable[str]]:
        async def job(attempt: int) -> str:
            cred = self.pool.next()
            try:
                return await self._call(build(attempt), cred)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # Parallel jobs are reported by ParallelDispatcher instead.
                self.pool.report_failure(cred, exc)
                raise

        return job

    async def _run_serial(self, build: Callable[[int], ProviderRequest]) -> str:
        return await self.serial.enqueue(self._serial_job(build))

    def _request(
        self,
        prompt: str,
        *,
        media: tuple[MediaPart, ...] = (),
        history: tuple[Message, ...] = (),
        params: GenerationParams | None = None,
        system_instruction: str | None = None,
    ) -> ProviderRequest:
        return ProviderRequest(
            model=self.config.model,
            prompt=prompt,
            media=media,
            history=history,
            params=params,
            system_instruction=system_instruction,
        )

    # --- Text and chat ---

    async def generate_text(self, prompt: str, options: TextOptions | None = None) -> str:
        """Generate free-form text for *prompt*."""
        if not prompt or not prompt.strip():
            raise PromptError("prompt must be a non-empty string")
        opts = options or TextOptions()
        request = self._request(
            prompt, params=opts.to_params(), system_instruction=opts.system_instruction
        )
        try:
            return await self._run_serial(lambda _attempt: request)
        except Exception as exc:
            raise _surface(exc, OP_TEXT) from exc

    def start_chat(
        self,
        history: Sequence[Message | Mapping[str, str]] | None = None,
        options: TextOptions | None = None,
    ) -> ChatSession:
        """Open a chat session seeded with *history*."""
        return ChatSession(_coerce_history(history), options or CHAT_DEFAULTS)

    async def send_message(self, chat: ChatSession, text: str) -> str:
        """Send *text* in *chat* and return the reply; history is updated on success."""
        if not text or not text.strip():
            raise PromptError("message must be a non-empty string")
        request = self._request(
            text,
            history=tuple(chat.history),
            params=chat.options.to_params(),
            system_instruction=chat.options.system_instruction,
        )
        try:
            reply = await self._run_serial(lambda _attempt: request)
        except Exception as exc:
            raise _surface(exc, OP_MESSAGE) from exc
        chat.history.append(Message(role="user", content=text))
        chat.history.append(Message(role="model", content=reply))
        return reply

    # --- Documents ---

    async def analyze_image(
        self, prompt: str, media: bytes, mime_type: str = "image/jpeg"
    ) -> str:
        """Ask *prompt* about one image; the raw model text is returned."""
        if not prompt or not prompt.strip():
            raise PromptError("prompt must be a non-empty string")
        request = self._request(prompt, media=(MediaPart(media, mime_type),))
        try:
            return await self._run_serial(lambda _attempt: request)
        except Exception as exc:
            raise _surface(exc, OP_IMAGE) from exc

    async def analyze_receipt(
        self,
        media: bytes,
        mime_type: str = "image/jpeg",
        prompt: str | None = None,
        structured: bool = True,
        file_name: str = "",
        file_index: int | None = None,
        profile: str = "default",
        kind: str = RECEIPT,
    ) -> str:
        """Extract one canonical record line from a receipt image."""
        req = AnalysisRequest(
            media,
            mime_type=mime_type,
            file_name=file_name,
            file_index=file_index,
            prompt=prompt,
            structured=structured,
            profile=profile,
            kind=kind,
        )
        return await self._analyze_serial(req, OP_RECEIPT)

    async def analyze_pdf(
        self,
        media: bytes,
        prompt: str | None = None,
        structured: bool = True,
        file_name: str = "",
        file_index: int | None = None,
        profile: str = "default",
        kind: str = RECEIPT,
    ) -> str:
        """Extract one canonical record line from a PDF document."""
        req = AnalysisRequest(
            media,
            mime_type=PDF_MIME_TYPE,
            file_name=file_name,
            file_index=file_index,
            prompt=prompt,
            structured=structured,
            profile=profile,
            kind=kind,
        )
        return await self._analyze_serial(req, OP_PDF)

    def _resolve_prompt(self, req: AnalysisRequest) -> str:
        prompt = req.prompt or self.prompts.get_prompt(req.profile, req.kind)
        if not prompt:
            raise PromptError(
                f"No prompt for profile {req.profile!r} and kind {req.kind!r}",
                hint="Pass prompt=... or register one with PromptRegistry.register().",
            )
        return prompt

    def _builder(
        self, req: AnalysisRequest, prompt: str
    ) -> Callable[[int], ProviderRequest]:
        media = (MediaPart(req.media, req.mime_type),)

        def build(attempt: int) -> ProviderRequest:
            mutated = self.mutator.mutate(prompt, req.file_name, req.file_index, attempt)
            return self._request(
                mutated.prompt,
                media=media,
                params=mutated.params,
                system_instruction=SYSTEM_INSTRUCTION,
            )

        return build

    def _finish(self, req: AnalysisRequest, raw: str, is_test: bool) -> str:
        if not req.structured or is_test:
            return raw
        return extract_record(raw, profile=req.profile, file_name=req.file_name or None)

    async def _cached(
        self,
        req: AnalysisRequest,
        prompt: str,
        is_test: bool,
        work: Callable[[], Awaitable[str]],
    ) -> str:
        if is_test:
            return await work()
        return await self.cache.get_or_compute(req.media, prompt, req.cache_kind, work)

    async def _analyze_serial(self, req: AnalysisRequest, operation: str) -> str:
        prompt = self._resolve_prompt(req)
        is_test = self.mutator.is_test_prompt(prompt)
        build = self._builder(req, prompt)

        async def work() -> str:
            raw = await self._run_serial(build)
            return self._finish(req, raw, is_test)

        try:
            return await self._cached(req, prompt, is_test, work)
        except Exception as exc:
            raise _surface(exc, operation) from exc

    async def _analyze_parallel(self, req: AnalysisRequest) -> str:
        prompt = self._resolve_prompt(req)
        is_test = self.mutator.is_test_prompt(prompt)
        build = self._builder(req, prompt)
        attempts = 0

        async def job(cred: Credential) -> str:
            nonlocal attempts
            request = build(attempts)
            attempts += 1
            return await self._call(request, cred)

        async def work() -> str:
            raw = await self.parallel.submit(job)
            return self._finish(req, raw, is_test)

        try:
            return await self._cached(req, prompt, is_test, work)
        except Exception as exc:
            raise _surface(exc, req.operation) from exc

    async def analyze_batch(
        self,
        requests: Sequence[AnalysisRequest],
        *,
        batch_id: str | None = None,
    ) -> list[str | BaseException]:
        """Analyze many documents concurrently over the credential pool.

        Results come back in input order; a failed document yields its
        exception in place of a line. With *batch_id*, results are kept in
        the AnalysisStore under that batch.
        """

        async def one(req: AnalysisRequest) -> str:
            file_hash = hashlib.sha256(req.media).hexdigest()
            stored = self.store.get_analysis(req.file_name, file_hash, req.kind)
            if stored is not None:
                return stored
            result = await self._analyze_parallel(req)
            if batch_id is not None:
                self.store.store_analysis(
                    req.file_name, file_hash, req.kind, result, batch_id=batch_id
                )
            return result

        results = await asyncio.gather(*(one(r) for r in requests), return_exceptions=True)
        failed = sum(1 for r in results if isinstance(r, BaseException))
        logger.info("Batch finished: %d ok, %d failed", len(results) - failed, failed)
        return list(results)

    # --- Accounting ---

    async def count_tokens(self, text: str) -> int:
        """Count tokens of *text*; quota errors rotate credentials and retry."""

        async def attempt(_n: int) -> int:
            cred = self.pool.next()
            try:
                return await self.provider.count_tokens(
                    text, model=self.config.model, api_key=cred.secret
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.pool.report_failure(cred, exc)
                raise

        try:
            return await retry_async(attempt, policy=self.config.retry, sleep=self._sleep)
        except Exception as exc:
            raise _surface(exc, OP_TOKENS) from exc

    def key_stats(self) -> KeyStats:
        """Return credential pool counters."""
        return self.pool.stats()

    async def aclose(self) -> None:
        """Drain dispatchers and release provider resources."""
        await self.serial.aclose()
        await self.parallel.aclose()
        aclose = getattr(self.provider, "aclose", None)
        if callable(aclose):
            try:
                await aclose()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # Cleanup should never mask the primary failure.
                logger.warning("Provider cleanup failed: %s", exc)

    async def __aenter__(self) -> ExtractionService:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


def _default_provider(config: Config) -> Provider:
    if config.use_mock:
        return MockProvider()
    from castor.providers.gemini import GeminiProvider

    return GeminiProvider()


__all__ = [
    "AnalysisRequest",
    "ChatSession",
    "ExtractionService",
    "TextOptions",
]

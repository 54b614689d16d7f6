"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: it exists to prevent test suites from
growing lots of one-off provider subclasses as coverage expands.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from castor.config import Config
from castor.credentials import CredentialPool
from castor.providers.models import ProviderRequest, ProviderResponse
from castor.rate_limit import RateGate
from castor.service import ExtractionService
from tests.conftest import FakeProvider

KEYS = ("key-aaaaaaaa-0001", "key-bbbbbbbb-0002", "key-cccccccc-0003")


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@dataclass
class ScriptedProvider(FakeProvider):
    """FakeProvider that returns a scripted sequence of texts/exceptions.

    Once the script runs out, every call answers with ``text``.
    """

    script: list[str | BaseException] = field(default_factory=list)

    async def generate(
        self, request: ProviderRequest, *, api_key: str
    ) -> ProviderResponse:
        self.requests.append(request)
        self.keys_used.append(api_key)
        if not self.script:
            return ProviderResponse(text=self.text)
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return ProviderResponse(text=item)

    async def count_tokens(self, text: str, *, model: str, api_key: str) -> int:
        self.keys_used.append(api_key)
        self.token_calls += 1
        if self.script:
            item = self.script.pop(0)
            if isinstance(item, BaseException):
                raise item
        return len(text.split())


@dataclass
class GateProvider(FakeProvider):
    """FakeProvider that parks every call until ``release`` is set.

    Tracks how many calls are in flight overall and per API key.
    """

    started: asyncio.Event = field(default_factory=asyncio.Event)
    release: asyncio.Event = field(default_factory=asyncio.Event)
    in_flight: int = 0
    peak_in_flight: int = 0
    per_key: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    peak_per_key: int = 0

    async def generate(
        self, request: ProviderRequest, *, api_key: str
    ) -> ProviderResponse:
        self.requests.append(request)
        self.keys_used.append(api_key)
        self.in_flight += 1
        self.per_key[api_key] += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        self.peak_per_key = max(self.peak_per_key, self.per_key[api_key])
        self.started.set()
        try:
            await self.release.wait()
        finally:
            self.in_flight -= 1
            self.per_key[api_key] -= 1
        return ProviderResponse(text=self.text)


def make_service(
    provider: Any,
    *,
    keys: tuple[str, ...] = KEYS,
    clock: FakeClock | None = None,
    **config_overrides: Any,
) -> ExtractionService:
    """Build a service whose waits run on a FakeClock."""
    clock = clock or FakeClock()
    config = Config(api_keys=keys, **config_overrides)
    return ExtractionService(
        config,
        provider=provider,
        pool=CredentialPool(keys, disable_timeout_s=config.disable_timeout_s, clock=clock),
        gate=RateGate(
            window_s=config.window_s,
            max_requests=config.max_requests_per_window,
            min_interval_s=config.min_interval_s,
            clock=clock,
            sleep=clock.sleep,
        ),
        sleep=clock.sleep,
    )

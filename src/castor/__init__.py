"""Castor: quota-aware receipt extraction over the Gemini API.

Public API:
    - create_service(): Build an ExtractionService from a Config
    - ExtractionService: text, chat, image, receipt, PDF and batch analysis
    - Config: Configuration dataclass
    - extract_record(): Free text to canonical record line
"""

from __future__ import annotations

import logging

from castor.backoff import BackoffPolicy, FailureKind
from castor.cache import ResultCache
from castor.config import Config
from castor.credentials import Credential, CredentialPool, KeyStats
from castor.dispatch import ParallelDispatcher, SerialDispatcher
from castor.errors import (
    APIError,
    CastorError,
    ConfigurationError,
    DispatcherClosedError,
    OverloadedError,
    PromptError,
    RateLimitError,
)
from castor.extraction import (
    ExtractionProfile,
    date_hint_from_filename,
    extract_record,
    normalize_amount,
    note_from_filename,
)
from castor.mutator import FingerprintMutator, GenerationParams, TestPromptPolicy
from castor.prompts import PromptRegistry
from castor.rate_limit import RateGate, RateWindow
from castor.records import ReceiptRecord
from castor.service import AnalysisRequest, ChatSession, ExtractionService, TextOptions
from castor.store import AnalysisStore

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("castor-ai")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("castor").addHandler(logging.NullHandler())

logger = logging.getLogger(__name__)


def create_service(config: Config | None = None) -> ExtractionService:
    """Wire the default object graph for *config*.

    Pool, gate, cache and dispatchers are owned by the returned service;
    nothing is shared at module level, so independent services never
    interfere with each other's quotas.

    Example:
        async with create_service(Config()) as service:
            line = await service.analyze_receipt(image_bytes, file_name="02-07.jpg")
    """
    cfg = config or Config()
    logger.debug("Creating service: %s", cfg)
    return ExtractionService(cfg)


__all__ = [
    "APIError",
    "AnalysisRequest",
    "AnalysisStore",
    "BackoffPolicy",
    "CastorError",
    "ChatSession",
    "Config",
    "ConfigurationError",
    "Credential",
    "CredentialPool",
    "DispatcherClosedError",
    "ExtractionProfile",
    "ExtractionService",
    "FailureKind",
    "FingerprintMutator",
    "GenerationParams",
    "KeyStats",
    "OverloadedError",
    "ParallelDispatcher",
    "PromptError",
    "PromptRegistry",
    "RateGate",
    "RateLimitError",
    "RateWindow",
    "ReceiptRecord",
    "ResultCache",
    "SerialDispatcher",
    "TestPromptPolicy",
    "TextOptions",
    "create_service",
    "date_hint_from_filename",
    "extract_record",
    "normalize_amount",
    "note_from_filename",
]

"""HTTP-related constants shared by the provider layer and the retry machinery."""

from __future__ import annotations

# Status codes the client adapter maps onto typed errors.
RATE_LIMITED_STATUS_CODES: frozenset[int] = frozenset({429})
OVERLOADED_STATUS_CODES: frozenset[int] = frozenset({503})

# Inline request payloads above this size go through the file upload API.
INLINE_PAYLOAD_MAX_BYTES = 20 * 1024 * 1024

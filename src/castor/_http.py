"""Small HTTP-related constants shared across Castor.

This module is intentionally tiny to avoid circular imports and drift.
"""

from __future__ import annotations

# Status codes mapped onto canonical error kinds by provider error handling.
AUTH_STATUS_CODES: frozenset[int] = frozenset({401, 403})
INVALID_REQUEST_STATUS_CODES: frozenset[int] = frozenset({400, 404, 409, 413, 422})
TIMEOUT_STATUS_CODES: frozenset[int] = frozenset({408})
RATE_LIMIT_STATUS_CODES: frozenset[int] = frozenset({429})
# Anthropic reports overload as a non-standard 529.
UNAVAILABLE_STATUS_CODES: frozenset[int] = frozenset({500, 502, 503, 504, 529})

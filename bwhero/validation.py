"""
Validation — Error types and input validation for the proxy.

Every failure the pipeline can meet is one of these exceptions. The
request handler decides what the client sees:

- ValidationError   → 400, no outbound fetch
- TransportError    → redirect (or bypass for anti-bot statuses)
- ContentTooLarge   → redirect
- MetadataError     → redirect
- CodecRejection    → one fallback attempt, then redirect
- TranscodeTimeout  → redirect

## Usage

    from bwhero.validation import ValidationError, validate_origin_url

    try:
        url = validate_origin_url(raw)
    except ValidationError as e:
        return str(e), 400
"""

from __future__ import annotations

import re
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

ALLOWED_SCHEMES = ("http", "https")

# Some carriers wrap image URLs as http://1.1.x.x/bmi/<original>
_BMI_PREFIX = re.compile(r"http://1\.1\.\d\.\d/bmi/(https?://)?", re.IGNORECASE)


class ProxyError(Exception):
    """Base class for all proxy pipeline errors."""

    kind = "error"


class ValidationError(ProxyError):
    """Raised when client input is malformed."""

    kind = "validation"

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict] = None):
        self.message = message
        self.field = field
        self.details = details or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        if self.field:
            return f"{self.field}: {self.message}"
        return self.message


class ConfigurationError(Exception):
    """Raised when configuration is missing or invalid."""
    pass


class TransportError(ProxyError):
    """Raised when the origin cannot be reached or its body cannot be read."""

    kind = "transport"


class ContentTooLarge(ProxyError):
    """Raised when a decoded body would exceed the buffer limit."""

    kind = "oversize"


class MetadataError(ProxyError):
    """Raised when the image header cannot be read."""

    kind = "metadata"


class CodecRejection(ProxyError):
    """Raised when the codec refuses to encode this content in a format."""

    kind = "codec"

    def __init__(self, message: str, format: str):
        self.format = format
        super().__init__(message)


class TranscodeTimeout(ProxyError):
    """Raised when a codec step exceeds its wall-clock bound."""

    kind = "timeout"


class Cancelled(ProxyError):
    """Raised when the client went away and downstream work was abandoned."""

    kind = "cancelled"


def normalize_origin_url(raw: Any) -> str:
    """
    Normalize the raw `url` query value.

    A list of values (the client split the origin URL on `&url=`) is
    joined back together, and the carrier `bmi` prefix is stripped.
    """
    if isinstance(raw, (list, tuple)):
        raw = "&url=".join(str(part) for part in raw)
    if raw is None:
        return ""
    url = str(raw).strip()
    return _BMI_PREFIX.sub("http://", url)


def validate_origin_url(raw: Any) -> str:
    """
    Validate an origin URL.

    Checks:
    - Present and non-empty
    - Explicit http or https scheme
    - Has a host

    Returns:
        The normalized URL

    Raises:
        ValidationError: If validation fails
    """
    url = normalize_origin_url(raw)
    if not url:
        raise ValidationError("Missing URL", field="url")

    try:
        parts = urlsplit(url)
    except ValueError as e:
        raise ValidationError(f"Invalid URL: {e}", field="url")

    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise ValidationError("Invalid URL: scheme must be http or https", field="url")
    if not parts.hostname:
        raise ValidationError("Invalid URL: missing host", field="url")
    if any(ch.isspace() for ch in parts.netloc):
        raise ValidationError("Invalid URL: whitespace in host", field="url")

    return url


def clamp(value: int, low: int, high: int) -> int:
    """Clamp an integer into [low, high]."""
    return max(low, min(high, value))

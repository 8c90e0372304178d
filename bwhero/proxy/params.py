"""
Parameter Resolution — turn the query string into validated proxy params.

    GET /?url=<origin>&l=<quality>&jpeg=<flag>&bw=<flag>

- url:  required, http(s) with a host; otherwise 400 and nothing is fetched
- l:    quality, clamped to [MIN_QUALITY, MAX_QUALITY]; junk → DEFAULT_QUALITY
- jpeg: any non-empty value asks for JPEG instead of WebP/AVIF
- bw:   "0" turns grayscale off; absent means grayscale on
"""

from __future__ import annotations

import logging
import re
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field

from ..config.loader import ProxyConfig
from ..models.image import CompressionContext, FormatPreference, Inspection
from ..validation import validate_origin_url

logger = logging.getLogger(__name__)

_LEADING_INT = re.compile(r"\s*[-+]?\d+")


class ProxyParams(BaseModel):
    """Validated, normalized request parameters."""

    model_config = ConfigDict(frozen=True)

    url: str
    quality: int = Field(ge=1, le=100)
    preference: FormatPreference = FormatPreference.MODERN
    grayscale: bool = True

    def to_context(self, mime_type: str, byte_size: int, inspection: Inspection) -> CompressionContext:
        """Combine with what we learned from the origin."""
        return CompressionContext(
            mime_type=mime_type or "",
            byte_size=byte_size,
            preference=self.preference,
            grayscale=self.grayscale,
            quality=self.quality,
            is_animated=inspection.is_animated,
        )


def _getlist(query: Mapping[str, Any], name: str) -> list:
    if hasattr(query, "getlist"):
        return query.getlist(name)
    value = query.get(name)
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def parse_quality(raw: Any, config: ProxyConfig) -> int:
    """
    Parse `l` from its leading integer ("75abc" → 75, "50.5" → 50).

    No leading digits falls back to the default; numbers are clamped.
    """
    match = _LEADING_INT.match(raw) if isinstance(raw, str) else None
    if match is None:
        return config.clamp_quality(config.default_quality)
    return config.clamp_quality(int(match.group()))


def resolve_params(query: Mapping[str, Any], config: ProxyConfig) -> ProxyParams:
    """
    Validate and normalize the query string.

    Args:
        query: Request args (a werkzeug MultiDict or a plain dict).
        config: Quality bounds and default.

    Raises:
        ValidationError: If the URL is missing or invalid
    """
    urls = _getlist(query, "url")
    if len(urls) > 1:
        logger.warning("Multiple url values provided; joining them")
    url = validate_origin_url(urls if len(urls) > 1 else (urls[0] if urls else ""))

    return ProxyParams(
        url=url,
        quality=parse_quality(query.get("l"), config),
        preference=FormatPreference.JPEG if query.get("jpeg") else FormatPreference.MODERN,
        grayscale=query.get("bw") != "0",
    )

"""
Eligibility Decision Engine — is this payload worth transcoding?

All checks must pass for the image to be transcoded; the first failing
check short-circuits to bypass and names its reason.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..config.loader import ProxyConfig
from ..models.image import CompressionContext, FormatPreference

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Decision:
    """Outcome of the eligibility checks. Truthy when transcoding should proceed."""

    transcode: bool
    reason: str

    def __bool__(self) -> bool:
        return self.transcode


def _skip(reason: str, ctx: CompressionContext) -> Decision:
    logger.info(
        f'skip reason="{reason}" type={ctx.base_type or "-"} size={ctx.byte_size}',
        extra={"reason": reason},
    )
    return Decision(False, reason)


def should_transcode(ctx: CompressionContext, data: bytes, config: ProxyConfig) -> Decision:
    """
    Decide transcode vs bypass.

    Checks, in order:
    1. Declared type is an image and there are bytes to work with
    2. Size reaches MIN_COMPRESS_LENGTH
    3. JPEG output for a small PNG/GIF (likely transparency) is skipped
    4. Small animated PNGs are skipped
    """
    if not ctx.base_type.startswith("image/"):
        return _skip("non-image", ctx)
    if ctx.byte_size <= 0 or not data:
        return _skip("invalid-input", ctx)

    if ctx.byte_size < config.min_compress_length:
        return _skip("too-small", ctx)

    if (
        ctx.preference is FormatPreference.JPEG
        and (ctx.is_png or ctx.is_gif)
        and ctx.byte_size < config.min_transparent_compress_length
    ):
        return _skip("transparent-small", ctx)

    if ctx.is_png and ctx.is_animated and ctx.byte_size < config.apng_threshold_length:
        return _skip("animated-small", ctx)

    logger.info(f'compress reason="eligible" type={ctx.base_type} size={ctx.byte_size}')
    return Decision(True, "eligible")

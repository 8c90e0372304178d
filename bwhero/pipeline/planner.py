"""
Adaptive Parameter Planner — derive codec settings from geometry and size.

`plan_encode` is a pure function of (CompressionContext, ImageMetadata,
ProxyConfig): the same inputs always give the same plan. All threshold
tables live here and nowhere else.

Quality attenuation:
    Large, heavy images are quantized much harder than small light ones.
    The first row whose pixel AND byte thresholds are both exceeded wins.

AVIF tuning:
    Bigger images get more tiles, a wider quantizer range and less effort
    (they are already heavily down-quantized, so encode time matters more).

Artifact reduction:
    A mild blur + desaturate + resharpen before the final sharpen, stronger
    for bigger images, to hide blocking from the heavier quantization.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Tuple

from ..config.loader import ProxyConfig
from ..models.image import CompressionContext, FormatPreference, ImageMetadata
from ..models.plan import (
    ArtifactReduction,
    AvifPlan,
    EncodePlan,
    JpegPlan,
    Sharpen,
    WebpPlan,
)

# ── Tables ───────────────────────────────────────────────────


@dataclass(frozen=True)
class Attenuation:
    min_pixels: int
    min_bytes: int
    factor: float


# Descending severity, first match wins
QUALITY_ATTENUATION: Tuple[Attenuation, ...] = (
    Attenuation(3_000_000, 1_536_000, 0.1),
    Attenuation(2_000_000, 1_024_000, 0.25),
    Attenuation(1_000_000, 512_000, 0.5),
    Attenuation(500_000, 256_000, 0.75),
)


@dataclass(frozen=True)
class AvifTuning:
    tile_rows: int
    tile_cols: int
    min_quantizer: int
    max_quantizer: int
    effort: int


AVIF_LARGE_DIMENSION = 2000     # px, either side
AVIF_MEDIUM_DIMENSION = 1000

AVIF_LARGE = AvifTuning(tile_rows=4, tile_cols=4, min_quantizer=30, max_quantizer=50, effort=3)
AVIF_MEDIUM = AvifTuning(tile_rows=2, tile_cols=2, min_quantizer=28, max_quantizer=48, effort=4)
AVIF_SMALL = AvifTuning(tile_rows=1, tile_cols=1, min_quantizer=26, max_quantizer=48, effort=4)

# (pixel count above which the setting applies, setting), descending
ARTIFACT_REDUCTION: Tuple[Tuple[int, ArtifactReduction], ...] = (
    (3_000_000, ArtifactReduction(blur_radius=0.4, sharpen_sigma=0.8, saturation=0.85)),
    (1_000_000, ArtifactReduction(blur_radius=0.35, sharpen_sigma=0.6, saturation=0.9)),
    (500_000, ArtifactReduction(blur_radius=0.3, sharpen_sigma=0.5, saturation=0.95)),
)
ARTIFACT_REDUCTION_DEFAULT = ArtifactReduction(blur_radius=0.3, sharpen_sigma=0.5, saturation=1.0)

SHARPEN_MIN_PIXELS = 500_000
SHARPEN = Sharpen(sigma=1.0, flat=1.0, jagged=0.5)

CHROMA_SUBSAMPLING = "4:2:0"


# ── Planning ─────────────────────────────────────────────────


def attenuate_quality(quality: int, pixel_count: int, byte_size: int) -> int:
    """Scale quality down for large, heavy images (rounded up)."""
    for row in QUALITY_ATTENUATION:
        if pixel_count > row.min_pixels and byte_size > row.min_bytes:
            return math.ceil(quality * row.factor)
    return quality


def avif_tuning(width: int, height: int) -> AvifTuning:
    if width > AVIF_LARGE_DIMENSION or height > AVIF_LARGE_DIMENSION:
        return AVIF_LARGE
    if width > AVIF_MEDIUM_DIMENSION or height > AVIF_MEDIUM_DIMENSION:
        return AVIF_MEDIUM
    return AVIF_SMALL


def artifact_reduction(pixel_count: int) -> ArtifactReduction:
    for threshold, settings in ARTIFACT_REDUCTION:
        if pixel_count > threshold:
            return settings
    return ARTIFACT_REDUCTION_DEFAULT


def fit_within(width: int, height: int, max_dimension: int) -> Optional[Tuple[int, int]]:
    """Downscale-only target size keeping aspect ratio, or None if it already fits."""
    longest = max(width, height)
    if longest <= max_dimension:
        return None
    return max(1, width * max_dimension // longest), max(1, height * max_dimension // longest)


def target_format(ctx: CompressionContext, config: ProxyConfig) -> str:
    """Animated content must stay animated, so it always goes to webp."""
    if ctx.is_animated:
        return "webp"
    if ctx.preference is FormatPreference.JPEG:
        return "jpeg"
    return config.modern_format


def plan_encode(ctx: CompressionContext, meta: ImageMetadata, config: ProxyConfig) -> EncodePlan:
    """
    Build the encode plan for one image.

    Args:
        ctx: Request-level context (type, size, preference, quality).
        meta: Geometry read from the image header.
        config: Process-wide settings (quality bounds, max dimension).

    Returns:
        A WebpPlan, AvifPlan or JpegPlan.
    """
    animated = ctx.is_animated or meta.is_animated
    byte_size = meta.byte_size or ctx.byte_size

    quality = config.clamp_quality(ctx.quality)
    quality = config.clamp_quality(attenuate_quality(quality, meta.pixel_count, byte_size))

    fmt = "webp" if animated else target_format(ctx, config)

    common = dict(
        quality=quality,
        chroma_subsampling=CHROMA_SUBSAMPLING,
        grayscale=ctx.grayscale,
        artifact_reduction=None if animated else artifact_reduction(meta.pixel_count),
        sharpen=SHARPEN if not animated and meta.pixel_count > SHARPEN_MIN_PIXELS else None,
        resize=fit_within(meta.width, meta.height, config.max_dimension),
    )

    if fmt == "avif":
        tuning = avif_tuning(meta.width, meta.height)
        return AvifPlan(
            **common,
            tile_rows=tuning.tile_rows,
            tile_cols=tuning.tile_cols,
            min_quantizer=tuning.min_quantizer,
            max_quantizer=tuning.max_quantizer,
            effort=tuning.effort,
        )
    if fmt == "jpeg":
        return JpegPlan(**common)
    return WebpPlan(**common, loop=0 if animated else None)


def fallback_plan(plan: EncodePlan) -> Optional[EncodePlan]:
    """
    The next most compatible plan after a codec rejection.

    AVIF → WebP → JPEG. Animated WebP has nowhere to go (JPEG cannot
    animate), and JPEG is the end of the line.
    """
    common = dict(
        quality=plan.quality,
        chroma_subsampling=plan.chroma_subsampling,
        grayscale=plan.grayscale,
        artifact_reduction=plan.artifact_reduction,
        sharpen=plan.sharpen,
        resize=plan.resize,
    )
    if isinstance(plan, AvifPlan):
        return WebpPlan(**common)
    if isinstance(plan, WebpPlan) and not plan.animated:
        return JpegPlan(**common)
    return None

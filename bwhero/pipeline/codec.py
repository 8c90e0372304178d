"""
Codec — Pillow operations used by the transcoder.

Each function does one thing to a Canvas (the decoded frames of one
image). The transcoder decides which ones to call and in what order; this
module only knows how to talk to Pillow.

Codec rejections (no encoder for the format, or an image too big for the
container) raise CodecRejection so the transcoder can fall back to the
next format. Anything else the encoder throws is a plain failure.
"""

from __future__ import annotations

import io
import logging
import tempfile
from dataclasses import dataclass, field
from typing import IO, Callable, List, Optional

from PIL import Image, ImageEnhance, ImageFilter, ImageSequence, UnidentifiedImageError

from ..models.image import ImageMetadata, TranscodeResult
from ..models.plan import ArtifactReduction, AvifPlan, EncodePlan, JpegPlan, Sharpen, WebpPlan
from ..validation import CodecRejection, MetadataError
from .limiter import CancelToken

logger = logging.getLogger(__name__)

# Largest side each container accepts
CONTAINER_LIMITS = {
    "avif": 16384,
    "webp": 16383,
    "jpeg": 65535,
}

PIL_FORMATS = {"avif": "AVIF", "webp": "WEBP", "jpeg": "JPEG"}

DEFAULT_FRAME_DURATION = 100    # ms, when a frame does not say


# ── Metadata ─────────────────────────────────────────────────


def read_metadata(data: bytes) -> ImageMetadata:
    """
    Read geometry from the image header without decoding pixels.

    Raises:
        MetadataError: If the bytes are not a readable image
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            width, height = img.size
            frames = getattr(img, "n_frames", 1) or 1
    except Image.DecompressionBombError as e:
        raise MetadataError(f"refusing oversized image: {e}")
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as e:
        raise MetadataError(f"unreadable image header: {e}")

    if width <= 0 or height <= 0:
        raise MetadataError(f"invalid dimensions {width}x{height}")

    return ImageMetadata(width=width, height=height, frame_count=int(frames), byte_size=len(data))


# ── Canvas ───────────────────────────────────────────────────


@dataclass
class Canvas:
    """Decoded frames being worked on. Close it when done."""

    frames: List[Image.Image]
    durations: List[int] = field(default_factory=list)
    source: Optional[Image.Image] = field(default=None, repr=False)

    @property
    def animated(self) -> bool:
        return len(self.frames) > 1

    @property
    def size(self):
        return self.frames[0].size

    def map(self, fn: Callable[[Image.Image], Image.Image], token: Optional[CancelToken] = None) -> None:
        """Replace every frame with fn(frame), closing the old one."""
        updated = []
        for frame in self.frames:
            if token is not None:
                token.check()
            new = fn(frame)
            if new is not frame:
                frame.close()
            updated.append(new)
        self.frames = updated

    def close(self) -> None:
        for frame in self.frames:
            frame.close()
        self.frames = []
        if self.source is not None:
            self.source.close()
            self.source = None


def _working_mode(img: Image.Image) -> Image.Image:
    """Bring odd modes (P, 1, I;16, CMYK...) into something filters accept."""
    if img.mode in ("RGB", "RGBA", "L", "LA"):
        return img
    if img.mode == "P":
        return img.convert("RGBA" if "transparency" in img.info else "RGB")
    if img.mode in ("PA", "RGBa", "La"):
        return img.convert("RGBA")
    return img.convert("RGB")


def open_canvas(data: bytes, animated: bool, token: Optional[CancelToken] = None) -> Canvas:
    """Decode all frames (animated) or the first frame (static)."""
    try:
        source = Image.open(io.BytesIO(data))
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as e:
        raise MetadataError(f"cannot decode image: {e}")

    canvas = Canvas(frames=[], source=source)
    try:
        if not animated:
            source.load()
            frame = source.copy()
            working = _working_mode(frame)
            if working is not frame:
                frame.close()
            canvas.frames.append(working)
            return canvas

        for frame in ImageSequence.Iterator(source):
            if token is not None:
                token.check("decode")
            canvas.frames.append(frame.convert("RGBA"))
            duration = int(frame.info.get("duration", DEFAULT_FRAME_DURATION) or 0)
            canvas.durations.append(duration or DEFAULT_FRAME_DURATION)
        return canvas
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as e:
        canvas.close()
        raise MetadataError(f"cannot decode image: {e}")
    except BaseException:
        canvas.close()
        raise


# ── Filters ──────────────────────────────────────────────────


def to_grayscale(img: Image.Image) -> Image.Image:
    if img.mode in ("L", "LA"):
        return img
    return img.convert("LA" if has_alpha(img) else "L")


def reduce_artifacts(img: Image.Image, settings: ArtifactReduction) -> Image.Image:
    """Desaturate slightly, blur away block noise, then resharpen."""
    if settings.saturation != 1.0 and img.mode in ("RGB", "RGBA"):
        img = ImageEnhance.Color(img).enhance(settings.saturation)
    img = img.filter(ImageFilter.GaussianBlur(radius=settings.blur_radius))
    return img.filter(unsharp_mask(Sharpen(sigma=settings.sharpen_sigma)))


def sharpen(img: Image.Image, settings: Sharpen) -> Image.Image:
    return img.filter(unsharp_mask(settings))


def unsharp_mask(settings: Sharpen) -> ImageFilter.UnsharpMask:
    # flat → overall strength, jagged → edge threshold
    return ImageFilter.UnsharpMask(
        radius=settings.sigma,
        percent=int(round(settings.flat * 100)),
        threshold=int(round(settings.jagged * 4)),
    )


def resize(img: Image.Image, size) -> Image.Image:
    return img.resize(size, Image.LANCZOS)


def has_alpha(img: Image.Image) -> bool:
    """Check if an image actually uses transparency."""
    if img.mode not in ("RGBA", "LA"):
        return False
    alpha = img.getchannel("A")
    extrema = alpha.getextrema()
    # If min alpha is 255, the entire image is fully opaque
    return extrema[0] < 255


# ── Encode ───────────────────────────────────────────────────


def encoder_available(fmt: str) -> bool:
    Image.init()
    return PIL_FORMATS.get(fmt, "") in Image.SAVE


def avif_speed(effort: int) -> int:
    """Map effort (0 fastest … 9 slowest) onto libavif speed (10 fastest … 0 slowest)."""
    effort = max(0, min(9, effort))
    return round((9 - effort) * 10 / 9)


def _log2(n: int) -> int:
    return max(0, n.bit_length() - 1)


def _prepare(img: Image.Image, fmt: str) -> Image.Image:
    """Convert a frame into a mode the target encoder accepts."""
    if fmt == "jpeg":
        if img.mode in ("RGB", "L"):
            return img
        if img.mode == "LA":
            bg = Image.new("L", img.size, 255)
            bg.paste(img.getchannel("L"), mask=img.getchannel("A"))
            return bg
        # No alpha in JPEG: flatten onto white
        rgba = img.convert("RGBA")
        bg = Image.new("RGB", img.size, (255, 255, 255))
        bg.paste(rgba, mask=rgba.getchannel("A"))
        return bg

    if img.mode == "L":
        return img.convert("RGB")
    if img.mode == "LA":
        return img.convert("RGBA")
    if img.mode == "RGBA" and not has_alpha(img):
        return img.convert("RGB")
    return img


def _save_kwargs(plan: EncodePlan) -> dict:
    if isinstance(plan, AvifPlan):
        return {
            "quality": plan.quality,
            "subsampling": plan.chroma_subsampling,
            "speed": avif_speed(plan.effort),
            "tile_rows": _log2(plan.tile_rows),
            "tile_cols": _log2(plan.tile_cols),
        }
    if isinstance(plan, WebpPlan):
        kwargs = {
            "quality": plan.quality,
            "alpha_quality": plan.alpha_quality,
            "method": plan.method,
        }
        if plan.animated:
            kwargs["loop"] = plan.loop
        return kwargs
    if isinstance(plan, JpegPlan):
        return {
            "quality": plan.quality,
            "subsampling": plan.chroma_subsampling,
            "optimize": True,
            "progressive": plan.progressive,
        }
    raise TypeError(f"not an encode plan: {plan!r}")


def check_container(plan: EncodePlan, width: int, height: int) -> None:
    """
    Raises:
        CodecRejection: If no encoder is available or the image is too large
    """
    fmt = plan.format
    if not encoder_available(fmt):
        raise CodecRejection(f"no {fmt} encoder available", format=fmt)
    limit = CONTAINER_LIMITS[fmt]
    if width > limit or height > limit:
        raise CodecRejection(
            f"{width}x{height} is too large for the {fmt} format (max {limit})",
            format=fmt,
        )


def encode(canvas: Canvas, plan: EncodePlan, stream_threshold: int) -> TranscodeResult:
    """
    Encode the canvas according to the plan.

    Output up to `stream_threshold` bytes is returned in memory; larger
    output stays in a spooled temporary file for chunked sending.

    Raises:
        CodecRejection: If the format cannot hold this image
    """
    width, height = canvas.size
    check_container(plan, width, height)

    fmt = plan.format
    if canvas.animated:
        # Every frame in one mode, alpha kept for disposal between frames
        frames = [f if f.mode == "RGBA" else f.convert("RGBA") for f in canvas.frames]
    else:
        frames = [_prepare(frame, fmt) for frame in canvas.frames]
    kwargs = _save_kwargs(plan)

    out: IO[bytes] = tempfile.SpooledTemporaryFile(max_size=stream_threshold)
    try:
        if canvas.animated and fmt != "jpeg":
            frames[0].save(
                out,
                format=PIL_FORMATS[fmt],
                save_all=True,
                append_images=frames[1:],
                duration=canvas.durations,
                **kwargs,
            )
        else:
            frames[0].save(out, format=PIL_FORMATS[fmt], **kwargs)
    except (KeyError, OSError, ValueError) as e:
        out.close()
        if isinstance(e, KeyError) or "too large" in str(e).lower():
            raise CodecRejection(f"{fmt} encoder rejected image: {e}", format=fmt)
        raise
    except BaseException:
        out.close()
        raise
    finally:
        for prepared, original in zip(frames, canvas.frames):
            if prepared is not original:
                prepared.close()

    size = out.tell()
    if size <= stream_threshold:
        out.seek(0)
        data = out.read()
        out.close()
        return TranscodeResult(format=fmt, size=size, data=data)

    logger.debug(f"Encoded {fmt} output {size:,} bytes — keeping on disk for streaming")
    return TranscodeResult(format=fmt, size=size, stream=out)

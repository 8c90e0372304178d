"""
Encode Plans — Format-specific codec parameters.

An EncodePlan is exactly one of WebpPlan, AvifPlan or JpegPlan. The
`format` class attribute is the tag; each variant only carries the fields
its codec understands.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, ClassVar, Dict, Optional, Tuple, Union


@dataclass(frozen=True)
class ArtifactReduction:
    """Denoise-then-resharpen pass applied before the main sharpen."""

    blur_radius: float
    sharpen_sigma: float
    saturation: float


@dataclass(frozen=True)
class Sharpen:
    """Unsharp mask settings (sigma, flat-area and jagged-area weights)."""

    sigma: float = 1.0
    flat: float = 1.0
    jagged: float = 0.5


@dataclass(frozen=True)
class _PlanBase:
    quality: int
    chroma_subsampling: str = "4:2:0"
    grayscale: bool = False
    artifact_reduction: Optional[ArtifactReduction] = None
    sharpen: Optional[Sharpen] = None
    resize: Optional[Tuple[int, int]] = None

    format: ClassVar[str] = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"format": self.format, **asdict(self)}


@dataclass(frozen=True)
class WebpPlan(_PlanBase):
    alpha_quality: int = 80
    method: int = 4
    loop: Optional[int] = None      # set only for animated output

    format: ClassVar[str] = "webp"

    @property
    def animated(self) -> bool:
        return self.loop is not None


@dataclass(frozen=True)
class AvifPlan(_PlanBase):
    tile_rows: int = 1
    tile_cols: int = 1
    # Quantizer bounds are descriptive; the Pillow encoder is driven by quality
    min_quantizer: int = 26
    max_quantizer: int = 48
    effort: int = 4

    format: ClassVar[str] = "avif"


@dataclass(frozen=True)
class JpegPlan(_PlanBase):
    progressive: bool = True

    format: ClassVar[str] = "jpeg"


EncodePlan = Union[WebpPlan, AvifPlan, JpegPlan]

"""
Image Models — Request-scoped data flowing through the proxy pipeline.

All of these live for exactly one request and are never shared between
requests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import IO, Dict, Iterator, List, Optional, Union

HeaderValue = Union[str, List[str]]

CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class FetchResult:
    """What the origin sent back. Body is raw (still content-encoded)."""

    status_code: int
    headers: Dict[str, HeaderValue]
    body: bytes
    content_encoding: str = ""

    def header(self, name: str, default: str = "") -> str:
        """First value of a header, case-insensitive."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                if isinstance(value, list):
                    return value[0] if value else default
                return value
        return default

    @property
    def content_type(self) -> str:
        return self.header("content-type")


@dataclass(frozen=True)
class ImageMetadata:
    """Geometry read from the image header."""

    width: int
    height: int
    frame_count: int = 1
    byte_size: int = 0

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    @property
    def is_animated(self) -> bool:
        return self.frame_count > 1


@dataclass(frozen=True)
class Inspection:
    """Type and animation verdict for one payload."""

    is_image: bool
    is_animated: bool = False


class FormatPreference(str, Enum):
    """Which output family the client asked for."""
    MODERN = "modern"   # webp / avif
    JPEG = "jpeg"


@dataclass(frozen=True)
class CompressionContext:
    """Everything the decision engine and planner know about one request."""

    mime_type: str
    byte_size: int
    preference: FormatPreference = FormatPreference.MODERN
    grayscale: bool = True
    quality: int = 40
    is_animated: bool = False

    @property
    def base_type(self) -> str:
        """MIME type lower-cased, without parameters."""
        return self.mime_type.split(";", 1)[0].strip().lower()

    @property
    def is_png(self) -> bool:
        return self.base_type == "image/png"

    @property
    def is_gif(self) -> bool:
        return self.base_type == "image/gif"


@dataclass
class TranscodeResult:
    """
    Encoded output.

    Small outputs are held in memory (`data`); large ones sit in a spooled
    temporary file (`stream`) and are sent in chunks.
    """

    format: str
    size: int
    data: Optional[bytes] = None
    stream: Optional[IO[bytes]] = field(default=None, repr=False)

    @property
    def streamed(self) -> bool:
        return self.stream is not None

    @property
    def mime_type(self) -> str:
        return f"image/{self.format}"

    def read_all(self) -> bytes:
        """Whole output as bytes (loads a spooled file into memory)."""
        if self.data is not None:
            return self.data
        if self.stream is None:
            return b""
        self.stream.seek(0)
        return self.stream.read()

    def iter_chunks(self, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        """Yield the output in chunks, closing the spooled file at the end."""
        if self.data is not None:
            yield self.data
            return
        try:
            if self.stream is None:
                return
            self.stream.seek(0)
            while True:
                chunk = self.stream.read(chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            self.close()

    def close(self) -> None:
        if self.stream is not None:
            self.stream.close()
            self.stream = None

"""
Type & Animation Inspector — classify a payload without decoding pixels.

GIF animation is recognised by the NETSCAPE2.0 application extension.
APNG animation is recognised by walking the PNG chunk stream until an
`acTL` chunk (animated) or the image data / end of stream (static).
Chunk layout: 4-byte big-endian length, 4-byte type, data, 4-byte CRC.
"""

from __future__ import annotations

import logging
import struct
from typing import Dict, Tuple

from ..models.image import Inspection

logger = logging.getLogger(__name__)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
GIF_ANIMATION_MARKER = b"NETSCAPE2.0"

_CHUNK_HEADER = struct.Struct(">I4s")
_CRC_SIZE = 4


def is_image_type(mime_type: str) -> bool:
    return _base_type(mime_type).startswith("image/")


def _base_type(mime_type: str) -> str:
    return (mime_type or "").split(";", 1)[0].strip().lower()


def is_animated_gif(data: bytes) -> bool:
    """True if the GIF carries the looping application extension."""
    return GIF_ANIMATION_MARKER in data


def is_animated_png(data: bytes) -> bool:
    """
    True if the PNG chunk stream has an acTL chunk before its image data.

    Any inconsistency (bad signature, truncated header, a length running
    past the end of the buffer) counts as static.
    """
    if not data.startswith(PNG_SIGNATURE):
        logger.debug("PNG scan: missing signature — treating as static")
        return False

    total = len(data)
    cursor = len(PNG_SIGNATURE)

    while cursor + _CHUNK_HEADER.size <= total:
        length, chunk_type = _CHUNK_HEADER.unpack_from(data, cursor)
        if chunk_type == b"acTL":
            return True
        if chunk_type in (b"IDAT", b"IEND"):
            return False

        next_cursor = cursor + _CHUNK_HEADER.size + length + _CRC_SIZE
        if next_cursor > total:
            logger.info(
                f"PNG scan: {chunk_type!r} chunk at offset {cursor} claims "
                f"{length:,} bytes past end of stream — treating as static"
            )
            return False
        cursor = next_cursor

    return False


class Inspector:
    """
    Per-request inspector.

    Results are memoised per distinct buffer so a payload scanned by the
    decision engine is not scanned again later in the same request.
    """

    def __init__(self) -> None:
        self._cache: Dict[Tuple[int, str], Tuple[bytes, Inspection]] = {}

    def inspect(self, data: bytes, mime_type: str) -> Inspection:
        key = (id(data), _base_type(mime_type))
        cached = self._cache.get(key)
        if cached is not None and cached[0] is data:
            return cached[1]

        result = self._inspect(data, mime_type)
        self._cache[key] = (data, result)
        return result

    def _inspect(self, data: bytes, mime_type: str) -> Inspection:
        base = _base_type(mime_type)
        if not base.startswith("image/"):
            return Inspection(is_image=False)

        try:
            if base == "image/gif":
                animated = is_animated_gif(data)
            elif base in ("image/png", "image/apng"):
                animated = is_animated_png(data)
            else:
                animated = False
        except Exception as e:
            logger.warning(f"Animation check failed for {base}: {e}")
            animated = False

        return Inspection(is_image=True, is_animated=animated)

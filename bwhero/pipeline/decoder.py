"""
Content Decoder — undo HTTP content-encoding on origin payloads.

Origins send bodies gzip'd, deflated, brotli'd, xz'd or zstd'd, sometimes
stacked ("gzip, br"). The proxy reads the raw body itself and normalizes it
here, so the inspector and codec always see the real image bytes.

A body we cannot decode is passed on untouched: decoding trouble is
logged, never fatal to the request. A body that decodes to more than the
buffer limit is different: the proxy will not hold it, so ContentTooLarge
goes back to the caller.
"""

from __future__ import annotations

import io
import logging
import lzma
import zlib
from typing import Callable, Dict, List, Optional

import brotli
import zstandard

from ..validation import ContentTooLarge

logger = logging.getLogger(__name__)

GZIP_WBITS = 16 + zlib.MAX_WBITS
# Brotli input is fed in pieces this big so output can be checked as it grows
BROTLI_STEP = 4 * 1024
ZSTD_READ_SIZE = 256 * 1024

# Used when the caller does not pass a limit
DEFAULT_MAX_SIZE = 10 * 1024 * 1024


def _check_size(size: int, limit: int, coding: str) -> None:
    if size > limit:
        raise ContentTooLarge(f"{coding} body decodes to more than {limit:,} bytes")


def _zlib_decode(data: bytes, limit: int, wbits: int, coding: str) -> bytes:
    """Inflate with a bounded output; gzip members are decoded one after another."""
    out = bytearray()
    while True:
        decompressor = zlib.decompressobj(wbits)
        out += decompressor.decompress(data, limit + 1 - len(out))
        _check_size(len(out), limit, coding)
        if not decompressor.eof:
            raise EOFError(f"{coding} stream ended early")
        # Concatenated gzip members; trailing zero padding is ignored
        data = decompressor.unused_data.lstrip(b"\x00")
        if not data or wbits != GZIP_WBITS:
            return bytes(out)


def _gunzip(data: bytes, limit: int) -> bytes:
    return _zlib_decode(data, limit, GZIP_WBITS, "gzip")


def _inflate(data: bytes, limit: int) -> bytes:
    # "deflate" is supposed to be zlib-wrapped, but plenty of servers send raw
    try:
        return _zlib_decode(data, limit, zlib.MAX_WBITS, "deflate")
    except zlib.error:
        return _zlib_decode(data, limit, -zlib.MAX_WBITS, "deflate")


def _unxz(data: bytes, limit: int) -> bytes:
    out = bytearray()
    while True:
        decompressor = lzma.LZMADecompressor()
        out += decompressor.decompress(data, max_length=limit + 1 - len(out))
        _check_size(len(out), limit, "xz")
        if not decompressor.eof:
            raise EOFError("xz stream ended early")
        data = decompressor.unused_data
        if not data:
            return bytes(out)


def _unbrotli(data: bytes, limit: int) -> bytes:
    decompressor = brotli.Decompressor()
    out = bytearray()
    for start in range(0, len(data), BROTLI_STEP):
        out += decompressor.process(data[start:start + BROTLI_STEP])
        _check_size(len(out), limit, "br")
    if not decompressor.is_finished():
        raise EOFError("br stream ended early")
    return bytes(out)


def _unzstd(data: bytes, limit: int) -> bytes:
    # stream_reader copes with frames that omit the content size
    reader = zstandard.ZstdDecompressor().stream_reader(io.BytesIO(data), read_across_frames=True)
    out = bytearray()
    with reader:
        while True:
            chunk = reader.read(ZSTD_READ_SIZE)
            if not chunk:
                return bytes(out)
            out += chunk
            _check_size(len(out), limit, "zstd")


DECODERS: Dict[str, Callable[[bytes, int], bytes]] = {
    "gzip": _gunzip,
    "x-gzip": _gunzip,
    "deflate": _inflate,
    "br": _unbrotli,
    "brotli": _unbrotli,
    "lzma": _unxz,
    "lzma2": _unxz,
    "xz": _unxz,
    "zstd": _unzstd,
}

IDENTITY = {"", "identity", "none"}


def parse_encodings(header: str) -> List[str]:
    """Split a Content-Encoding header into lower-cased codings, in order applied."""
    return [part.strip().lower() for part in (header or "").split(",") if part.strip()]


def decode_content(data: bytes, encoding: str, max_size: Optional[int] = None) -> bytes:
    """
    Decode a body according to its Content-Encoding.

    Codings are undone in reverse order of application. If any coding is
    unknown or fails to decode, the original bytes are returned unchanged.

    Args:
        data: Raw body bytes as received.
        encoding: Content-Encoding header value (may be empty).
        max_size: Largest decoded size accepted at any step.

    Returns:
        Decoded bytes, or `data` itself when nothing could be decoded.

    Raises:
        ContentTooLarge: If decoding would produce more than `max_size` bytes
    """
    codings = [c for c in parse_encodings(encoding) if c not in IDENTITY]
    if not codings or not data:
        return data

    limit = max_size if max_size is not None else DEFAULT_MAX_SIZE
    decoded = data
    for coding in reversed(codings):
        decoder = DECODERS.get(coding)
        if decoder is None:
            logger.warning(f"Unknown content-encoding {coding!r} — forwarding raw bytes")
            return data
        try:
            decoded = decoder(decoded, limit)
        except ContentTooLarge:
            raise
        except Exception as e:
            logger.warning(
                f"Failed to decode {coding} body ({len(decoded):,} bytes): {e} — "
                f"forwarding raw bytes"
            )
            return data

    logger.debug(f"Decoded {'+'.join(codings)}: {len(data):,} → {len(decoded):,} bytes")
    return decoded

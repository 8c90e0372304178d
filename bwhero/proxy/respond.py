"""
Response Assembler — the three ways a proxy request can end.

- send_image: the transcoded image, with savings headers
- bypass:     the origin bytes, untouched, marked X-Proxy-Bypass
- redirect:   302 to the original URL when anything went wrong

One Exchange per request records whether a response has already been
committed. Once it has, later attempts to respond are logged and
ignored; nothing in this module raises at the client.
"""

from __future__ import annotations

import html
import logging
import re
from typing import Iterator, List, Optional, Tuple
from urllib.parse import quote, unquote, urlsplit

from flask import Response

from ..models.image import TranscodeResult
from ..observability.metrics import metrics
from ..pipeline.limiter import CancelToken
from ..validation import ALLOWED_SCHEMES
from .headers import propagated_headers

logger = logging.getLogger(__name__)

DEFAULT_FILENAME = "image"
CACHE_CONTROL = "public, max-age=31536000, immutable"

ALLOWED_BYPASS_TYPES = frozenset({
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/avif",
    "image/svg+xml",
    "application/pdf",
    "text/plain",
    "application/octet-stream",
})

# Headers we set ourselves; the origin's copies are dropped
_IMAGE_OVERRIDES = (
    "content-type", "content-disposition", "cache-control", "expires", "etag",
    "last-modified", "accept-ranges", "content-range", "x-content-type-options",
)
_BYPASS_OVERRIDES = ("content-type", "content-disposition", "cache-control", "x-content-type-options")

_UNSAFE_FILENAME_CHARS = re.compile(r'[\x00-\x1f\x7f/\\"<>:|?*]')


class Exchange:
    """One client request and the single response it may get."""

    def __init__(
        self,
        request_url: str,
        origin_url: str,
        origin_headers: Optional[dict] = None,
        token: Optional[CancelToken] = None,
    ):
        self.request_url = request_url
        self.origin_url = origin_url
        self.origin_headers = origin_headers or {}
        self.origin_type = ""
        self.original_size = 0
        self.token = token or CancelToken()
        self.response: Optional[Response] = None

    @property
    def committed(self) -> bool:
        return self.response is not None

    def commit(self, response: Response, action: str) -> Response:
        if self.committed:
            logger.error(
                f"Response already committed ({self.response.status_code}); "
                f"suppressing {action} for {self.origin_url}"
            )
            return self.response
        self.response = response
        return response


# ── Filenames ────────────────────────────────────────────────


def extract_filename(url: str, default: str = DEFAULT_FILENAME) -> str:
    """
    Safe filename from the last path segment of a URL.

    Percent-decoded; control characters, separators and quotes removed.
    Anything that fails to decode gives `default`.
    """
    if not url:
        return default
    try:
        path = urlsplit(url).path
        segment = next((part for part in reversed(path.split("/")) if part), "")
        name = unquote(segment, errors="strict")
    except (ValueError, UnicodeDecodeError):
        return default

    name = _UNSAFE_FILENAME_CHARS.sub("", name).strip().strip(".")
    return name[:200] or default


def image_filename(url: str, fmt: str) -> str:
    """Filename for a transcoded image: same stem, new extension."""
    name = extract_filename(url)
    stem = name.rsplit(".", 1)[0] if "." in name else name
    return f"{stem or DEFAULT_FILENAME}.{fmt}"


def content_disposition(disposition: str, filename: str) -> str:
    """Content-Disposition value, with an RFC 5987 form for non-ASCII names."""
    try:
        filename.encode("ascii")
    except UnicodeEncodeError:
        fallback = filename.encode("ascii", "ignore").decode("ascii").strip() or DEFAULT_FILENAME
        return f"{disposition}; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"
    return f'{disposition}; filename="{filename}"'


def _base_type(mime_type: str) -> str:
    return (mime_type or "").split(";", 1)[0].strip().lower()


# ── Responses ────────────────────────────────────────────────


def _stream(result: TranscodeResult, exchange: Exchange) -> Iterator[bytes]:
    """Chunked body for large outputs. Headers are gone by now, so never raise."""
    sent = 0
    try:
        for chunk in result.iter_chunks():
            sent += len(chunk)
            yield chunk
    except GeneratorExit:
        exchange.token.cancel("client disconnected")
        logger.info(f"Client went away after {sent:,}/{result.size:,} bytes of {exchange.origin_url}")
    except Exception as e:
        logger.error(f"Streaming {exchange.origin_url} failed after {sent:,} bytes: {e}")
    finally:
        result.close()


def send_image(exchange: Exchange, result: TranscodeResult) -> Response:
    """Respond with the transcoded image."""
    if exchange.committed:
        result.close()
        return exchange.commit(exchange.response, "send_image")

    original = max(exchange.original_size, 0)
    saved = max(original - result.size, 0)

    headers: List[Tuple[str, str]] = propagated_headers(exchange.origin_headers, _IMAGE_OVERRIDES)
    headers += [
        ("Content-Disposition", content_disposition("inline", image_filename(exchange.origin_url, result.format))),
        ("X-Content-Type-Options", "nosniff"),
        ("Cache-Control", CACHE_CONTROL),
        ("Content-Encoding", "identity"),
        ("x-original-size", str(original)),
        ("x-bytes-saved", str(saved)),
    ]

    if result.streamed:
        response = Response(
            _stream(result, exchange),
            mimetype=result.mime_type,
            headers=headers,
            direct_passthrough=True,
        )
    else:
        response = Response(result.read_all(), mimetype=result.mime_type, headers=headers)
        response.headers["Content-Length"] = str(result.size)

    metrics.increment("bytes_original_total", original)
    metrics.increment("bytes_saved_total", saved)
    logger.info(
        f"Transcoded {exchange.origin_url}: {original:,} → {result.size:,} bytes "
        f"as {result.format} (saved {saved:,})",
        extra={"origin_url": exchange.origin_url, "format": result.format},
    )
    return exchange.commit(response, "send_image")


def bypass(exchange: Exchange, data: bytes, reason: str = "ineligible") -> Response:
    """Forward the origin bytes unmodified."""
    if exchange.committed:
        return exchange.commit(exchange.response, "bypass")

    content_type = _base_type(exchange.origin_type)
    safe_type = content_type if content_type in ALLOWED_BYPASS_TYPES else "application/octet-stream"
    disposition = "inline" if safe_type.startswith("image/") else "attachment"
    filename = extract_filename(exchange.origin_url, default="download")

    headers = propagated_headers(exchange.origin_headers, _BYPASS_OVERRIDES)
    headers += [
        ("Content-Disposition", content_disposition(disposition, filename)),
        ("X-Content-Type-Options", "nosniff"),
        ("X-Frame-Options", "DENY"),
        ("Cache-Control", CACHE_CONTROL),
        ("Content-Encoding", "identity"),
        ("X-Proxy-Bypass", "1"),
    ]
    response = Response(data, mimetype=safe_type, headers=headers)
    # mimetype= would append a charset to text/plain; keep the original value
    response.headers["Content-Type"] = safe_type
    response.headers["Content-Length"] = str(len(data))

    metrics.increment("bypass_total", labels={"reason": reason})
    logger.info(f"[Bypass] {filename} ({len(data):,} bytes, {reason})", extra={"reason": reason})
    return exchange.commit(response, "bypass")


def normalize_redirect_target(url: str) -> str:
    return (url or "").strip().rstrip("/")


def redirect(exchange: Exchange, status_code: int = 302, kind: str = "error") -> Response:
    """
    Send the client straight to the original URL.

    Refuses non-http(s) targets and redirect loops back to ourselves.
    """
    if exchange.committed:
        return exchange.commit(exchange.response, "redirect")

    target = normalize_redirect_target(exchange.origin_url)
    if not target:
        logger.error("No target URL provided for redirection")
        return exchange.commit(Response("Bad Request: Missing target URL.", status=400), "redirect")

    try:
        scheme = urlsplit(target).scheme.lower()
    except ValueError:
        scheme = ""
    if scheme not in ALLOWED_SCHEMES:
        logger.error(f"Refusing redirect to invalid URL: {target}")
        return exchange.commit(Response("Invalid URL.", status=400), "redirect")

    if target == normalize_redirect_target(exchange.request_url):
        logger.error(f"Redirect loop detected for {target}")
        return exchange.commit(Response("Redirect loop detected.", status=400), "redirect")

    location = quote(target, safe=":/?#[]@!$&'()*+,;=%~")
    if status_code == 302:
        body = (
            "<html>"
            f'<head><meta http-equiv="refresh" content="0;url={html.escape(location, quote=True)}"></head>'
            "<body>Redirecting...</body>"
            "</html>"
        )
        response = Response(body, status=302, mimetype="text/html")
    else:
        response = Response(status=status_code)
    response.headers["Location"] = location

    metrics.increment("redirect_total", labels={"kind": kind})
    logger.info(f"Redirecting client to {target} ({status_code}, {kind})", extra={"origin_url": target})
    return exchange.commit(response, "redirect")

"""
Origin Fetch — GET the resource on the client's behalf.

The client's identity goes along (cookie, dnt, referer, X-Forwarded-For);
this is a bandwidth saver, not an anonymizer.

The body is read raw — still content-encoded — in chunks, so that:
- the Content Decoder sees exactly what the origin sent
- bodies over MAX_BUFFER_SIZE are abandoned early
- a client disconnect stops the download
"""

from __future__ import annotations

import logging
import time
from typing import Dict, List, Mapping, Optional

import httpx

from ..config.loader import ProxyConfig
from ..models.image import FetchResult, HeaderValue
from ..observability.metrics import metrics
from ..pipeline.limiter import CancelToken
from ..validation import TransportError

logger = logging.getLogger(__name__)

USER_AGENT = "Bandwidth-Hero Compressor"
VIA = "1.1 bandwidth-hero"
MAX_REDIRECTS = 5
FORWARDED_HEADERS = ("cookie", "dnt", "referer")


def build_origin_headers(client_headers: Mapping[str, str], client_ip: str) -> Dict[str, str]:
    """Headers sent to the origin, carrying the client's identity."""
    headers = {}
    lowered = {k.lower(): v for k, v in client_headers.items()}
    for name in FORWARDED_HEADERS:
        if lowered.get(name):
            headers[name] = lowered[name]
    headers["user-agent"] = USER_AGENT
    headers["x-forwarded-for"] = lowered.get("x-forwarded-for") or client_ip or "127.0.0.1"
    headers["via"] = VIA
    # We decode bodies ourselves; ask for what the decoder understands
    headers["accept-encoding"] = "gzip, deflate, br, zstd"
    return headers


def _header_map(headers: httpx.Headers) -> Dict[str, HeaderValue]:
    result: Dict[str, HeaderValue] = {}
    for key, value in headers.multi_items():
        key = key.lower()
        existing = result.get(key)
        if existing is None:
            result[key] = value
        elif isinstance(existing, list):
            existing.append(value)
        else:
            result[key] = [existing, value]
    return result


class OriginFetcher:
    """
    Fetches one origin resource per call.

    A fresh httpx client per call — no pooling across requests.
    """

    def __init__(self, config: ProxyConfig, transport: Optional[httpx.BaseTransport] = None):
        self.config = config
        self.transport = transport

    def fetch(
        self,
        url: str,
        client_headers: Mapping[str, str],
        client_ip: str = "",
        token: Optional[CancelToken] = None,
    ) -> FetchResult:
        """
        GET `url` and return status, headers and the raw body.

        Any status is returned as-is; the caller decides what to do with
        4xx/5xx.

        Raises:
            TransportError: Origin unreachable, timed out, body too large,
                            or the client went away mid-download
        """
        headers = build_origin_headers(client_headers, client_ip)
        started = time.monotonic()

        try:
            with httpx.Client(
                timeout=self.config.fetch_timeout,
                follow_redirects=True,
                max_redirects=MAX_REDIRECTS,
                transport=self.transport,
            ) as client:
                with client.stream("GET", url, headers=headers) as response:
                    body = self._read_body(response, url, token)
                    result = FetchResult(
                        status_code=response.status_code,
                        headers=_header_map(response.headers),
                        body=body,
                        content_encoding=response.headers.get("content-encoding", ""),
                    )
        except httpx.TimeoutException as e:
            raise TransportError(f"origin timed out: {e}")
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise TransportError(f"origin request failed: {e}")
        finally:
            metrics.timing("fetch_duration_seconds", time.monotonic() - started)

        logger.debug(
            f"Fetched {url} → {result.status_code} "
            f"({len(result.body):,} bytes, encoding={result.content_encoding or 'identity'})"
        )
        return result

    def _read_body(self, response: httpx.Response, url: str, token: Optional[CancelToken]) -> bytes:
        limit = self.config.max_buffer_size

        declared = response.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > limit:
            raise TransportError(f"origin body too large ({int(declared):,} > {limit:,} bytes)")

        chunks: List[bytes] = []
        received = 0
        for chunk in response.iter_raw():
            if token is not None and token.cancelled:
                raise TransportError(f"client went away while fetching {url}")
            received += len(chunk)
            if received > limit:
                raise TransportError(f"origin body exceeds {limit:,} bytes")
            chunks.append(chunk)
        return b"".join(chunks)

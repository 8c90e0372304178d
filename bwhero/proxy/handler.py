"""
Proxy Handler — one request through the whole pipeline.

    authenticate → resolve params → fetch → decode → inspect → eligible?
        ├─ yes → transcode → send_image   (failure → redirect)
        └─ no  → bypass

Failures after the URL is known send the client to the original image;
the client never sees a 5xx from us.
"""

from __future__ import annotations

import logging
from typing import Optional

from flask import Request, Response

from ..config.loader import ProxyConfig
from ..models.image import FetchResult
from ..observability.metrics import metrics
from ..pipeline.decoder import decode_content
from ..pipeline.eligibility import should_transcode
from ..pipeline.inspector import Inspector
from ..pipeline.transcoder import Transcoder
from ..validation import ContentTooLarge, TransportError, ValidationError
from . import auth
from .fetch import OriginFetcher
from .params import ProxyParams, resolve_params
from .respond import Exchange, bypass, redirect, send_image

logger = logging.getLogger(__name__)

# Statuses bot-protection layers answer with; the body is still worth passing on
ANTI_BOT_STATUSES = frozenset({403, 429, 503})


class ProxyHandler:
    """Composes fetch, decision and transcoding for the proxy route."""

    def __init__(self, config: ProxyConfig, fetcher: OriginFetcher, transcoder: Transcoder):
        self.config = config
        self.fetcher = fetcher
        self.transcoder = transcoder

    def handle(self, request: Request) -> Response:
        """Serve GET /?url=… for a Flask request."""
        credentials = request.authorization
        if not auth.is_authorized(
            credentials.username if credentials else None,
            credentials.password if credentials else None,
            self.config,
        ):
            metrics.increment("requests_total", labels={"outcome": "unauthorized"})
            logger.warning(f"Rejected unauthenticated request from {request.remote_addr}")
            return auth.unauthorized()

        try:
            params = resolve_params(request.args, self.config)
        except ValidationError as e:
            metrics.increment("requests_total", labels={"outcome": "invalid"})
            logger.info(f"Rejected request: {e.message}")
            return Response(f"Invalid URL: {e.message}", status=400, mimetype="text/plain")

        exchange = Exchange(request_url=request.url, origin_url=params.url)
        response = self.process(exchange, params, request.headers, request.remote_addr or "")
        # Anything still working for this request stops once the response is closed
        response.call_on_close(lambda: exchange.token.cancel("response closed"))
        metrics.increment("requests_total", labels={"outcome": _outcome_label(response)})
        return response

    def process(
        self,
        exchange: Exchange,
        params: ProxyParams,
        client_headers,
        client_ip: str = "",
    ) -> Response:
        """Everything after the URL has been validated."""
        try:
            origin = self.fetcher.fetch(params.url, client_headers, client_ip, token=exchange.token)
        except TransportError as e:
            logger.warning(f"Fetch failed for {params.url}: {e}", extra={"origin_url": params.url})
            return redirect(exchange, kind="transport")

        exchange.origin_headers = origin.headers
        exchange.origin_type = origin.content_type

        try:
            body = decode_content(origin.body, origin.content_encoding, max_size=self.config.max_buffer_size)
        except ContentTooLarge as e:
            logger.warning(f"Refusing {params.url}: {e}", extra={"origin_url": params.url})
            return redirect(exchange, kind="oversize")

        early = self._handle_status(exchange, origin, body)
        if early is not None:
            return early

        exchange.original_size = len(body)

        inspection = Inspector().inspect(body, origin.content_type)
        ctx = params.to_context(origin.content_type, len(body), inspection)

        decision = should_transcode(ctx, body, self.config)
        if not decision:
            return self._bypass(exchange, body, decision.reason)

        outcome = self.transcoder.transcode(body, ctx, token=exchange.token)
        if not outcome.is_ok:
            return redirect(exchange, kind=outcome.error.kind)

        return send_image(exchange, outcome.value)

    def _handle_status(self, exchange: Exchange, origin: FetchResult, body: bytes) -> Optional[Response]:
        status = origin.status_code
        if status in ANTI_BOT_STATUSES:
            logger.warning(
                f"Origin answered {status} for {exchange.origin_url}; passing the body through",
                extra={"origin_url": exchange.origin_url},
            )
            return self._bypass(exchange, body, f"origin-{status}")
        if status >= 500:
            logger.warning(f"Origin error {status} for {exchange.origin_url}")
            return redirect(exchange, kind="origin")
        return None

    def _bypass(self, exchange: Exchange, body: bytes, reason: str) -> Response:
        if not body:
            logger.info(f"Nothing to forward for {exchange.origin_url}")
            return redirect(exchange, kind="empty")
        if len(body) > self.config.max_buffer_size:
            logger.warning(f"Body of {len(body):,} bytes exceeds the bypass buffer limit")
            return redirect(exchange, kind="oversize")
        return bypass(exchange, body, reason)


def _outcome_label(response: Response) -> str:
    if response.headers.get("X-Proxy-Bypass"):
        return "bypass"
    if response.headers.get("x-bytes-saved") is not None:
        return "transcoded"
    if 300 <= response.status_code < 400:
        return "redirect"
    return "error"

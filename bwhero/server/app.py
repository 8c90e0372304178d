"""
Proxy Server — Flask application factory.

One process-wide config, fetcher, limiter and transcoder are built here
and shared read-only by every request thread.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Optional

from flask import Flask, g, request

from ..config.loader import ProxyConfig, load_config
from ..pipeline.limiter import TranscodeLimiter
from ..pipeline.transcoder import Transcoder
from ..proxy.fetch import OriginFetcher
from ..proxy.handler import ProxyHandler
from ..proxy.respond import Exchange, redirect
from ..validation import ProxyError, validate_origin_url
from .routes import proxy_bp

logger = logging.getLogger(__name__)

# Paths whose access lines are demoted to DEBUG
_QUIET_PATHS = ("/healthz", "/favicon.ico", "/metrics")


def create_app(
    config: Optional[ProxyConfig] = None,
    fetcher: Optional[OriginFetcher] = None,
    limiter: Optional[TranscodeLimiter] = None,
) -> Flask:
    """Create the Flask application."""
    config = config or load_config()
    limiter = limiter or TranscodeLimiter(config.concurrency)
    fetcher = fetcher or OriginFetcher(config)

    app = Flask(__name__)
    app.config["PROXY_CONFIG"] = config
    app.config["PROXY_LIMITER"] = limiter
    app.config["PROXY_HANDLER"] = ProxyHandler(config, fetcher, Transcoder(config, limiter))

    # ── Register Blueprints ───────────────────────────────────────
    app.register_blueprint(proxy_bp)                                     # /, /healthz, /metrics

    # ── Error Handlers ────────────────────────────────────────────

    @app.errorhandler(500)
    def internal_server_error(e):
        """Unhandled error: send the client to the original image when we know it."""
        logger.error(f"Unhandled 500 on {request.method} {request.path}: {e}", exc_info=True)
        try:
            target = validate_origin_url(request.args.getlist("url") or "")
        except ProxyError:
            return "Internal server error", 500
        return redirect(Exchange(request_url=request.url, origin_url=target), kind="error")

    # ── Request Logging ───────────────────────────────────────────

    @app.before_request
    def log_request_start():
        g.start_time = time.monotonic()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def log_request_end(response):
        """Access line with duration. Proxied URL goes in the extra fields."""
        duration_ms = 0
        if "start_time" in g:
            duration_ms = int((time.monotonic() - g.start_time) * 1000)

        log_fn = logger.debug if request.path in _QUIET_PATHS else logger.info
        log_fn(
            f"{request.method} {request.path} → {response.status_code} ({duration_ms}ms)",
            extra={"request_id": g.get("request_id"), "origin_url": request.args.get("url", "")},
        )
        return response

    logger.info(f"Proxy server initialized (concurrency={config.concurrency}, modern={config.modern_format})")

    return app


def run_server(
    host: str = "0.0.0.0",
    port: int = 8080,
    debug: bool = False,
    config: Optional[ProxyConfig] = None,
) -> None:
    """
    Run the proxy with the Werkzeug threaded server.

    Args:
        host: Bind address
        port: Port to listen on
        debug: Enable Flask debug mode
        config: Loaded configuration (read from the environment if omitted)
    """
    app = create_app(config)

    print(f"  bwhero proxy listening on http://{host}:{port}")

    try:
        # Reloader forks the process and would build a second worker pool
        app.run(host=host, port=port, debug=debug, threaded=True, use_reloader=False)
    finally:
        app.config["PROXY_LIMITER"].shutdown()

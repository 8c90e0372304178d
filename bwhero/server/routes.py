"""
Proxy Routes — the HTTP surface.

Blueprint: proxy_bp
Routes:
    /              (proxy: ?url=&l=&jpeg=&bw=)
    /healthz
    /favicon.ico
    /metrics
"""

from __future__ import annotations

from flask import Blueprint, Response, current_app, jsonify, request

from ..observability.metrics import metrics

proxy_bp = Blueprint("proxy", __name__)


@proxy_bp.route("/", methods=["GET"])
def proxy():
    """Fetch, maybe transcode, and return the image named by ?url=."""
    return current_app.config["PROXY_HANDLER"].handle(request)


@proxy_bp.route("/healthz")
def healthz():
    return Response("OK", mimetype="text/plain")


@proxy_bp.route("/favicon.ico")
def favicon():
    return Response(status=204)


@proxy_bp.route("/metrics")
def metrics_endpoint():
    """Prometheus text exposition, or totals as JSON with ?format=json."""
    if request.args.get("format") == "json":
        return jsonify(metrics.export_json())
    return Response(metrics.export_prometheus(), mimetype="text/plain; version=0.0.4")

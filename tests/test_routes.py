"""
Tests for the proxy HTTP surface.

Uses the Flask test client against a fake origin (httpx.MockTransport).
"""

from __future__ import annotations

import base64
import gzip
import io

import httpx
import pytest
from PIL import Image

pytest.importorskip("flask")

from bwhero.config.loader import ProxyConfig
from tests.conftest import make_image

ORIGIN = "http://origin.test/photos/cat%20pic.jpg"


def _get(client, url=ORIGIN, **params):
    return client.get("/", query_string={"url": url, **params})


# ── Validation ───────────────────────────────────────────────────────


class TestValidation:

    def test_missing_url_400(self, client, origin):
        resp = client.get("/")
        assert resp.status_code == 400
        assert origin.requests == []

    def test_not_a_url_400_without_fetch(self, client, origin):
        resp = _get(client, url="not-a-url")
        assert resp.status_code == 400
        assert origin.requests == []

    @pytest.mark.parametrize("url", ["ftp://origin.test/a.png", "javascript:alert(1)", "http://"])
    def test_bad_schemes_and_hosts_400(self, client, origin, url):
        assert _get(client, url=url).status_code == 400
        assert origin.requests == []


# ── Transcode ────────────────────────────────────────────────────────


class TestTranscode:

    def test_large_jpeg_transcoded(self, client, origin):
        body = make_image(1600, 1200, "JPEG", noise=True, quality=75)
        origin.add(ORIGIN, body, headers={"content-type": "image/jpeg", "x-origin": "yes"})

        resp = _get(client)

        assert resp.status_code == 200
        assert resp.headers["Content-Type"] == "image/webp"
        assert int(resp.headers["x-original-size"]) == len(body)
        assert int(resp.headers["x-bytes-saved"]) > 0
        assert int(resp.headers["Content-Length"]) == len(resp.data)
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["Content-Disposition"] == 'inline; filename="cat pic.webp"'
        assert resp.headers["x-origin"] == "yes"
        assert "X-Proxy-Bypass" not in resp.headers
        with Image.open(io.BytesIO(resp.data)) as img:
            assert img.format == "WEBP"

    def test_jpeg_flag(self, client, origin):
        origin.add(ORIGIN, make_image(300, 300, "PNG", noise=True), headers={"content-type": "image/png"})
        resp = _get(client, jpeg="1")
        assert resp.headers["Content-Type"] == "image/jpeg"

    def test_gzip_encoded_origin_is_decoded(self, client, origin):
        body = make_image(300, 300, "PNG", noise=True)
        origin.add(ORIGIN, gzip.compress(body), headers={
            "content-type": "image/png",
            "content-encoding": "gzip",
        })
        resp = _get(client)
        assert resp.status_code == 200
        assert resp.headers["Content-Encoding"] == "identity"
        assert int(resp.headers["x-original-size"]) == len(body)

    def test_forwards_client_identity(self, client, origin):
        origin.add(ORIGIN, b"tiny", headers={"content-type": "image/png"})
        client.set_cookie("a", "b")
        client.get(
            "/",
            query_string={"url": ORIGIN},
            headers={"Referer": "http://page.test/", "X-Forwarded-For": "10.0.0.9"},
        )
        sent = origin.requests[0].headers
        assert sent["cookie"] == "a=b"
        assert sent["referer"] == "http://page.test/"
        assert sent["x-forwarded-for"] == "10.0.0.9"
        assert sent["user-agent"] == "Bandwidth-Hero Compressor"
        assert sent["via"] == "1.1 bandwidth-hero"

    def test_bmi_prefix_stripped(self, client, origin):
        origin.add(ORIGIN, b"tiny", headers={"content-type": "image/png"})
        _get(client, url="http://1.1.1.1/bmi/origin.test/photos/cat%20pic.jpg")
        assert str(origin.requests[0].url) == ORIGIN


# ── Bypass ───────────────────────────────────────────────────────────


class TestBypass:

    def test_small_png_bypassed_unchanged(self, client, origin):
        body = make_image(20, 20, "PNG")
        assert len(body) < 1024
        origin.add(ORIGIN, body, headers={"content-type": "image/png"})

        resp = _get(client)

        assert resp.status_code == 200
        assert resp.headers["X-Proxy-Bypass"] == "1"
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert resp.headers["Content-Type"] == "image/png"
        assert resp.headers["Content-Disposition"].startswith("inline")
        assert resp.data == body

    def test_non_image_bypassed_as_attachment(self, client, origin):
        origin.add(ORIGIN, b"<html>hi</html>", headers={"content-type": "text/html"})
        resp = _get(client)
        assert resp.headers["X-Proxy-Bypass"] == "1"
        assert resp.headers["Content-Type"] == "application/octet-stream"
        assert resp.headers["Content-Disposition"].startswith("attachment")
        assert resp.data == b"<html>hi</html>"

    @pytest.mark.parametrize("status", [403, 429, 503])
    def test_anti_bot_status_bypassed_with_body(self, client, origin, status):
        origin.add(ORIGIN, b"challenge page", status=status, headers={"content-type": "text/plain"})
        resp = _get(client)
        assert resp.status_code == 200
        assert resp.headers["X-Proxy-Bypass"] == "1"
        assert resp.data == b"challenge page"

    def test_anti_bot_status_without_body_redirects(self, client, origin):
        origin.add(ORIGIN, b"", status=503)
        resp = _get(client)
        assert resp.status_code == 302
        assert resp.headers["Location"] == ORIGIN

    def test_bypass_counted(self, client, origin, fresh_metrics):
        origin.add(ORIGIN, make_image(20, 20, "PNG"), headers={"content-type": "image/png"})
        _get(client)
        assert fresh_metrics.counter("bypass_total").get(labels={"reason": "too-small"}) == 1


# ── Redirect ─────────────────────────────────────────────────────────


class TestRedirect:

    def test_origin_500_redirects(self, client, origin):
        origin.add(ORIGIN, b"oops", status=500)
        resp = _get(client)
        assert resp.status_code == 302
        assert resp.headers["Location"] == ORIGIN
        assert b"http-equiv=\"refresh\"" in resp.data

    def test_unreachable_origin_redirects(self, client, origin):
        origin.error = httpx.ConnectError("refused")
        resp = _get(client)
        assert resp.status_code == 302
        assert resp.headers["Location"] == ORIGIN

    def test_oversized_body_redirects(self, origin):
        from bwhero.server.app import create_app
        from bwhero.proxy.fetch import OriginFetcher

        config = ProxyConfig(max_buffer_size=1000)
        small_app = create_app(config=config, fetcher=OriginFetcher(config, transport=origin.transport))
        origin.add(ORIGIN, b"x" * 5000, headers={"content-type": "image/jpeg"})

        resp = small_app.test_client().get("/", query_string={"url": ORIGIN})

        assert resp.status_code == 302
        small_app.config["PROXY_LIMITER"].shutdown()

    def test_gzip_expanding_past_buffer_redirects(self, origin, fresh_metrics):
        from bwhero.server.app import create_app
        from bwhero.proxy.fetch import OriginFetcher

        config = ProxyConfig(max_buffer_size=64 * 1024)
        small_app = create_app(config=config, fetcher=OriginFetcher(config, transport=origin.transport))
        bomb = gzip.compress(b"\x00" * (1024 * 1024))
        assert len(bomb) < config.max_buffer_size
        origin.add(ORIGIN, bomb, headers={"content-type": "image/png", "content-encoding": "gzip"})

        resp = small_app.test_client().get("/", query_string={"url": ORIGIN})

        assert resp.status_code == 302
        assert resp.headers["Location"] == ORIGIN
        assert fresh_metrics.counter("redirect_total").get(labels={"kind": "oversize"}) == 1
        small_app.config["PROXY_LIMITER"].shutdown()

    def test_undecodable_image_redirects(self, client, origin):
        origin.add(ORIGIN, b"\xff\xd8" + b"\x00" * 4000, headers={"content-type": "image/jpeg"})
        resp = _get(client)
        assert resp.status_code == 302
        assert resp.headers["Location"] == ORIGIN


# ── Auth ─────────────────────────────────────────────────────────────


class TestAuth:

    @pytest.fixture
    def config(self):
        return ProxyConfig(modern_format="webp", login="hero", password="s3cret", transcode_concurrency=1)

    def test_missing_credentials_401(self, client, origin):
        resp = _get(client)
        assert resp.status_code == 401
        assert resp.headers["WWW-Authenticate"].startswith("Basic")
        assert origin.requests == []

    def test_wrong_credentials_401(self, client):
        token = base64.b64encode(b"hero:nope").decode()
        resp = client.get("/", query_string={"url": ORIGIN}, headers={"Authorization": f"Basic {token}"})
        assert resp.status_code == 401

    def test_valid_credentials_pass(self, client, origin):
        origin.add(ORIGIN, make_image(20, 20, "PNG"), headers={"content-type": "image/png"})
        token = base64.b64encode(b"hero:s3cret").decode()
        resp = client.get("/", query_string={"url": ORIGIN}, headers={"Authorization": f"Basic {token}"})
        assert resp.status_code == 200

    def test_healthz_open(self, client):
        assert client.get("/healthz").status_code == 200


# ── Service endpoints ────────────────────────────────────────────────


class TestServiceEndpoints:

    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.data == b"OK"

    def test_favicon(self, client):
        assert client.get("/favicon.ico").status_code == 204

    def test_metrics_prometheus(self, client, origin):
        origin.add(ORIGIN, make_image(20, 20, "PNG"), headers={"content-type": "image/png"})
        _get(client)
        resp = client.get("/metrics")
        text = resp.get_data(as_text=True)
        assert resp.status_code == 200
        assert "# TYPE bwhero_requests_total counter" in text
        assert 'bwhero_requests_total{outcome="bypass"} 1.0' in text

    def test_metrics_json(self, client):
        data = client.get("/metrics?format=json").get_json()
        assert "bwhero_bytes_saved_total" in data["metrics"]

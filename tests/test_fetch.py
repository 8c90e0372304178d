"""
Tests for the origin fetcher.
"""

from __future__ import annotations

import httpx
import pytest

from bwhero.config.loader import ProxyConfig
from bwhero.pipeline.limiter import CancelToken
from bwhero.proxy.fetch import OriginFetcher, build_origin_headers
from bwhero.validation import TransportError

URL = "http://origin.test/a.png"


class TestBuildOriginHeaders:

    def test_identity_forwarded(self):
        headers = build_origin_headers(
            {"Cookie": "a=b", "DNT": "1", "Referer": "http://page.test/", "Authorization": "Basic x"},
            client_ip="10.1.2.3",
        )
        assert headers["cookie"] == "a=b"
        assert headers["dnt"] == "1"
        assert headers["referer"] == "http://page.test/"
        assert headers["x-forwarded-for"] == "10.1.2.3"
        assert "authorization" not in headers

    def test_existing_forwarded_for_kept(self):
        headers = build_origin_headers({"X-Forwarded-For": "1.2.3.4"}, client_ip="10.0.0.1")
        assert headers["x-forwarded-for"] == "1.2.3.4"

    def test_fixed_headers(self):
        headers = build_origin_headers({}, client_ip="")
        assert headers["user-agent"] == "Bandwidth-Hero Compressor"
        assert headers["via"] == "1.1 bandwidth-hero"
        assert "br" in headers["accept-encoding"]


class TestOriginFetcher:

    def _fetcher(self, handler, **config) -> OriginFetcher:
        return OriginFetcher(ProxyConfig(**config), transport=httpx.MockTransport(handler))

    def test_raw_body_and_headers(self):
        def handler(request):
            return httpx.Response(
                200,
                headers=[("content-type", "image/png"), ("set-cookie", "a=1"), ("set-cookie", "b=2"),
                         ("content-encoding", "gzip")],
                stream=httpx.ByteStream(b"still-gzipped"),
            )

        result = self._fetcher(handler).fetch(URL, {})

        assert result.status_code == 200
        assert result.body == b"still-gzipped"
        assert result.content_encoding == "gzip"
        assert result.content_type == "image/png"
        assert result.headers["set-cookie"] == ["a=1", "b=2"]

    def test_error_status_returned(self):
        result = self._fetcher(lambda r: httpx.Response(503, stream=httpx.ByteStream(b"busy"))).fetch(URL, {})
        assert result.status_code == 503
        assert result.body == b"busy"

    def test_follows_redirects(self):
        def handler(request):
            if request.url.path == "/a.png":
                return httpx.Response(302, headers={"location": "http://origin.test/b.png"})
            return httpx.Response(200, stream=httpx.ByteStream(b"final"))

        assert self._fetcher(handler).fetch(URL, {}).body == b"final"

    def test_too_many_redirects(self):
        def handler(request):
            return httpx.Response(302, headers={"location": f"{request.url}x"})

        with pytest.raises(TransportError):
            self._fetcher(handler).fetch(URL, {})

    def test_declared_length_over_limit(self):
        handler = lambda r: httpx.Response(200, headers={"content-length": "2000"}, stream=httpx.ByteStream(b"x" * 2000))
        with pytest.raises(TransportError, match="too large"):
            self._fetcher(handler, max_buffer_size=1000).fetch(URL, {})

    def test_streamed_body_over_limit(self):
        def handler(request):
            return httpx.Response(200, stream=httpx.ByteStream(b"x" * 2000))

        with pytest.raises(TransportError):
            self._fetcher(handler, max_buffer_size=1000).fetch(URL, {})

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransportError):
            self._fetcher(handler).fetch(URL, {})

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(TransportError, match="timed out"):
            self._fetcher(handler).fetch(URL, {})

    def test_cancelled_during_read(self):
        token = CancelToken()
        token.cancel("client disconnected")
        handler = lambda r: httpx.Response(200, stream=httpx.ByteStream(b"data"))
        with pytest.raises(TransportError, match="went away"):
            self._fetcher(handler).fetch(URL, {}, token=token)

    def test_body_assembled_from_chunks(self):
        class Chunked(httpx.SyncByteStream):
            def __iter__(self):
                yield b"\x89PNG"
                yield b"-part-two"

        result = self._fetcher(lambda r: httpx.Response(200, stream=Chunked())).fetch(URL, {})
        assert result.body == b"\x89PNG-part-two"

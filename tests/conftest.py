"""
Shared fixtures for proxy tests.

Provides a Flask test app whose origin fetcher talks to an in-memory fake
origin (httpx.MockTransport), plus Pillow helpers for building test images.
"""

from __future__ import annotations

import io
import os
from typing import Dict, List, Optional, Tuple

import httpx
import pytest

pytest.importorskip("flask")

from bwhero.config.loader import ProxyConfig
from bwhero.pipeline.limiter import TranscodeLimiter
from bwhero.proxy.fetch import OriginFetcher


# ── Fake Origin ──────────────────────────────────────────────


class FakeOrigin:
    """Routes registered by URL; records every request it receives."""

    def __init__(self):
        self.routes: Dict[str, Tuple[int, Dict[str, str], bytes]] = {}
        self.requests: List[httpx.Request] = []
        self.error: Optional[Exception] = None

    def add(self, url: str, body: bytes = b"", status: int = 200, headers: Optional[Dict[str, str]] = None):
        self.routes[url] = (status, headers or {}, body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        status, headers, body = self.routes.get(str(request.url), (404, {}, b"not found"))
        return httpx.Response(status, headers=headers, stream=httpx.ByteStream(body))

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


# ── Images ───────────────────────────────────────────────────


def make_image(
    width: int,
    height: int,
    fmt: str = "PNG",
    mode: str = "RGB",
    color=(0, 128, 255),
    noise: bool = False,
    **save_kwargs,
) -> bytes:
    """Encode a solid (or random-noise) image with Pillow."""
    from PIL import Image

    if noise:
        img = Image.frombytes("RGB", (width, height), os.urandom(width * height * 3))
        if mode != "RGB":
            img = img.convert(mode)
    else:
        img = Image.new(mode, (width, height), color)
    buf = io.BytesIO()
    img.save(buf, format=fmt, **save_kwargs)
    return buf.getvalue()


def make_animated_gif(width: int = 32, height: int = 32, frames: int = 3) -> bytes:
    from PIL import Image

    images = [Image.new("RGB", (width, height), (i * 60 % 256, 0, 0)) for i in range(frames)]
    buf = io.BytesIO()
    images[0].save(buf, format="GIF", save_all=True, append_images=images[1:], duration=80, loop=0)
    return buf.getvalue()


def make_apng(width: int = 32, height: int = 32, frames: int = 3) -> bytes:
    from PIL import Image

    images = [Image.new("RGBA", (width, height), (0, i * 60 % 256, 0, 255)) for i in range(frames)]
    buf = io.BytesIO()
    images[0].save(buf, format="PNG", save_all=True, append_images=images[1:], duration=80, loop=0)
    return buf.getvalue()


# ── Fixtures ─────────────────────────────────────────────────


@pytest.fixture
def config() -> ProxyConfig:
    """Test config: WebP as the modern format keeps encodes fast."""
    return ProxyConfig(modern_format="webp", transcode_timeout=60.0, transcode_concurrency=2)


@pytest.fixture
def origin() -> FakeOrigin:
    return FakeOrigin()


@pytest.fixture
def limiter(config):
    limiter = TranscodeLimiter(config.concurrency)
    yield limiter
    limiter.shutdown()


@pytest.fixture
def app(config, origin, limiter):
    """Create a Flask test app fetching from the fake origin."""
    from bwhero.server.app import create_app

    app = create_app(
        config=config,
        fetcher=OriginFetcher(config, transport=origin.transport),
        limiter=limiter,
    )
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture(autouse=True)
def fresh_metrics():
    """Every test starts from zeroed metrics."""
    from bwhero.observability.metrics import metrics

    metrics.reset()
    yield metrics
    metrics.reset()

"""
Tests for origin header propagation.
"""

from bwhero.proxy.headers import propagated_headers


class TestPropagatedHeaders:

    def test_identity_and_hop_by_hop_dropped(self):
        pairs = propagated_headers({
            "Set-Cookie": ["a=1", "b=2"],
            "Connection": "keep-alive",
            "Content-Length": "123",
            "Content-Encoding": "gzip",
            "Transfer-Encoding": "chunked",
            "ETag": '"abc"',
        })
        assert pairs == [("ETag", '"abc"')]

    def test_multi_value_expanded_in_order(self):
        pairs = propagated_headers({"vary": ["Accept", "Accept-Encoding"]})
        assert pairs == [("vary", "Accept"), ("vary", "Accept-Encoding")]

    def test_extra_excluded_case_insensitive(self):
        pairs = propagated_headers(
            {"content-type": "image/png", "last-modified": "yesterday"},
            extra_excluded=("Content-Type",),
        )
        assert pairs == [("last-modified", "yesterday")]

    def test_none_values_skipped(self):
        assert propagated_headers({"x-empty": None, "x-list": ["1", None]}) == [("x-list", "1")]

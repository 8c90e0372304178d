"""
Header Propagation — copy origin response headers to the client.

Hop-by-hop headers, credentials and anything describing the body we are
about to replace are never copied.
"""

from __future__ import annotations

from typing import Iterable, List, Mapping, Tuple

from ..models.image import HeaderValue

EXCLUDED_HEADERS = frozenset({
    "host",
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "upgrade",
    "authorization",
    "cookie",
    "set-cookie",
    "content-length",
    "content-encoding",
    "transfer-encoding",
})


def propagated_headers(
    source: Mapping[str, HeaderValue],
    extra_excluded: Iterable[str] = (),
) -> List[Tuple[str, str]]:
    """
    Header pairs to forward, multi-valued headers expanded in order.

    Args:
        source: Origin header map (name → value or list of values).
        extra_excluded: More header names to drop (case-insensitive).
    """
    excluded = EXCLUDED_HEADERS | {name.lower() for name in extra_excluded}
    pairs: List[Tuple[str, str]] = []
    for name, value in source.items():
        if name.lower() in excluded:
            continue
        values = value if isinstance(value, list) else [value]
        for item in values:
            if item is None:
                continue
            pairs.append((name, str(item)))
    return pairs

"""
bwhero — Bandwidth-saving image compression proxy.

Fetches images on a client's behalf and re-encodes them (AVIF, WebP or
JPEG, grayscale by default) before forwarding.
"""

__version__ = "0.4.0"

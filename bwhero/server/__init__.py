"""
Proxy Server — Flask HTTP surface for the compression proxy.

Usage:
    python -m bwhero.server
    python -m bwhero.server --port 8080
"""

from .app import create_app, run_server

__all__ = ["create_app", "run_server"]

"""
Run the proxy server directly.

Usage:
    python -m bwhero.server
    python -m bwhero.server --port 8080
"""

import argparse

from ..logging_config import setup_logging
from .app import run_server


def main():
    parser = argparse.ArgumentParser(description="bwhero compression proxy")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address")
    parser.add_argument("--port", type=int, default=8080, help="Port (default: 8080)")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    args = parser.parse_args()

    setup_logging(level="DEBUG" if args.debug else None)
    run_server(host=args.host, port=args.port, debug=args.debug)


if __name__ == "__main__":
    main()

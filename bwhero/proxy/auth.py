"""
Authentication — optional HTTP Basic auth in front of the proxy.

Enabled only when both LOGIN and PASSWORD are configured.
"""

from __future__ import annotations

import logging
import secrets
from typing import Optional

from flask import Response, jsonify

from ..config.loader import ProxyConfig

logger = logging.getLogger(__name__)

REALM = "Bandwidth-Hero Compression Service"


def is_authorized(username: Optional[str], password: Optional[str], config: ProxyConfig) -> bool:
    """True if auth is disabled or the credentials match."""
    if not config.auth_enabled:
        return True
    if username is None or password is None:
        return False
    user_ok = secrets.compare_digest(username.encode("utf-8"), config.login.encode("utf-8"))
    pass_ok = secrets.compare_digest(password.encode("utf-8"), config.password.encode("utf-8"))
    return user_ok and pass_ok


def unauthorized() -> Response:
    """401 with a Basic challenge."""
    response = jsonify({"error": "Access denied"})
    response.status_code = 401
    response.headers["WWW-Authenticate"] = f'Basic realm="{REALM}"'
    return response

"""
Custom route decorators for access control.

- admin_token_required: ensures the request carries
  ``Authorization: Bearer <ADMIN_API_TOKEN>``. Operator endpoints are
  disabled entirely (404) when no token is configured.
"""

import hmac
from functools import wraps

from flask import abort, current_app, request


def _bearer_token():
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def admin_token_required(f):
    """Require a valid operator bearer token."""

    @wraps(f)
    def decorated(*args, **kwargs):
        expected = current_app.config.get("ADMIN_API_TOKEN")
        if not expected:
            abort(404)

        token = _bearer_token()
        if token is None:
            abort(401)
        if not hmac.compare_digest(token, expected):
            abort(403)

        return f(*args, **kwargs)

    return decorated

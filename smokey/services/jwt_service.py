"""
Operator access tokens (HS256, PyJWT).

Tokens normally come from the identity provider that fronts the engine;
the engine only has to verify them. ``issue_token`` backs the
``flask smokey-issue-token`` command and the API tests.

Claims: ``sub`` operator id, ``roles`` list, ``typ`` fixed to "operator",
``iat``/``exp`` (JWT_ACCESS_EXPIRES seconds, 900 by default) and a ``jti``.
The signing key is JWT_SECRET_KEY, falling back to SECRET_KEY.
"""

import uuid
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

ALGORITHM = "HS256"
TOKEN_TYPE = "operator"


def _signing_key():
    cfg = current_app.config
    return cfg.get("JWT_SECRET_KEY") or cfg["SECRET_KEY"]


def issue_token(operator_id, roles, *, lifetime=None):
    """Signed token for ``operator_id`` holding ``roles``."""
    issued = datetime.now(timezone.utc)
    seconds = lifetime if lifetime is not None else current_app.config.get("JWT_ACCESS_EXPIRES", 900)
    claims = {
        "sub": str(operator_id),
        "roles": [str(r) for r in roles],
        "typ": TOKEN_TYPE,
        "iat": issued,
        "exp": issued + timedelta(seconds=seconds),
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(claims, _signing_key(), algorithm=ALGORITHM)


def read_token(token):
    """Verified claims of ``token``; raises ``jwt.InvalidTokenError`` (or a subclass)."""
    claims = jwt.decode(token, _signing_key(), algorithms=[ALGORITHM],
                        options={"require": ["sub", "exp"]})
    if claims.get("typ") != TOKEN_TYPE:
        raise jwt.InvalidTokenError(f"Unexpected token type {claims.get('typ')!r}")
    return claims

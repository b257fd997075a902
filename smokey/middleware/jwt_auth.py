"""
Bearer token parsing for /api/v1/*.

Sets ``g.jwt_operator_id`` and ``g.jwt_roles`` when the Authorization header
carries a valid operator token. A missing, expired or forged token leaves
both empty and smokey/auth.py falls back to the X-API-Key check, which is
where an unauthenticated request is finally rejected.
"""

import logging

import jwt
from flask import g, request

from smokey.services.jwt_service import read_token

logger = logging.getLogger(__name__)

_UNGUARDED = ("/api/v1/health",)


def _bearer_token():
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def init_jwt_middleware(app):
    @app.before_request
    def _read_bearer():
        g.jwt_operator_id = None
        g.jwt_roles = []
        if not request.path.startswith("/api/v1/") or request.path.startswith(_UNGUARDED):
            return
        token = _bearer_token()
        if token is None:
            return
        try:
            claims = read_token(token)
        except jwt.ExpiredSignatureError:
            logger.info("Expired operator token on %s", request.path)
            return
        except jwt.InvalidTokenError as exc:
            logger.warning("Rejected operator token on %s: %s", request.path, exc)
            return
        roles = claims.get("roles")
        g.jwt_operator_id = claims["sub"]
        g.jwt_roles = [str(r) for r in roles] if isinstance(roles, list) else []

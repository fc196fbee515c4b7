"""
Auth context middleware — resolves the calling user, sets g.current_user.

Authentication itself is owned by the surrounding platform; this layer only
maps an incoming credential to a ``users`` row:

  1. JWT (Authorization: Bearer <token>)  →  g.current_user
  2. X-User-Id header (only when AUTH_HEADER_FALLBACK is enabled,
     i.e. development and testing)
"""

import logging

import jwt as pyjwt
from flask import current_app, g, request

from budgetflow.core.exceptions import UnauthorizedError
from budgetflow.models import db
from budgetflow.models.directory import User
from budgetflow.services.jwt_service import decode_access_token

logger = logging.getLogger(__name__)

# Paths that never need a user
AUTH_SKIP_PREFIXES = (
    "/api/v1/health",
)


def _load_user(user_id):
    try:
        uid = int(user_id)
    except (TypeError, ValueError):
        return None
    user = db.session.get(User, uid)
    if user is None or not user.is_active:
        return None
    return user


def init_auth_context(app):
    """Register the auth context resolver as a before_request hook."""

    @app.before_request
    def _resolve_user():
        g.current_user = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in AUTH_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            try:
                payload = decode_access_token(auth_header[7:])
                g.current_user = _load_user(payload.get("sub"))
            except pyjwt.ExpiredSignatureError:
                logger.info("Expired access token on %s", path)
            except pyjwt.InvalidTokenError:
                logger.info("Invalid access token on %s", path)
            return

        if current_app.config.get("AUTH_HEADER_FALLBACK"):
            header_uid = request.headers.get("X-User-Id")
            if header_uid:
                g.current_user = _load_user(header_uid)


def current_user():
    """Return the resolved User or raise UnauthorizedError."""
    user = getattr(g, "current_user", None)
    if user is None:
        raise UnauthorizedError()
    return user

"""
Access tokens for budget workflow users.

Tokens are normally minted by the platform that owns login; this module
decodes them and can mint compatible ones for scripts and tests. HS256,
secret ``JWT_SECRET_KEY`` (falls back to ``SECRET_KEY``), lifetime
``JWT_ACCESS_EXPIRES`` seconds.

Claims: ``sub`` (user id as a string), ``role``, ``school_id``,
``department_id``, ``type="access"``, ``iat``, ``exp``, ``jti``.
"""

import uuid
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

ALGORITHM = "HS256"
TOKEN_TYPE = "access"


def _secret() -> str:
    cfg = current_app.config
    return cfg.get("JWT_SECRET_KEY") or cfg["SECRET_KEY"]


def _claims(user) -> dict:
    return {
        "sub": str(user.id),
        "role": user.role,
        "school_id": user.school_id,
        "department_id": user.department_id,
    }


def generate_access_token(user, expires_in: int | None = None) -> str:
    issued = datetime.now(timezone.utc)
    lifetime = expires_in if expires_in is not None else current_app.config.get("JWT_ACCESS_EXPIRES", 900)
    payload = _claims(user) | {
        "type": TOKEN_TYPE,
        "iat": issued,
        "exp": issued + timedelta(seconds=lifetime),
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(payload, _secret(), algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Verify signature and expiry; reject refresh or foreign token types.

    Raises ``jwt.InvalidTokenError`` (or its ``ExpiredSignatureError``
    subclass); the auth middleware turns both into an anonymous request.
    """
    payload = jwt.decode(token, _secret(), algorithms=[ALGORITHM],
                         options={"require": ["sub", "exp"]})
    if payload.get("type") != TOKEN_TYPE:
        raise jwt.InvalidTokenError(f"not an access token: {payload.get('type')!r}")
    return payload

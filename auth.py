"""User identity seam.

The session layer hands each request a signed token naming the user. Only
the user id is trusted; nothing else about the session reaches this service.
"""

import time
from typing import Optional

from fastapi import Header
from itsdangerous import BadSignature, URLSafeSerializer

from config import get_settings
from errors import AuthenticationError

TOKEN_SALT = "user-token"
TOKEN_TTL_HOURS = 12


def _serializer() -> URLSafeSerializer:
    return URLSafeSerializer(get_settings().secret_key, salt=TOKEN_SALT)


def issue_user_token(user_id: int, ttl_hours: int = TOKEN_TTL_HOURS) -> str:
    issued_at = int(time.time())
    return _serializer().dumps(
        {"u": user_id, "ts": issued_at, "exp": issued_at + ttl_hours * 3600}
    )


def resolve_user_token(token: str) -> int:
    try:
        claims = _serializer().loads(token)
    except BadSignature as exc:
        raise AuthenticationError("Invalid user token") from exc

    if not isinstance(claims, dict):
        raise AuthenticationError("Invalid user token")
    user_id = claims.get("u")
    if not isinstance(user_id, int) or isinstance(user_id, bool) or user_id <= 0:
        raise AuthenticationError("Invalid user token")
    if int(time.time()) > int(claims.get("exp") or 0):
        raise AuthenticationError("User token expired")
    return user_id


def current_user_id(x_user_token: Optional[str] = Header(default=None)) -> int:
    if not x_user_token:
        raise AuthenticationError("Missing user token")
    return resolve_user_token(x_user_token)

from typing import Optional

from fastapi import Request
from jose import JWTError, jwt

from promptpay_checkout.config import get_settings
from promptpay_checkout.errors import Unauthenticated


def _token_from(request: Request) -> Optional[str]:
    authorization = request.headers.get("authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return request.cookies.get("token") or request.cookies.get("access_token")


def current_user_id(request: Request) -> int:
    """Identity of the caller from a bearer header or the session cookie."""
    token = _token_from(request)
    if not token:
        raise Unauthenticated("Missing token")
    try:
        payload = jwt.decode(token, get_settings().jwt_secret, algorithms=["HS256"])
        return int(payload["userId"])
    except (JWTError, KeyError, TypeError, ValueError):
        raise Unauthenticated("Invalid or expired token")

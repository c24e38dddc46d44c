"""Bearer-token identity: HS256 JWT carrying ``user_id`` (or ``sub``) and ``exp``."""

from __future__ import annotations

import datetime
from typing import Any

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError
from starlette.requests import Request

from tutorchat.config.settings import settings
from tutorchat.core.errors import AuthError, ValidationError


def _require_secret_key() -> str:
    secret = (settings.jwt_secret or "").strip()
    if not secret:
        raise RuntimeError("missing jwt_secret")
    return secret


def issue_token(user_id: str, *, now: datetime.datetime | None = None, expires_in_seconds: int | None = None) -> str:
    issued = now or datetime.datetime.now(datetime.timezone.utc)
    ttl = int(expires_in_seconds if expires_in_seconds is not None else settings.access_token_ttl_seconds)
    payload: dict[str, Any] = {
        "user_id": str(user_id),
        "iat": issued,
        "exp": issued + datetime.timedelta(seconds=ttl),
    }
    return jwt.encode(payload, _require_secret_key(), algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> str:
    """Return the user id the token was issued for."""
    try:
        payload = jwt.decode(token, _require_secret_key(), algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError as exc:
        raise AuthError("The access token has expired.", details="expired") from exc
    except JWTError as exc:
        raise AuthError(details=f"invalid token: {exc}") from exc

    user_id = payload.get("user_id", payload.get("sub"))
    if user_id is None or not str(user_id).strip():
        raise AuthError(details="token carries no user id")
    return str(user_id).strip()


def bearer_token(request: Request) -> str:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError(details="missing bearer token")
    return token.strip()


def authenticate(request: Request) -> str:
    return verify_token(bearer_token(request))


def resolve_user_id(verified_user_id: str, claimed: str | int | None) -> str:
    """A body ``user_id`` is optional but must name the authenticated caller."""
    if claimed is None or str(claimed).strip() == "":
        return verified_user_id
    if str(claimed).strip() != verified_user_id:
        raise ValidationError("user_id does not match the authenticated user.", details=f"claimed={claimed}")
    return verified_user_id

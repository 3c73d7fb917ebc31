from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from attendance_integrity.errors import ApiError
from attendance_integrity.settings import Settings, get_settings
from attendance_integrity.timeutils import utcnow

bearer_scheme = HTTPBearer(auto_error=False)

JWT_ALGORITHM = "HS256"


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: str


def _settings_for(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    return settings if isinstance(settings, Settings) else get_settings()


def create_access_token(
    *,
    sub: str,
    role: str,
    settings: Settings | None = None,
    expires_delta: timedelta | None = None,
) -> tuple[str, int, dict[str, Any]]:
    settings = settings or get_settings()
    lifetime = expires_delta or timedelta(minutes=settings.access_token_minutes)
    now = utcnow()
    claims = {
        "sub": sub,
        "role": role,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int((now + lifetime).timestamp()),
        "jti": str(uuid4()),
        "typ": "access",
    }
    token = jwt.encode(claims, settings.jwt_secret, algorithm=JWT_ALGORITHM)
    return token, int(lifetime.total_seconds()), claims


def decode_token(token: str, *, settings: Settings | None = None) -> Actor:
    settings = settings or get_settings()
    if not settings.jwt_secret:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token verification is not configured.")
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[JWT_ALGORITHM],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    if payload.get("typ") != "access":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token type is invalid.")

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.strip():
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.")

    role = payload.get("role")
    if not isinstance(role, str) or not role.strip():
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token role is missing.")

    return Actor(user_id=subject.strip(), role=role.strip())


def require_actor(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Actor:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    actor = decode_token(credentials.credentials, settings=_settings_for(request))
    request.state.actor = actor.role
    request.state.actor_id = actor.user_id
    return actor


def require_oversight(request: Request, actor: Actor = Depends(require_actor)) -> Actor:
    if actor.role != _settings_for(request).oversight_role:
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
    return actor

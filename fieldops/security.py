from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from fieldops.errors import ApiError, AuthorizationError
from fieldops.models import UserRole
from fieldops.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Actor:
    id: int
    role: UserRole
    zone_ids: tuple[int, ...] = field(default_factory=tuple)
    name: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_access_token(
    *,
    user_id: int,
    role: UserRole | str,
    zone_ids: Iterable[int] = (),
    name: str | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    settings = get_settings()
    now = _utcnow()
    exp = now + (expires_delta or timedelta(minutes=settings.access_token_minutes))
    claims = {
        "sub": str(user_id),
        "role": UserRole(role).value,
        "zone_ids": [int(zone_id) for zone_id in zone_ids],
        "name": name,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
        "jti": str(uuid4()),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm="HS256")


def decode_token(token: str) -> Actor:
    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    try:
        user_id = int(payload["sub"])
        role = UserRole(payload.get("role"))
        zone_ids = tuple(int(item) for item in payload.get("zone_ids") or ())
    except (KeyError, TypeError, ValueError) as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token claims are invalid.") from exc

    name = payload.get("name")
    return Actor(id=user_id, role=role, zone_ids=zone_ids, name=name if isinstance(name, str) else None)


def require_actor(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Actor:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    actor = decode_token(credentials.credentials)
    request.state.actor = actor.role.value
    request.state.actor_id = str(actor.id)
    return actor


def require_roles(*roles: UserRole) -> Callable[..., Actor]:
    allowed = frozenset(roles)

    def _dependency(actor: Actor = Depends(require_actor)) -> Actor:
        if actor.role not in allowed:
            raise AuthorizationError()
        return actor

    return _dependency

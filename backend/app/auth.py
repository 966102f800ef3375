from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.app.settings import Settings

bearer_scheme = HTTPBearer(auto_error=False)

# service: cron callers of the retry job; operator: webhook log audit
KNOWN_ROLES = frozenset({"admin", "operator", "service"})


@dataclass(frozen=True)
class AuthContext:
    subject: str
    roles: frozenset[str]
    organization_id: Optional[str] = None

    def has_any(self, roles: set[str]) -> bool:
        return not roles or not self.roles.isdisjoint(roles)


DEVELOPER_CONTEXT = AuthContext(subject="dev-local", roles=KNOWN_ROLES)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def decode_token(token: str, settings: Settings) -> AuthContext:
    try:
        claims: dict[str, Any] = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["sub", "exp"]},
        )
    except jwt.InvalidTokenError as exc:
        raise _unauthorized("invalid auth token") from exc

    subject = str(claims["sub"]).strip()
    if not subject:
        raise _unauthorized("token missing subject")
    raw_roles = claims.get("roles", [])
    if not isinstance(raw_roles, list):
        raise _unauthorized("token roles must be a list")

    roles = frozenset(str(role).strip() for role in raw_roles) & KNOWN_ROLES
    if not roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="token has no recognised roles",
        )
    org_id = str(claims.get("org_id") or "").strip()
    return AuthContext(subject=subject, roles=roles, organization_id=org_id or None)


def get_auth_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> AuthContext:
    settings: Settings = request.app.state.settings
    if not settings.auth_enabled:
        context = DEVELOPER_CONTEXT
    elif credentials is None or credentials.scheme.lower() != "bearer":
        raise _unauthorized("missing bearer token")
    else:
        context = decode_token(credentials.credentials, settings)
    request.state.auth = context
    return context


def require_roles(*required_roles: str) -> Callable[..., AuthContext]:
    required = {role for role in required_roles if role in KNOWN_ROLES}

    def dependency(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if not context.has_any(required):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"insufficient role. required any of: {sorted(required)}",
            )
        return context

    return dependency

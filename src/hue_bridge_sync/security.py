from __future__ import annotations

import secrets
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer


@dataclass(frozen=True)
class AuthContext:
    credential: str


def _is_allowed(value: str, allowed: list[str]) -> bool:
    return any(secrets.compare_digest(value, item) for item in allowed)


_bearer = HTTPBearer(auto_error=False)


async def require_auth(
    request: Request,
    bearer: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> AuthContext:
    config = request.app.state.state.config
    if bearer and bearer.scheme.lower() == "bearer":
        token = bearer.credentials.strip()
        if token and _is_allowed(token, config.auth_tokens):
            return AuthContext(credential=token)
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "unauthorized"},
    )

from __future__ import annotations

import os
from dataclasses import dataclass, field

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt, JWTError

bearer = HTTPBearer(auto_error=False)

# Tokens are issued by the platform IAM service; the engine only verifies them.
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = os.getenv("JWT_ALG", "HS256")

IAM_ISSUER = os.getenv("IAM_ISSUER", "enterprise-iam")
IAM_AUDIENCE = os.getenv("IAM_AUDIENCE", "enterprise-core")


@dataclass
class Principal:
    user_id: str | None = None
    username: str = "anonymous"
    roles: list[str] = field(default_factory=list)

    @property
    def actor(self) -> str:
        return self.user_id or self.username


def get_principal(creds: HTTPAuthorizationCredentials | None = Depends(bearer)) -> Principal:
    if not creds or not creds.credentials:
        # Anonymous
        return Principal()

    try:
        payload = jwt.decode(
            creds.credentials,
            JWT_SECRET,
            algorithms=[JWT_ALG],
            audience=IAM_AUDIENCE,
            issuer=IAM_ISSUER,
        )
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return Principal(
        user_id=user_id,
        username=payload.get("email") or user_id,
        roles=sorted({g.get("role") for g in payload.get("grants") or [] if g.get("role")}),
    )

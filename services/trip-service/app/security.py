import os
from dataclasses import dataclass
from typing import Annotated, Literal, Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .tenancy import get_company_id

bearer = HTTPBearer(auto_error=False)

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"

READ_ROLES = ("agent", "staff", "admin", "company", "user")
WRITE_ROLES = ("staff", "admin", "company", "user")

ActorType = Literal["company", "user", "system"]


@dataclass(frozen=True)
class Actor:
    """Who performed a mutation; stamped onto records as created_by/updated_by."""

    type: ActorType
    id: str | None = None
    name: str = "Unknown"
    layer: str | None = None

    def as_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "type": self.type, "layer": self.layer}


SYSTEM_ACTOR = Actor(type="system", name="System")


@dataclass(frozen=True)
class RequestContext:
    company_id: str
    actor: Actor


def actor_from_principal(principal: dict | None) -> Actor:
    if not principal:
        return SYSTEM_ACTOR

    role = principal.get("role")
    name = principal.get("name") or principal.get("email") or "Unknown"
    if role == "company":
        return Actor(type="company", id=principal.get("sub"), name=name)
    if role == "system":
        return Actor(type="system", id=principal.get("sub"), name=name)
    return Actor(type="user", id=principal.get("sub"), name=name, layer=principal.get("layer"))


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.PyJWTError as e:
        raise HTTPException(status_code=401, detail=f"Invalid token: {e}")


def get_principal(
    creds: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer)],
) -> dict:
    if creds is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return decode_token(creds.credentials)


def require_roles(*allowed_roles: str):
    allowed = set(allowed_roles)

    def _dep(principal: Annotated[dict, Depends(get_principal)]) -> dict:
        role = principal.get("role")
        if role not in allowed:
            raise HTTPException(status_code=403, detail="Forbidden")
        return principal

    return _dep


def require_context(*allowed_roles: str):
    """Resolve the caller's company and actor once, for passing into the engine."""
    roles_dep = require_roles(*allowed_roles)

    def _dep(
        company_id: Annotated[str, Depends(get_company_id)],
        principal: Annotated[dict, Depends(roles_dep)],
    ) -> RequestContext:
        return RequestContext(company_id=company_id, actor=actor_from_principal(principal))

    return _dep

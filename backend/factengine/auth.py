"""
Fact Engine - Request Context
Bearer JWT decoding into a tenant-scoped request context
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from uuid import uuid4

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from .config import JWT_SECRET_KEY, JWT_ALGORITHM
from .errors import ForbiddenError
from .models.facts import Audience, derive_audience
from .services.audit import Actor

ACCESS_TOKEN_EXPIRE_HOURS = 24

# Bearer token security
security = HTTPBearer()


@dataclass
class RequestContext:
    """Who is calling, for which tenant, under which correlation id."""
    tenant_id: str
    user_id: str
    roles: List[str] = field(default_factory=list)
    correlation_id: str = ""

    @property
    def actor(self) -> Actor:
        return Actor.user(self.user_id, self.roles)

    @property
    def audience(self) -> Audience:
        return derive_audience(self.roles)


def create_access_token(user_id: str, tenant_id: Optional[str], roles: Optional[List[str]] = None) -> str:
    """Create a JWT access token carrying tenant and role claims."""
    expire = datetime.now(timezone.utc) + timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS)
    to_encode = {
        "sub": user_id,
        "tenant_id": tenant_id,
        "roles": list(roles or []),
        "exp": expire,
    }
    return jwt.encode(to_encode, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate a JWT token (signature and expiry)."""
    try:
        return jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None


async def get_request_context(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    x_correlation_id: Optional[str] = Header(None),
) -> RequestContext:
    """
    Dependency resolving the caller's tenant scope.
    An invalid token is 401; a valid token without a tenant is 403.
    """
    payload = decode_token(credentials.credentials)
    if payload is None or not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    tenant_id = payload.get("tenant_id")
    if not tenant_id:
        raise ForbiddenError("Token carries no tenant scope")

    roles = payload.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]

    return RequestContext(
        tenant_id=tenant_id,
        user_id=payload["sub"],
        roles=list(roles),
        correlation_id=x_correlation_id or str(uuid4()),
    )

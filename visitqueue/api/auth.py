"""
Authentication and authorization utilities.

Tokens are issued by the identity provider; this service only verifies
them. The `sub` claim is the caller's identity (a consumer id for
consumers) and `role` selects the permission set.
"""

from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel, ValidationError

from visitqueue.config import get_settings
from visitqueue.constants import ROLE_PERMISSIONS, Permission, Role
from visitqueue.observability.logging import bind_caller

# Security scheme
security = HTTPBearer()


class TokenData(BaseModel):
    """Data extracted from JWT token."""

    subject: str
    role: Role
    exp: datetime


class AuthenticatedUser(BaseModel):
    """Authenticated caller context."""

    subject: str
    role: Role

    def can(self, permission: Permission) -> bool:
        return can_perform(self.role, permission)


def can_perform(role: Role, permission: Permission) -> bool:
    """
    Check a role against the permission table.

    Args:
        role: The caller's role.
        permission: The action being attempted.

    Returns:
        True if the role grants the permission.
    """
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


def create_access_token(
    subject: str,
    role: Role = Role.CONSUMER,
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a JWT access token.

    Used by tests and local tooling; production tokens come from the
    identity provider and carry the same claims.

    Args:
        subject: The caller identity.
        role: The caller's role.
        expires_delta: Optional custom expiration time.

    Returns:
        The encoded JWT token.
    """
    settings = get_settings()

    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.api_access_token_expire_minutes)

    now = datetime.now(timezone.utc)
    to_encode = {
        "sub": subject,
        "role": role.value,
        "exp": now + expires_delta,
        "iat": now,
    }

    return jwt.encode(
        to_encode,
        settings.api_secret_key,
        algorithm=settings.api_algorithm,
    )


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_token(token: str) -> TokenData:
    """
    Decode and validate a JWT token.

    Args:
        token: The JWT token to decode.

    Returns:
        TokenData extracted from the token.

    Raises:
        HTTPException: If token is invalid, expired or lacks required claims.
    """
    settings = get_settings()

    try:
        payload = jwt.decode(
            token,
            settings.api_secret_key,
            algorithms=[settings.api_algorithm],
        )
    except JWTError as e:
        raise _unauthorized(f"Invalid token: {e}") from e

    subject = payload.get("sub")
    if not subject:
        raise _unauthorized("Invalid token: missing sub")

    try:
        return TokenData(
            subject=subject,
            role=payload.get("role", Role.CONSUMER.value),
            exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )
    except (KeyError, TypeError, ValidationError) as e:
        raise _unauthorized("Invalid token: malformed claims") from e


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> AuthenticatedUser:
    """
    FastAPI dependency to get the current authenticated caller.

    Raises:
        HTTPException: If authentication fails.
    """
    token_data = decode_token(credentials.credentials)
    bind_caller(token_data.subject, token_data.role.value)
    return AuthenticatedUser(subject=token_data.subject, role=token_data.role)


# Type alias for dependency injection
CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]


def require_permission(permission: Permission):
    """
    Build a dependency that rejects callers lacking `permission` with 403.

    Example:
        @router.post("/{server_id}/advance")
        async def advance(user: Annotated[AuthenticatedUser, Depends(require_permission(Permission.ADVANCE))]):
            ...
    """

    async def dependency(current_user: CurrentUser) -> AuthenticatedUser:
        if not current_user.can(permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{current_user.role}' may not perform '{permission}'",
            )
        return current_user

    return dependency

"""
Auth dependency shared across all ranking endpoints.

Tokens are minted by the external auth service. This service only checks
the signature and expiry and reads the owner UUID from the `sub` claim.

Usage in any route:
    from app.deps.auth import get_current_owner_id

    @router.get("/protected")
    def protected(owner_id: UUID = Depends(get_current_owner_id)):
        ...
"""
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from app.core.config import settings

# tokenUrl points at the auth service's login route (documentation only)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def decode_owner_id(token: str) -> UUID | None:
    """
    Decode a JWT and return the *sub* claim as a UUID.
    Returns None on any error (expired, tampered, malformed, non-UUID sub).
    """
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
        )
    except JWTError:
        return None

    sub = payload.get("sub")
    if sub is None:
        return None
    try:
        return UUID(str(sub))
    except ValueError:
        return None


def get_current_owner_id(token: str = Depends(oauth2_scheme)) -> UUID:
    """
    Return the owner UUID for the bearer token.

    Raises 401 on a missing or invalid token.
    """
    owner_id = decode_owner_id(token)
    if owner_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return owner_id

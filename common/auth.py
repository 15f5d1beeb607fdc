# common/auth.py
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

# Tokens are issued by users_service.auth with this key
SECRET_KEY = "super-secret-library-reservations-key"
ALGORITHM = "HS256"

security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)


def decode_token(token: str) -> Dict[str, Any]:
    """
    Decode a JWT and extract the claims used by this service.

    Parameters
    ----------
    token : str
        Encoded JWT issued by the Users service.

    Returns
    -------
    Dict[str, Any]
        A dictionary with 'username', 'role' and 'user_id'.

    Raises
    ------
    HTTPException
        401 if the token is invalid, expired, or lacks required claims.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        username = payload.get("sub")
        role = payload.get("role")
        user_id = payload.get("user_id")
        if username is None or role is None or user_id is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    return {"username": username, "role": role, "user_id": user_id}


async def get_current_user_claims(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Dict[str, Any]:
    """Claims of the authenticated caller; 401/403 without a valid bearer token."""
    return decode_token(credentials.credentials)


async def get_optional_user_claims(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security),
) -> Optional[Dict[str, Any]]:
    """
    Claims of the caller if a bearer token is present, else None.

    Used by endpoints that guests may call. A token that is present but
    invalid is still rejected with 401.
    """
    if credentials is None:
        return None
    return decode_token(credentials.credentials)


def require_roles(*allowed_roles: str) -> Callable:
    """
    Build a dependency that enforces a set of allowed roles.

    Parameters
    ----------
    allowed_roles : str
        One or more role names that are permitted to access a route.

    Returns
    -------
    Callable
        A FastAPI dependency that checks the caller's role and raises
        HTTP 403 if access is not allowed.
    """

    async def dependency(claims: Dict[str, Any] = Depends(get_current_user_claims)) -> Dict[str, Any]:
        if claims["role"] not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not enough permissions",
            )
        return claims

    return dependency

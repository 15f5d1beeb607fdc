from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from common.auth import ALGORITHM, SECRET_KEY

from . import models
from .database import get_db

# --- JWT settings ---
ACCESS_TOKEN_EXPIRE_MINUTES = 60

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/users/login")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def get_user_by_username(db: Session, username: str) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.username == username).first()


def authenticate_user(db: Session, username: str, password: str) -> Optional[models.User]:
    """
    Check a username / password pair.

    Parameters
    ----------
    db : Session
        Database session.
    username : str
        Username provided by the client.
    password : str
        Plaintext password provided by the client.

    Returns
    -------
    Optional[User]
        The user if the credentials are valid and the account is active,
        otherwise None.
    """
    user = get_user_by_username(db, username)
    if not user or not user.is_active:
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


def create_access_token(user: models.User, expires_delta: Optional[timedelta] = None) -> str:
    """
    Issue a signed JWT for ``user``.

    The token carries ``sub`` (username), ``role`` and ``user_id``; the
    other services rely on all three.
    """
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    claims = {
        "sub": user.username,
        "role": user.role.value,
        "user_id": user.id,
        "exp": expire,
    }
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> models.User:
    """
    Resolve the current user from a JWT bearer token.

    The token's role must still match the stored role, so a role change
    invalidates tokens issued before it.

    Raises
    ------
    HTTPException
        401 if the token is invalid or expired, the user no longer exists
        or is inactive, or the role changed.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise credentials_exception

    username = payload.get("sub")
    if username is None:
        raise credentials_exception

    user = get_user_by_username(db, username=username)
    if user is None or not user.is_active:
        raise credentials_exception

    token_role = payload.get("role")
    if token_role is not None and token_role != user.role.value:
        raise credentials_exception

    return user


def require_roles(allowed_roles: List[models.UserRole]):
    """
    Build a dependency that only lets users with one of ``allowed_roles``
    through (HTTP 403 otherwise).
    """

    async def dependency(current_user: models.User = Depends(get_current_user)):
        if current_user.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Operation not permitted for this role",
            )
        return current_user

    return dependency

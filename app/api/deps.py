"""FastAPI dependencies for the API layer."""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.core.security import decode_access_token
from app.database import get_db
from app.models import User

bearer_scheme = HTTPBearer(auto_error=False)


def _credentials_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    """Retrieve the current user from the bearer token."""

    if credentials is None:
        raise _credentials_error()
    return get_user_from_token(credentials.credentials, db)


def get_user_id_from_token(token: str) -> int:
    """Extract the user id carried in the ``sub`` claim or raise HTTP 401."""

    payload = decode_access_token(token)
    sub = payload.get("sub")
    if sub is None:
        raise _credentials_error()

    try:
        return int(sub)
    except (TypeError, ValueError):
        raise _credentials_error() from None


def get_user_from_token(token: str, db: Session) -> User:
    """Resolve a user from a JWT token or raise an HTTP 401 error."""

    user = db.get(User, get_user_id_from_token(token))
    if user is None:
        raise _credentials_error()
    return user

from typing import Callable

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.db import get_db
from app.models.role import ADMIN_ROLE_NAMES
from app.models.user import User

bearer_scheme = HTTPBearer(auto_error=False)


def _load_user(db: Session, subject: object) -> User | None:
    try:
        user = db.get(User, int(subject))
    except (TypeError, ValueError):
        user = None
    if user is None:
        user = db.query(User).filter(User.email == str(subject)).first()
    return user


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the caller from a bearer token issued by the chapter's auth service."""
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    try:
        payload = jwt.decode(credentials.credentials, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except JWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc

    subject = payload.get("sub")
    if subject is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")

    user = _load_user(db, subject)
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Inactive user")
    return user


def require_roles(*roles: str) -> Callable[[User], User]:
    def checker(user: User = Depends(get_current_user)) -> User:
        if not user.role_names.intersection(roles):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return user

    return checker


require_chapter_admin = require_roles(*ADMIN_ROLE_NAMES)


def chapter_scope(chapter_id: int | None, user: User) -> int:
    """Default to the caller's chapter; admins may not read another chapter's books."""
    scope = chapter_id if chapter_id is not None else user.chapter_id
    if scope is None or not user.is_chapter_admin(scope):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Chapter admin privileges required")
    return scope

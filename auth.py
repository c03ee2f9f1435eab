import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy import or_
from sqlalchemy.orm import Session

import models
from database import get_db
from errors import AccessDeniedError, AuthError, NotFoundError
from settings import ACCESS_TOKEN_EXPIRE_MINUTES, ALGORITHM, DEFAULT_SECRET_KEY, SECRET_KEY

logger = logging.getLogger("CollabBackend.auth")

if SECRET_KEY == DEFAULT_SECRET_KEY:
    logger.warning("JWT_SECRET_KEY is not set, using the development default")

bearer_scheme = HTTPBearer(auto_error=False)


def get_password_hash(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=10)).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        return False


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def token_for_user(user: models.User) -> str:
    return create_access_token(
        data={"sub": user.id, "username": user.username, "email": user.email, "role": user.role}
    )


def decode_access_token(token: str) -> dict:
    if not token:
        raise AuthError("Access token required", status_code=401)
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise AuthError("Invalid or expired token")
    if payload.get("sub") is None:
        raise AuthError("Invalid or expired token")
    return payload


def resolve_user(db: Session, token: str) -> models.User:
    """Map a bearer token to an active user, raising AuthError otherwise."""
    payload = decode_access_token(token)
    user = (
        db.query(models.User)
        .filter(models.User.id == payload["sub"], models.User.is_active.is_(True))
        .first()
    )
    if user is None:
        raise AuthError("User not found or inactive")
    return user


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> models.User:
    if credentials is None:
        raise AuthError("Access token required", status_code=401)
    return resolve_user(db, credentials.credentials)


def authenticate_user(db: Session, username: str, password: str) -> Optional[models.User]:
    user = (
        db.query(models.User)
        .filter(models.User.username == username, models.User.is_active.is_(True))
        .first()
    )
    if not user or not verify_password(password, user.hashed_password):
        return None
    return user


def require_project_access(db: Session, project_id: str, user: models.User) -> models.Project:
    """
    Return the project if the user owns it or holds a membership row.

    Used by both the REST routes and the relay's join/task handlers.
    """
    project = db.query(models.Project).filter(models.Project.id == project_id).first()
    if project is None:
        raise NotFoundError("Project not found")
    allowed = (
        db.query(models.Project.id)
        .outerjoin(
            models.ProjectCollaborator,
            (models.ProjectCollaborator.project_id == models.Project.id)
            & (models.ProjectCollaborator.user_id == user.id),
        )
        .filter(
            models.Project.id == project_id,
            or_(models.Project.owner_id == user.id, models.ProjectCollaborator.user_id.isnot(None)),
        )
        .first()
    )
    if allowed is None:
        raise AccessDeniedError("Access denied to this project")
    return project

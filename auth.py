# auth.py
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Request
from jose import jwt, JOSEError
from sqlalchemy.orm import Session

import models
from config import settings
from database import get_db

ALGORITHM = "HS256"
COOKIE_NAME = "access_token"
TOKEN_TTL = timedelta(days=1)


def create_access_token(username: str, now: Optional[datetime] = None) -> str:
    payload = {"sub": username, "exp": (now or datetime.now(timezone.utc)) + TOKEN_TTL}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=ALGORITHM)


def authenticate(db: Session, username: str, password: str) -> Optional[models.User]:
    user = db.query(models.User).filter_by(username=username).first()
    if not user or not user.verify_password(password):
        return None
    return user


def _token_from_request(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization") or ""
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return request.cookies.get(COOKIE_NAME)


def get_current_user(request: Request, db: Session = Depends(get_db)) -> models.User:
    token = _token_from_request(request)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[ALGORITHM])
    except JOSEError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    user = db.query(models.User).filter_by(username=payload.get("sub")).first()
    if user is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    request.state.user = user.username
    return user


def require_admin(user: models.User = Depends(get_current_user)) -> models.User:
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="Admin role required")
    return user

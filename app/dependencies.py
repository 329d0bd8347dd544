from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.orm import Session

from app.auth import decode_token
from app.database import get_db
from app.models import User

security = HTTPBearer(auto_error=False)


def _user_from_token(db: Session, token: str) -> Optional[User]:
    try:
        payload = decode_token(token)
    except JWTError:
        return None
    if payload.get("t") in ("refresh", "preview"):
        return None
    email = payload.get("sub")
    if not email:
        return None
    return db.query(User).filter(User.email == email).first()


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
):
    token = credentials.credentials if credentials else None
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing authentication token")
    try:
        payload = decode_token(token)
        email = payload.get("sub")
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    if payload.get("t") in ("refresh", "preview"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    user = db.query(User).filter(User.email == email).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


class MediaAuth:
    """Resolved caller for media URLs (download, thumbnail).

    Browsers can't set headers on <img>/<video> sources, so the token may also
    arrive as ?access_token= or a file-bound ?preview_token=.
    """

    def __init__(self, user: User, preview_file_id: Optional[str] = None):
        self.user = user
        self.preview_file_id = preview_file_id

    def allows(self, file_id: str) -> bool:
        return self.preview_file_id is None or self.preview_file_id == file_id


def get_media_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> MediaAuth:
    if credentials and credentials.credentials:
        user = _user_from_token(db, credentials.credentials)
        if user:
            return MediaAuth(user)

    preview_token = request.query_params.get("preview_token")
    if preview_token:
        try:
            payload = decode_token(preview_token)
        except JWTError:
            payload = {}
        if payload.get("t") == "preview" and payload.get("id"):
            user = db.get(User, payload["id"])
            if user:
                return MediaAuth(user, preview_file_id=payload.get("fileId"))

    access_token = request.query_params.get("access_token")
    if access_token:
        user = _user_from_token(db, access_token)
        if user:
            return MediaAuth(user)

    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def get_drive(request: Request):
    return request.app.state.drive


def get_tracker(request: Request):
    return request.app.state.tracker


def get_upload_service(request: Request):
    return request.app.state.uploads

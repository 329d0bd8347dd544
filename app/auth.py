from passlib.context import CryptContext
from jose import JWTError, jwt
from datetime import datetime, timedelta

from app.config import (
    SECRET_KEY,
    ALGORITHM,
    ACCESS_TOKEN_HOURS,
    REFRESH_TOKEN_DAYS,
    PREVIEW_TOKEN_SECONDS,
    OAUTH_STATE_MINUTES,
)

pwd = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

def hash_password(p: str) -> str:
    if p is None:
        p = ""
    return pwd.hash(p)

def verify(p: str, h: str) -> bool:
    if p is None:
        p = ""
    return pwd.verify(p, h)

def _encode(data: dict, lifetime: timedelta) -> str:
    payload = data.copy()
    payload["exp"] = datetime.utcnow() + lifetime
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)

def create_token(data: dict):
    return _encode(data, timedelta(hours=ACCESS_TOKEN_HOURS))

def create_refresh_token(data: dict):
    payload = data.copy()
    payload["t"] = "refresh"
    return _encode(payload, timedelta(days=REFRESH_TOKEN_DAYS))

def create_preview_token(user_id: int, email: str, file_id: str) -> str:
    """Short-lived token that only authorizes reads of one file."""
    payload = {"sub": email, "id": user_id, "t": "preview", "fileId": file_id}
    return _encode(payload, timedelta(seconds=PREVIEW_TOKEN_SECONDS))

def decode_token(token: str) -> dict:
    # raises jose.JWTError on bad signature or expiry
    return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])

def create_state_token(user_id: int) -> str:
    """Signed OAuth ``state`` naming the user a Drive account is being connected for."""
    return _encode({"id": user_id, "t": "oauth_state"}, timedelta(minutes=OAUTH_STATE_MINUTES))

def read_state_token(state: str) -> int:
    payload = decode_token(state)
    if payload.get("t") != "oauth_state":
        raise JWTError("not an oauth state token")
    return int(payload["id"])

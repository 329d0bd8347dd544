import logging

from fastapi import APIRouter, Depends, Form, HTTPException, Request
from google.auth.exceptions import GoogleAuthError
from jose import JWTError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.auth import create_refresh_token, create_token, decode_token, hash_password, verify
from app.database import get_db
from app.dependencies import get_current_user, get_drive
from app.models import User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


async def _credentials(request: Request, **given):
    # Accept form data, query params, or JSON body for flexibility
    values = dict(given)
    for key in values:
        if not values[key]:
            values[key] = request.query_params.get(key)

    if not all(values.values()) and request.headers.get("content-type", "").startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            body = {}
        if isinstance(body, dict):
            for key in values:
                if not values[key]:
                    values[key] = body.get(key)
    return values


def _session_payload(user: User) -> dict:
    claims = {"sub": user.email, "id": user.id}
    return {
        "user": {"name": user.name, "email": user.email},
        "token": create_token(claims),
        "refreshToken": create_refresh_token(claims),
    }


@router.post("/register", status_code=201)
async def register(
    request: Request,
    email: str = Form(None),
    password: str = Form(None),
    name: str = Form(None),
    db: Session = Depends(get_db),
):
    values = await _credentials(request, email=email, password=password, name=name)
    email, password, name = values["email"], values["password"], values["name"]

    if not email or not password:
        raise HTTPException(status_code=422, detail=[{"loc": ["body"], "msg": "email and password required"}])

    try:
        existing = db.query(User).filter(User.email == email).first()
        if existing:
            raise HTTPException(status_code=400, detail="Email already registered")

        user = User(name=name, email=email, password=hash_password(password))
        db.add(user)
        db.commit()
        db.refresh(user)
        return {"message": "Registered", **_session_payload(user)}
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=400, detail="Email already registered")
    except HTTPException:
        db.rollback()
        raise


@router.post("/login")
async def login(
    request: Request,
    email: str = Form(None),
    password: str = Form(None),
    db: Session = Depends(get_db),
):
    values = await _credentials(request, email=email, password=password)
    email, password = values["email"], values["password"]

    if not email or not password:
        raise HTTPException(status_code=422, detail=[{"loc": ["body"], "msg": "email and password required"}])

    user = db.query(User).filter(User.email == email).first()
    if not user or not user.password or not verify(password, user.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"message": "Login successful", **_session_payload(user)}


@router.post("/refresh")
async def refresh(request: Request, refresh_token: str = Form(None), db: Session = Depends(get_db)):
    token = (await _credentials(request, refreshToken=refresh_token))["refreshToken"]
    if not token:
        raise HTTPException(status_code=400, detail="Missing refresh token")
    try:
        payload = decode_token(token)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid refresh token")
    if payload.get("t") != "refresh":
        raise HTTPException(status_code=401, detail="Invalid refresh token")

    user = db.query(User).filter(User.email == payload.get("sub")).first()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return {"token": create_token({"sub": user.email, "id": user.id})}


@router.post("/google-login")
async def google_login(
    request: Request,
    credential: str = Form(None),
    db: Session = Depends(get_db),
    drive=Depends(get_drive),
):
    credential = (await _credentials(request, credential=credential))["credential"]
    if not credential:
        raise HTTPException(status_code=400, detail="Missing Google credential")
    try:
        claims = await run_in_threadpool(drive.verify_id_token, credential)
    except (ValueError, GoogleAuthError) as e:
        logger.info("rejected Google sign-in: %s", e)
        raise HTTPException(status_code=401, detail="Invalid Google token")

    email = claims.get("email")
    if not email:
        raise HTTPException(status_code=400, detail="Invalid Google token")

    user = db.query(User).filter(User.email == email).first()
    if user is None:
        user = User(
            name=claims.get("name"),
            email=email,
            password=None,
            google_id=claims.get("sub"),
            profile_picture=claims.get("picture"),
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        logger.info("created user %s from Google sign-in", email)

    payload = _session_payload(user)
    payload["user"]["picture"] = user.profile_picture
    return {"message": "Google login successful", **payload}


@router.get("/me")
@router.get("/profile")
def profile(current_user: User = Depends(get_current_user)):
    return {
        "id": current_user.id,
        "name": current_user.name,
        "email": current_user.email,
        "createdAt": current_user.created_at,
    }


@router.patch("/me")
@router.put("/profile")
async def update_profile(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="JSON body required")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="JSON body required")

    name, email, password = body.get("name"), body.get("email"), body.get("password")
    if not name and not email and not password:
        raise HTTPException(status_code=400, detail="Nothing to update")

    user = db.get(User, current_user.id)
    email_changed = False
    if email and email != user.email:
        taken = db.query(User).filter(User.email == email, User.id != user.id).first()
        if taken:
            raise HTTPException(status_code=400, detail="Email already in use")
        user.email = email
        email_changed = True
    if name:
        user.name = name
    if password:
        user.password = hash_password(password)
    db.commit()
    result = {"message": "Profile updated", "user": {"id": user.id, "name": user.name, "email": user.email}}
    if email_changed:
        # tokens carry the email as subject; the old ones no longer resolve
        result["token"] = create_token({"sub": user.email, "id": user.id})
    return result

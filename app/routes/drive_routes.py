import json
import logging
from typing import List, Optional

import requests
from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import RedirectResponse, StreamingResponse
from google.auth.exceptions import GoogleAuthError
from googleapiclient.errors import HttpError
from jose import JWTError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.auth import create_state_token, read_state_token
from app.config import FRONTEND_URL
from app.database import get_db
from app.dependencies import get_current_user, get_drive, get_tracker, get_upload_service
from app.exceptions import (
    AccountNotFoundError,
    FileTooLargeError,
    NoAccountsError,
    NoSpaceError,
)
from app.models import DriveAccount, TransferJob, User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/drive", tags=["drive"])


@router.get("/auth-url")
def auth_url(current_user: User = Depends(get_current_user), drive=Depends(get_drive)):
    return {"url": drive.authorization_url(create_state_token(current_user.id))}


@router.get("/callback")
def oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    db: Session = Depends(get_db),
    drive=Depends(get_drive),
):
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state")
    try:
        user_id = read_state_token(state)
    except (JWTError, KeyError, TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Invalid state")

    dashboard = RedirectResponse(f"{FRONTEND_URL}/dashboard")
    try:
        tokens = drive.exchange_code(code)
        refresh_token = tokens.get("refresh_token")
        if not refresh_token:
            raise HTTPException(status_code=400, detail="Refresh token not received")
        profile = drive.fetch_account_profile(tokens["access_token"])
        if not profile.get("email"):
            raise ValueError("No email from Google")

        account = (
            db.query(DriveAccount)
            .filter(DriveAccount.user_id == user_id, DriveAccount.email == profile["email"])
            .first()
        )
        if account is None:
            account = DriveAccount(user_id=user_id, email=profile["email"])
            db.add(account)
        account.refresh_token = refresh_token
        account.access_token = tokens.get("access_token")
        account.used_space_gb = profile["used_space_gb"]
        account.total_space_gb = profile["total_space_gb"]
        db.commit()
        logger.info("connected drive account %s for user %s", profile["email"], user_id)
    except HTTPException:
        raise
    except (requests.RequestException, HttpError, GoogleAuthError, ValueError, KeyError) as e:
        db.rollback()
        logger.error("oauthCallback error: %s", e)
    return dashboard


@router.get("/accounts")
def accounts(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    rows = db.query(DriveAccount).filter(DriveAccount.user_id == current_user.id).all()
    return [
        {
            "id": a.id,
            "email": a.email,
            "usedSpace": round(a.used_space_gb or 0.0, 1),
            "totalSpace": round(a.total_space_gb or 0.0, 1),
        }
        for a in rows
    ]


@router.post("/disconnect")
async def disconnect(
    request: Request,
    email: str = Form(None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    drive=Depends(get_drive),
):
    if not email and request.headers.get("content-type", "").startswith("application/json"):
        try:
            email = (await request.json()).get("email")
        except (ValueError, AttributeError):
            email = None
    if not email:
        raise HTTPException(status_code=400, detail="Email is required")

    account = (
        db.query(DriveAccount)
        .filter(DriveAccount.user_id == current_user.id, DriveAccount.email == email)
        .first()
    )
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")

    await run_in_threadpool(drive.revoke, account.refresh_token)
    db.delete(account)
    db.commit()
    return {"message": "Account disconnected successfully"}


@router.post("/upload/files")
async def upload_files(
    request: Request,
    files: List[UploadFile] = File(None),
    driveAccountId: Optional[str] = Form(None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    service=Depends(get_upload_service),
):
    if not files:
        raise HTTPException(status_code=400, detail="No files uploaded")
    preferred = driveAccountId or request.query_params.get("driveAccountId")

    try:
        return await service.start_batch(db, current_user, files, preferred_account_id=preferred)
    except (NoAccountsError, AccountNotFoundError, NoSpaceError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except FileTooLargeError as e:
        raise HTTPException(status_code=413, detail=str(e))


@router.get("/upload/progress/{upload_id}")
async def upload_progress(upload_id: str, tracker=Depends(get_tracker)):
    async def events():
        async for event in tracker.subscribe(upload_id):
            yield f"data: {json.dumps(event)}\n\n"

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.get("/transfers")
def transfers(limit: int = 100, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    jobs = (
        db.query(TransferJob)
        .filter(TransferJob.user_id == current_user.id)
        .order_by(TransferJob.created_at.desc(), TransferJob.id.desc())
        .limit(limit)
        .all()
    )
    return {
        "jobs": [
            {
                "uploadId": j.upload_id,
                "fileName": j.file_name,
                "status": j.status,
                "totalBytes": j.total_bytes,
                "transferredBytes": j.transferred_bytes,
                "driveFileId": j.drive_file_id,
                "errorMessage": j.error_message,
                "createdAt": j.created_at,
                "updatedAt": j.updated_at,
            }
            for j in jobs
        ]
    }


@router.get("/debug/recent-uploads")
def recent_uploads(current_user: User = Depends(get_current_user), service=Depends(get_upload_service)):
    return {"uploads": service.recent_for(current_user.id)}

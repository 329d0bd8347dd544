import io
import logging
import re
from html import escape
from typing import Optional
from urllib.parse import quote

import cloudinary.api
import cloudinary.exceptions
import cloudinary.uploader
import cloudinary.utils
import requests
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse, Response, StreamingResponse
from googleapiclient.errors import HttpError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.auth import create_preview_token
from app.config import PREVIEW_TOKEN_SECONDS, cloudinary_configured
from app.database import get_db
from app.dependencies import MediaAuth, get_current_user, get_drive, get_media_auth
from app.exceptions import TransferError
from app.models import DriveAccount, File, User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/drive/files", tags=["files"])

STREAM_CHUNK = 64 * 1024
THUMB_FOLDER = "drive_thumbnails"
RANGE_RE = re.compile(r"bytes=(\d*)-(\d*)")

# errors that mean "try the next account"
DRIVE_ERRORS = (TransferError, HttpError, requests.RequestException)


def _thumbnail_path(file_id: str, size: int) -> str:
    return f"/drive/files/thumbnail?id={quote(file_id)}&size={size}"


def _owned_file(db: Session, auth: MediaAuth, file_id: str) -> File:
    rec = db.query(File).filter(File.drive_file_id == file_id).first()
    if not rec or rec.user_id != auth.user.id:
        raise HTTPException(status_code=404, detail="File not found or not owned by user")
    if not auth.allows(file_id):
        raise HTTPException(status_code=401, detail="Invalid preview token for this file")
    return rec


def _candidate_accounts(db: Session, rec: File, user_id: int) -> list:
    accounts = db.query(DriveAccount).filter(DriveAccount.user_id == user_id).all()
    # the account we uploaded to first, then everything else
    accounts.sort(key=lambda a: a.id != rec.drive_account_id)
    return accounts


def list_remote_files(db: Session, drive, user_id: int, limit: int = 0) -> list:
    out = []
    for account in db.query(DriveAccount).filter(DriveAccount.user_id == user_id).all():
        try:
            files = drive.list_app_files(account.refresh_token, user_id, limit)
        except DRIVE_ERRORS as e:
            logger.warning("listFiles: failed for account %s: %s", account.email, e)
            continue
        for f in files:
            out.append({
                "id": f["id"],
                "name": f.get("name"),
                "mime": f.get("mimeType"),
                "size": int(f.get("size") or 0),
                "modifiedAt": f.get("modifiedTime"),
                "accountEmail": account.email,
                "thumbnailUrl": _thumbnail_path(f["id"], 240),
            })
    out.sort(key=lambda f: f["modifiedAt"] or "", reverse=True)
    return out[:limit] if limit > 0 else out


@router.get("")
def get_files(
    limit: int = 0,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    drive=Depends(get_drive),
):
    try:
        query = db.query(File).filter(File.user_id == current_user.id).order_by(File.created_at.desc(), File.id.desc())
        if limit > 0:
            query = query.limit(limit)
        files = query.all()
    except SQLAlchemyError as e:
        # table missing on an unmigrated DB: fall back to asking Drive
        db.rollback()
        logger.warning("getFiles falling back to Drive listing due to DB error: %s", e)
        return {"files": list_remote_files(db, drive, current_user.id, limit)}

    return {
        "files": [
            {
                "id": f.drive_file_id,
                "name": f.name,
                "mime": f.mime,
                "size": int(f.size_bytes or 0),
                "modifiedAt": f.created_at,
                "thumbnailUrl": _thumbnail_path(f.drive_file_id, 240),
            }
            for f in files
        ]
    }


@router.get("/remote")
def get_remote_files(
    limit: int = 0,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    drive=Depends(get_drive),
):
    return {"files": list_remote_files(db, drive, current_user.id, limit)}


def parse_range(header: Optional[str], size: int) -> Optional[tuple]:
    """(start, end) inclusive for a ``bytes=a-b`` header, None if absent."""
    if not header:
        return None
    m = RANGE_RE.match(header.strip())
    if not m or (not m.group(1) and not m.group(2)):
        return None
    if not m.group(1):
        # suffix form: last N bytes
        start = max(0, size - int(m.group(2)))
        end = size - 1
    else:
        start = int(m.group(1))
        end = int(m.group(2)) if m.group(2) else size - 1
    end = min(end, size - 1)
    if start > end:
        raise HTTPException(status_code=416, detail="Requested range not satisfiable",
                            headers={"Content-Range": f"bytes */{size}"})
    return start, end


def _iter_media(resp):
    try:
        for chunk in resp.iter_content(chunk_size=STREAM_CHUNK):
            if chunk:
                yield chunk
    finally:
        resp.close()


@router.get("/download")
def download_file(
    request: Request,
    id: Optional[str] = None,
    preview: Optional[str] = None,
    auth: MediaAuth = Depends(get_media_auth),
    db: Session = Depends(get_db),
    drive=Depends(get_drive),
):
    if not id:
        raise HTTPException(status_code=400, detail="Missing file id")
    rec = _owned_file(db, auth, id)
    inline = preview in ("1", "true")

    for account in _candidate_accounts(db, rec, auth.user.id):
        try:
            meta = drive.file_metadata(account.refresh_token, id)
            if meta is None:
                continue
            size = int(meta.get("size") or 0)
            byte_range = parse_range(request.headers.get("range"), size)
            resp = drive.open_media(account.refresh_token, id, byte_range)
        except DRIVE_ERRORS as e:
            logger.warning("download: account %s failed: %s", account.email, e)
            continue

        name = meta.get("name") or id
        headers = {
            "Accept-Ranges": "bytes",
            "Content-Disposition": f"{'inline' if inline else 'attachment'}; filename*=UTF-8''{quote(name)}",
        }
        status_code = 200
        if byte_range is not None:
            start, end = byte_range
            status_code = 206
            headers["Content-Range"] = f"bytes {start}-{end}/{size}"
            headers["Content-Length"] = str(end - start + 1)
        else:
            headers["Content-Length"] = str(size)
        return StreamingResponse(
            _iter_media(resp),
            status_code=status_code,
            media_type=meta.get("mimeType") or "application/octet-stream",
            headers=headers,
        )

    raise HTTPException(status_code=404, detail="File not found in connected accounts")


@router.post("/preview-token")
async def preview_token(
    request: Request,
    fileId: Optional[str] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not fileId and request.headers.get("content-type", "").startswith("application/json"):
        try:
            body = await request.json()
            fileId = body.get("fileId") if isinstance(body, dict) else None
        except ValueError:
            fileId = None
    if not fileId:
        raise HTTPException(status_code=400, detail="Missing fileId")

    _owned_file(db, MediaAuth(current_user), fileId)
    token = create_preview_token(current_user.id, current_user.email or "", fileId)
    return {"previewToken": token, "expiresInSeconds": PREVIEW_TOKEN_SECONDS}


def svg_placeholder(name: str, width: int = 400, height: int = 300) -> str:
    safe = escape(str(name or "")[:40])
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<svg xmlns='http://www.w3.org/2000/svg' width='{width}' height='{height}'>
  <rect width='100%' height='100%' fill='#f3f4f6' />
  <text x='50%' y='50%' dominant-baseline='middle' text-anchor='middle' fill='#9ca3af' font-family='Arial,Helvetica,sans-serif' font-size='18'>{safe}</text>
</svg>"""


def _placeholder(name: str, size: int) -> Response:
    return Response(svg_placeholder(name, size, round(size * 0.75)), media_type="image/svg+xml")


def _cloudinary_thumb(public_id: str, size: int) -> str:
    url, _ = cloudinary.utils.cloudinary_url(public_id, width=size, crop="fill", format="jpg", secure=True)
    return url


@router.get("/thumbnail")
def thumbnail(
    id: Optional[str] = None,
    size: int = 400,
    auth: MediaAuth = Depends(get_media_auth),
    db: Session = Depends(get_db),
    drive=Depends(get_drive),
):
    if not id:
        raise HTTPException(status_code=400, detail="Missing file id")
    rec = _owned_file(db, auth, id)
    if not cloudinary_configured():
        return _placeholder(rec.name or id, size)

    public_id = f"{THUMB_FOLDER}/{id}"
    try:
        cloudinary.api.resource(public_id)
        return RedirectResponse(_cloudinary_thumb(public_id, size))
    except cloudinary.exceptions.NotFound:
        pass
    except cloudinary.exceptions.Error as e:
        logger.warning("Cloudinary check error: %s", e)

    for account in _candidate_accounts(db, rec, auth.user.id):
        try:
            meta = drive.file_metadata(account.refresh_token, id)
            if meta is None:
                continue
            if not (meta.get("mimeType") or "").startswith("image/"):
                return _placeholder(meta.get("name") or id, size)
            resp = drive.open_media(account.refresh_token, id)
            try:
                data = resp.content
            finally:
                resp.close()
            cloudinary.uploader.upload(io.BytesIO(data), public_id=public_id, overwrite=True, resource_type="image")
            return RedirectResponse(_cloudinary_thumb(public_id, size))
        except DRIVE_ERRORS + (cloudinary.exceptions.Error,) as e:
            logger.warning("getThumbnail: account attempt failed %s: %s", account.email, e)
            continue

    return _placeholder(id, size)

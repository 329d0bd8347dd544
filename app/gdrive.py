"""
Google OAuth + Drive v3 access for connected accounts.

Everything here is blocking (google-auth / googleapiclient / requests); the
async entry points push the work onto Starlette's threadpool so a slow Drive
endpoint doesn't stall the event loop.
"""
import json
import logging
from typing import Optional
from urllib.parse import urlencode

import requests
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import AuthorizedSession, Request as GoogleRequest
from google.oauth2 import id_token
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from starlette.concurrency import run_in_threadpool

from app.config import BACKEND_URL, GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET
from app.exceptions import TransferError

logger = logging.getLogger(__name__)

AUTH_URI = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"
REVOKE_URI = "https://oauth2.googleapis.com/revoke"
UPLOAD_URI = "https://www.googleapis.com/upload/drive/v3/files"
FILES_URI = "https://www.googleapis.com/drive/v3/files"

SCOPES = [
    "https://www.googleapis.com/auth/drive",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
]

APP_NAME = "DriveMerge"
FILE_FIELDS = "id, name, mimeType, size, modifiedTime"

# resumable uploads only accept non-final chunks in multiples of 256 KiB
RESUMABLE_UNIT = 256 * 1024
RESUMABLE_FLUSH_BYTES = 4 * RESUMABLE_UNIT

# Drive reports no limit for unlimited plans
UNLIMITED_TOTAL_GB = 1024.0 * 1024.0

GB = 1024 ** 3


def redirect_uri() -> str:
    return f"{BACKEND_URL}/drive/callback"


def _drive_service(credentials):
    return build("drive", "v3", credentials=credentials, cache_discovery=False)


def _escape_query_value(s: str) -> str:
    return (s or "").replace("\\", "\\\\").replace("'", "\\'")


class UploadSession:
    """One resumable Drive upload, fed in arbitrary-sized pieces.

    Writes are buffered and flushed in whole 256 KiB units; ``close`` sends the
    tail and returns the created file's metadata.
    """

    def __init__(self, http: AuthorizedSession, session_uri: str, total_size: int):
        self.http = http
        self.session_uri = session_uri
        self.total_size = total_size
        self.offset = 0
        self._buffer = bytearray()

    @classmethod
    async def start(cls, credentials, name: str, mime: Optional[str], size: int, app_properties: dict):
        http = AuthorizedSession(credentials)
        metadata = {"name": name, "appProperties": app_properties}
        headers = {
            "Content-Type": "application/json; charset=UTF-8",
            "X-Upload-Content-Type": mime or "application/octet-stream",
            "X-Upload-Content-Length": str(size),
        }
        params = {"uploadType": "resumable", "fields": FILE_FIELDS}

        def _call():
            return http.post(UPLOAD_URI, params=params, headers=headers, data=json.dumps(metadata), timeout=60)

        try:
            resp = await run_in_threadpool(_call)
        except requests.RequestException as e:
            raise TransferError("could not start Drive upload", e)
        if resp.status_code != 200 or "Location" not in resp.headers:
            raise TransferError(f"Drive refused upload session: {resp.status_code} {resp.text[:200]}")
        return cls(http, resp.headers["Location"], size)

    async def write(self, chunk: bytes):
        self._buffer.extend(chunk)
        if len(self._buffer) >= RESUMABLE_FLUSH_BYTES:
            n = len(self._buffer) - len(self._buffer) % RESUMABLE_UNIT
            await self._put(n, final=False)

    async def close(self) -> dict:
        resp = await self._put(len(self._buffer), final=True)
        return resp.json()

    async def abort(self):
        def _call():
            return self.http.delete(self.session_uri, timeout=30)

        try:
            await run_in_threadpool(_call)
        except requests.RequestException:
            logger.debug("cancelling Drive upload session failed", exc_info=True)

    async def _put(self, n: int, final: bool):
        body = bytes(self._buffer[:n])
        start = self.offset
        if final:
            total = str(self.offset + n)
            content_range = f"bytes {start}-{start + n - 1}/{total}" if n else f"bytes */{total}"
        else:
            content_range = f"bytes {start}-{start + n - 1}/*"

        def _call():
            return self.http.put(
                self.session_uri,
                data=body,
                headers={"Content-Length": str(n), "Content-Range": content_range},
                timeout=120,
            )

        try:
            resp = await run_in_threadpool(_call)
        except requests.RequestException as e:
            raise TransferError("Drive chunk upload failed", e)

        expected = (200, 201) if final else (308,)
        if resp.status_code not in expected:
            raise TransferError(f"Drive chunk rejected: {resp.status_code} {resp.text[:200]}")
        del self._buffer[:n]
        self.offset += n
        return resp


class DriveGateway:
    """The Google side of DriveMerge: OAuth tokens, quotas, files and media."""

    def __init__(self, client_id: str = GOOGLE_CLIENT_ID, client_secret: str = GOOGLE_CLIENT_SECRET):
        self.client_id = client_id
        self.client_secret = client_secret

    # ---- OAuth ----

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri(),
            "response_type": "code",
            "access_type": "offline",
            "prompt": "consent",
            "scope": " ".join(SCOPES),
            "state": state,
        }
        return f"{AUTH_URI}?{urlencode(params)}"

    def exchange_code(self, code: str) -> dict:
        data = {
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": redirect_uri(),
            "grant_type": "authorization_code",
        }
        r = requests.post(TOKEN_URI, data=data, timeout=25)
        r.raise_for_status()
        return r.json()

    def fetch_account_profile(self, access_token: str) -> dict:
        """Email plus quota (GB) of the Drive behind ``access_token``."""
        creds = Credentials(token=access_token)
        about = _drive_service(creds).about().get(fields="user(emailAddress), storageQuota").execute()
        quota = about.get("storageQuota") or {}
        email = (about.get("user") or {}).get("emailAddress")
        limit = quota.get("limit")
        if limit is None:
            logger.info("account %s has no storage limit", email)
            total_gb = UNLIMITED_TOTAL_GB
        else:
            total_gb = int(limit) / GB
        return {
            "email": email,
            "used_space_gb": int(quota.get("usage") or 0) / GB,
            "total_space_gb": total_gb,
        }

    def verify_id_token(self, credential: str) -> dict:
        """Claims of a Google Sign-In ID token issued for this client.

        Raises ``ValueError`` when the token is forged, expired or issued to
        a different client.
        """
        return id_token.verify_oauth2_token(credential, GoogleRequest(), self.client_id)

    def credentials_for(self, refresh_token: Optional[str]) -> Credentials:
        if not refresh_token:
            raise TransferError("Missing refresh token")
        creds = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=TOKEN_URI,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=SCOPES,
        )
        try:
            creds.refresh(GoogleRequest())
        except RefreshError as e:
            raise TransferError("No access token after refresh", e)
        return creds

    def revoke(self, token: Optional[str]):
        if not token:
            return
        try:
            requests.post(
                REVOKE_URI,
                params={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=15,
            )
        except requests.RequestException as e:
            logger.warning("Failed to revoke refresh token: %s", e)

    # ---- files ----

    async def open_upload(self, refresh_token: str, name: str, mime: Optional[str], size: int, user_id) -> UploadSession:
        creds = await run_in_threadpool(self.credentials_for, refresh_token)
        app_properties = {"uploaderId": str(user_id), "uploaderApp": APP_NAME}
        return await UploadSession.start(creds, name, mime, size, app_properties)

    def list_app_files(self, refresh_token: str, user_id, limit: int = 0) -> list:
        """Files this app uploaded for ``user_id`` on one account."""
        creds = self.credentials_for(refresh_token)
        q = (
            "trashed = false and appProperties has "
            f"{{ key = 'uploaderId' and value = '{_escape_query_value(str(user_id))}' }}"
        )
        resp = _drive_service(creds).files().list(
            q=q,
            fields=f"files({FILE_FIELDS.replace(' ', '')})",
            pageSize=limit if limit > 0 else 200,
            orderBy="modifiedTime desc",
        ).execute()
        return resp.get("files", [])

    def file_metadata(self, refresh_token: str, file_id: str) -> Optional[dict]:
        creds = self.credentials_for(refresh_token)
        try:
            return _drive_service(creds).files().get(fileId=file_id, fields=FILE_FIELDS).execute()
        except HttpError as e:
            if getattr(e.resp, "status", None) == 404:
                return None
            raise

    def open_media(self, refresh_token: str, file_id: str, byte_range: Optional[tuple] = None):
        """Streaming response for a file's bytes; caller must close it."""
        creds = self.credentials_for(refresh_token)
        http = AuthorizedSession(creds)
        headers = {}
        if byte_range is not None:
            headers["Range"] = f"bytes={byte_range[0]}-{byte_range[1]}"
        resp = http.get(f"{FILES_URI}/{file_id}", params={"alt": "media"}, headers=headers, stream=True, timeout=60)
        resp.raise_for_status()
        return resp

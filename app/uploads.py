import hashlib
import logging
import tempfile
import uuid
from collections import deque
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from app.config import MAX_UPLOAD_BYTES, RECENT_UPLOADS_LIMIT
from app.database import SessionLocal
from app.exceptions import AccountNotFoundError, FileTooLargeError, NoAccountsError, NoSpaceError
from app.models import DriveAccount, File, TransferJob
from app.selector import CapacityLedger, bytes_to_gb
from app.tracker import UploadTracker

logger = logging.getLogger(__name__)

SPOOL_MAX_MEMORY = 8 * 1024 * 1024
COPY_BUFFER = 1024 * 1024


def spool_and_hash(src, file_name: str, limit: int = MAX_UPLOAD_BYTES):
    """Copy an incoming upload into our own temp file and sha256 it.

    The request's own file is closed once the response goes out, but the
    transfer keeps reading long after that.
    """
    spool = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY)
    digest = hashlib.sha256()
    size = 0
    try:
        src.seek(0)
        while True:
            block = src.read(COPY_BUFFER)
            if not block:
                break
            size += len(block)
            if size > limit:
                raise FileTooLargeError(file_name, limit)
            digest.update(block)
            spool.write(block)
        spool.seek(0)
    except Exception:
        spool.close()
        raise
    return spool, size, digest.hexdigest()


class UploadService:
    """Places incoming files on accounts and hands them to the tracker."""

    def __init__(self, tracker: UploadTracker, ledger: CapacityLedger, drive, session_factory=SessionLocal):
        self.tracker = tracker
        self.ledger = ledger
        self.drive = drive
        self.session_factory = session_factory
        self.recent_uploads = deque(maxlen=RECENT_UPLOADS_LIMIT)

    async def start_batch(self, db, user, files, preferred_account_id=None) -> list:
        user_id = user.id
        self._load_accounts(db, user_id, preferred_account_id)

        tasks = []
        for upload in files:
            name = upload.filename or "untitled"
            spool, size, file_hash = await run_in_threadpool(spool_and_hash, upload.file, name)
            try:
                entry = self._start_one(db, user_id, preferred_account_id, spool, name, upload.content_type, size, file_hash)
            except Exception:
                spool.close()
                raise
            tasks.append(entry)
        return tasks

    def _load_accounts(self, db, user_id, preferred_account_id=None):
        # uploads finishing elsewhere commit new usage; never reserve against cached rows
        db.expire_all()
        accounts = db.query(DriveAccount).filter(DriveAccount.user_id == user_id).all()
        if not accounts:
            raise NoAccountsError()

        preferred = None
        if preferred_account_id:
            preferred = next((a for a in accounts if str(a.id) == str(preferred_account_id)), None)
            if preferred is None:
                raise AccountNotFoundError("Preferred account not found or not owned by user")
        return accounts, preferred

    def _start_one(self, db, user_id, preferred_account_id, spool, name, mime, size, file_hash) -> dict:
        existing = (
            db.query(File)
            .filter(File.user_id == user_id, File.file_hash == file_hash, File.size_bytes == size)
            .first()
        )
        if existing:
            job = TransferJob(
                upload_id=self._new_id(),
                user_id=user_id,
                file_name=name,
                status="succeeded",
                total_bytes=size,
                transferred_bytes=size,
                drive_file_id=existing.drive_file_id,
            )
            db.add(job)
            db.commit()
            spool.close()
            logger.info("skipping duplicate upload %s for user %s", name, user_id)
            return {"id": job.upload_id, "fileName": name, "duplicate": True, "existingFileId": existing.drive_file_id}

        accounts, preferred = self._load_accounts(db, user_id, preferred_account_id)
        reservation = self.ledger.reserve(accounts, size, preferred=preferred)
        if reservation is None:
            raise NoSpaceError(name, size)
        account = next(a for a in accounts if a.id == reservation.account_id)

        upload_id = self._new_id()
        try:
            db.add(TransferJob(
                upload_id=upload_id,
                user_id=user_id,
                file_name=name,
                status="pending",
                total_bytes=size,
                dest_account_id=account.id,
            ))
            db.commit()
        except Exception:
            db.rollback()
            self.ledger.release(reservation)
            raise

        hooks = _TransferHooks(
            service=self,
            user_id=user_id,
            account_id=account.id,
            account_email=account.email,
            refresh_token=account.refresh_token,
            mime=mime,
            file_hash=file_hash,
            reservation=reservation,
        )
        self.tracker.begin_upload(
            spool,
            name,
            size,
            account,
            hooks.open_sink,
            upload_id=upload_id,
            on_start=hooks.on_start,
            on_progress=hooks.on_progress,
            on_success=hooks.on_success,
            on_failure=hooks.on_failure,
        )
        logger.info("upload %s: %s (%d bytes) -> %s", upload_id, name, size, account.email)
        return {"id": upload_id, "fileName": name}

    def _new_id(self) -> str:
        return str(uuid.uuid4())

    def recent_for(self, user_id) -> list:
        return [u for u in self.recent_uploads if u["userId"] == user_id]


class _TransferHooks:
    """Database bookkeeping for one background transfer.

    Holds plain values rather than ORM rows; the request session that loaded
    the account is gone by the time these run.
    """

    def __init__(self, service, user_id, account_id, account_email, refresh_token, mime, file_hash, reservation):
        self.service = service
        self.user_id = user_id
        self.account_id = account_id
        self.account_email = account_email
        self.refresh_token = refresh_token
        self.mime = mime
        self.file_hash = file_hash
        self.reservation = reservation

    def _update_job(self, db, upload_id, **values):
        db.query(TransferJob).filter(TransferJob.upload_id == upload_id).update(values)

    async def open_sink(self, task):
        return await self.service.drive.open_upload(
            self.refresh_token, task.file_name, self.mime, task.size, self.user_id
        )

    def _write_job(self, upload_id, **values):
        db = self.service.session_factory()
        try:
            self._update_job(db, upload_id, **values)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.warning("could not update transfer %s with %s", upload_id, values, exc_info=True)
        finally:
            db.close()

    async def on_start(self, task):
        await run_in_threadpool(self._write_job, task.upload_id, status="in_progress")

    async def on_progress(self, task):
        # sent keeps moving; pin the value this event is about
        await run_in_threadpool(self._write_job, task.upload_id, transferred_bytes=task.sent)

    def on_success(self, task, result):
        result = result or {}
        drive_file_id = result.get("id")
        db = self.service.session_factory()
        try:
            db.query(DriveAccount).filter(DriveAccount.id == self.account_id).update(
                {DriveAccount.used_space_gb: DriveAccount.used_space_gb + bytes_to_gb(task.size)},
                synchronize_session=False,
            )
            self._update_job(
                db,
                task.upload_id,
                status="succeeded",
                transferred_bytes=task.size,
                drive_file_id=drive_file_id,
            )
            db.commit()

            if drive_file_id:
                try:
                    db.add(File(
                        drive_file_id=drive_file_id,
                        user_id=self.user_id,
                        drive_account_id=self.account_id,
                        name=task.file_name,
                        mime=result.get("mimeType") or self.mime,
                        size_bytes=task.size,
                        file_hash=self.file_hash,
                    ))
                    db.commit()
                except SQLAlchemyError as e:
                    db.rollback()
                    logger.warning("Failed to persist file metadata: %s", e)
        finally:
            db.close()
            self.service.ledger.release(self.reservation)

        self.service.recent_uploads.append({
            "id": drive_file_id,
            "name": task.file_name,
            "size": task.size,
            "accountEmail": self.account_email,
            "userId": self.user_id,
            "uploadedAt": datetime.utcnow().isoformat(),
        })
        logger.info(
            "Uploaded to Drive: id=%s name=%s account=%s user=%s",
            drive_file_id, task.file_name, self.account_email, self.user_id,
        )

    def on_failure(self, task, exc):
        db = self.service.session_factory()
        try:
            self._update_job(db, task.upload_id, status="failed", error_message=str(exc)[:500])
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.warning("could not record failure of %s", task.upload_id, exc_info=True)
        finally:
            db.close()
            self.service.ledger.release(self.reservation)

"""
Pytest configuration and fixtures for backend tests
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
for _key in ("CLOUDINARY_URL", "CLOUDINARY_API_KEY", "CLOUDINARY_API_SECRET", "CLOUDINARY_CLOUD_NAME"):
    os.environ.pop(_key, None)

import asyncio

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.auth import create_token, hash_password
from app.database import Base, get_db
from app.exceptions import TransferError
from app.main import create_app
from app.models import DriveAccount, File, User

GB = 1024 ** 3


class FakeSink:
    """Stands in for a resumable Drive upload."""

    def __init__(self, drive, name, mime, size, fail_after=None, delay=0.0):
        self.drive = drive
        self.name = name
        self.mime = mime
        self.size = size
        self.fail_after = fail_after
        self.delay = delay
        self.chunks = []
        self.aborted = False

    async def write(self, chunk):
        if self.fail_after is not None and len(self.chunks) >= self.fail_after:
            raise TransferError("Drive chunk rejected: 500")
        if self.delay:
            await asyncio.sleep(self.delay)
        self.chunks.append(bytes(chunk))

    async def close(self):
        self.drive.counter += 1
        file_id = f"drive-file-{self.drive.counter}"
        self.drive.uploaded[file_id] = {
            "id": file_id,
            "name": self.name,
            "mimeType": self.mime or "application/octet-stream",
            "size": str(sum(len(c) for c in self.chunks)),
            "modifiedTime": f"2026-01-01T00:00:{self.drive.counter:02d}Z",
            "data": b"".join(self.chunks),
        }
        return {k: v for k, v in self.drive.uploaded[file_id].items() if k != "data"}

    async def abort(self):
        self.aborted = True


class FakeMediaResponse:
    def __init__(self, data):
        self.content = data
        self.closed = False

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]

    def close(self):
        self.closed = True


class FakeDrive:
    """In-memory replacement for DriveGateway."""

    def __init__(self):
        self.counter = 0
        self.uploaded = {}
        self.sinks = []
        self.revoked = []
        self.fail_after = None
        self.delay = 0.0
        self.profile = {"email": "drive1@gmail.com", "used_space_gb": 1.5, "total_space_gb": 15.0}
        self.tokens = {"access_token": "access-1", "refresh_token": "refresh-1"}
        self.broken_accounts = set()
        self.id_tokens = {}

    def authorization_url(self, state):
        return f"https://accounts.example/auth?state={state}"

    def verify_id_token(self, credential):
        if credential not in self.id_tokens:
            raise ValueError("Token used too late or signature invalid")
        return dict(self.id_tokens[credential])

    def exchange_code(self, code):
        return dict(self.tokens)

    def fetch_account_profile(self, access_token):
        return dict(self.profile)

    def revoke(self, token):
        self.revoked.append(token)

    async def open_upload(self, refresh_token, name, mime, size, user_id):
        if not refresh_token or refresh_token == "bad":
            raise TransferError("No access token after refresh")
        sink = FakeSink(self, name, mime, size, fail_after=self.fail_after, delay=self.delay)
        self.sinks.append(sink)
        return sink

    def _check(self, refresh_token):
        if refresh_token in self.broken_accounts:
            raise TransferError("No access token after refresh")

    def list_app_files(self, refresh_token, user_id, limit=0):
        self._check(refresh_token)
        return [{k: v for k, v in f.items() if k != "data"} for f in self.uploaded.values()]

    def file_metadata(self, refresh_token, file_id):
        self._check(refresh_token)
        f = self.uploaded.get(file_id)
        if f is None:
            return None
        return {k: v for k, v in f.items() if k != "data"}

    def open_media(self, refresh_token, file_id, byte_range=None):
        self._check(refresh_token)
        data = self.uploaded[file_id]["data"]
        if byte_range is not None:
            data = data[byte_range[0]:byte_range[1] + 1]
        return FakeMediaResponse(data)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def fake_drive():
    return FakeDrive()


@pytest.fixture
def app(session_factory, fake_drive):
    app = create_app(drive=fake_drive, session_factory=session_factory, chunk_size=64 * 1024)

    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    return app


@pytest.fixture
def client(app):
    # the context manager keeps one event loop alive, so background
    # transfers started by a request keep running between requests
    with TestClient(app) as c:
        yield c


@pytest.fixture
def wait_uploads(client, app):
    def _wait():
        client.portal.call(app.state.tracker.join)
    return _wait


@pytest.fixture
def test_user(db_session):
    user = User(name="Test User", email="test@example.com", password=hash_password("test_password"))
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def auth_headers(test_user):
    return {"Authorization": f"Bearer {create_token({'sub': test_user.email, 'id': test_user.id})}"}


@pytest.fixture
def make_account(db_session, test_user):
    def _make(email, used, total, refresh_token="refresh-token", user=None):
        account = DriveAccount(
            user_id=(user or test_user).id,
            email=email,
            refresh_token=refresh_token,
            used_space_gb=used,
            total_space_gb=total,
        )
        db_session.add(account)
        db_session.commit()
        db_session.refresh(account)
        return account
    return _make


@pytest.fixture
def stored_file(db_session, test_user, fake_drive, make_account):
    """A file that is both on the fake Drive and in the files table."""
    account = make_account("store@gmail.com", 1.0, 15.0)
    data = bytes(range(256)) * 4
    fake_drive.uploaded["drive-abc"] = {
        "id": "drive-abc",
        "name": "photo.png",
        "mimeType": "image/png",
        "size": str(len(data)),
        "modifiedTime": "2026-01-01T00:00:00Z",
        "data": data,
    }
    rec = File(
        drive_file_id="drive-abc",
        user_id=test_user.id,
        drive_account_id=account.id,
        name="photo.png",
        mime="image/png",
        size_bytes=len(data),
        file_hash="abc",
    )
    db_session.add(rec)
    db_session.commit()
    return rec, data

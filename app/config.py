import os
from dotenv import load_dotenv

load_dotenv()  # load .env before anything reads the environment

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./drivemerge.db")

SECRET_KEY = os.getenv("SECRET_KEY", "SECRET123")
ALGORITHM = "HS256"
ACCESS_TOKEN_HOURS = int(os.getenv("ACCESS_TOKEN_HOURS", "2"))
REFRESH_TOKEN_DAYS = int(os.getenv("REFRESH_TOKEN_DAYS", "7"))
PREVIEW_TOKEN_SECONDS = int(os.getenv("PREVIEW_TOKEN_SECONDS", "60"))
OAUTH_STATE_MINUTES = int(os.getenv("OAUTH_STATE_MINUTES", "10"))

GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET", "")
BACKEND_URL = os.getenv("BACKEND_URL", "http://localhost:8000")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

# comma-separated, defaults to localhost dev origins
ALLOW_ORIGINS = [
    o.strip()
    for o in os.getenv("ALLOW_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if o.strip()
]

MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES") or 20 * 1024 ** 3)  # 20 GB
UPLOAD_CHUNK_BYTES = int(os.getenv("UPLOAD_CHUNK_BYTES") or 64 * 1024)
RECENT_UPLOADS_LIMIT = 200

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def cloudinary_configured() -> bool:
    return bool(
        os.getenv("CLOUDINARY_URL")
        or (
            os.getenv("CLOUDINARY_API_KEY")
            and os.getenv("CLOUDINARY_API_SECRET")
            and os.getenv("CLOUDINARY_CLOUD_NAME")
        )
    )

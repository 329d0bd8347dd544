from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import ALLOW_ORIGINS, UPLOAD_CHUNK_BYTES
from app.database import Base, SessionLocal, engine
from app.gdrive import DriveGateway
from app.logging_config import configure_logging
from app.routes import auth_routes, drive_routes, files_routes
from app.selector import CapacityLedger
from app.tracker import UploadTracker
from app.uploads import UploadService


def create_app(drive=None, session_factory=SessionLocal, chunk_size: int = UPLOAD_CHUNK_BYTES) -> FastAPI:
    configure_logging()
    app = FastAPI(title="DriveMerge")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.drive = drive if drive is not None else DriveGateway()
    app.state.tracker = UploadTracker(chunk_size=chunk_size)
    app.state.ledger = CapacityLedger()
    app.state.uploads = UploadService(app.state.tracker, app.state.ledger, app.state.drive, session_factory)

    app.include_router(auth_routes.router)
    app.include_router(drive_routes.router)
    app.include_router(files_routes.router)

    @app.get("/")
    def root():
        return "DriveMerge server is running"

    @app.get("/ping")
    def ping():
        return {"status": "backend ok"}

    return app


Base.metadata.create_all(bind=engine)
app = create_app()

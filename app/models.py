from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from app.database import Base


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=True)
    email = Column(String, unique=True)
    password = Column(String, nullable=True)  # None for Google sign-in accounts
    google_id = Column(String, nullable=True)
    profile_picture = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class DriveAccount(Base):
    __tablename__ = "drive_accounts"
    __table_args__ = (UniqueConstraint("user_id", "email", name="uq_drive_account_user_email"),)
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    email = Column(String, nullable=False)
    refresh_token = Column(String, nullable=True)
    access_token = Column(String, nullable=True)
    used_space_gb = Column(Float, default=0.0)
    total_space_gb = Column(Float, default=15.0)
    created_at = Column(DateTime, default=datetime.utcnow)

    @property
    def free_space_gb(self) -> float:
        return (self.total_space_gb or 0.0) - (self.used_space_gb or 0.0)


class File(Base):
    __tablename__ = "files"
    id = Column(Integer, primary_key=True)
    drive_file_id = Column(String, unique=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    drive_account_id = Column(Integer, ForeignKey("drive_accounts.id", ondelete="SET NULL"), nullable=True)
    name = Column(String)
    mime = Column(String, nullable=True)
    size_bytes = Column(BigInteger, default=0)
    file_hash = Column(String, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class TransferJob(Base):
    __tablename__ = "transfer_jobs"
    id = Column(Integer, primary_key=True)
    upload_id = Column(String, unique=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    file_name = Column(String)
    status = Column(String, default="pending")  # pending | in_progress | succeeded | failed
    total_bytes = Column(BigInteger, nullable=True)
    transferred_bytes = Column(BigInteger, nullable=True)
    dest_account_id = Column(Integer, nullable=True)
    drive_file_id = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

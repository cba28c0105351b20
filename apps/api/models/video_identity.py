"""Canonical downloaded-video record shared across content items."""

from sqlalchemy import Column, String, DateTime, Integer, JSON, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


DOWNLOAD_STATUSES = ("pending", "downloading", "uploading", "completed", "failed")


class VideoIdentity(Base):
    """One row per external YouTube video id."""

    __tablename__ = "video_identities"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    external_id = Column(String, nullable=False, unique=True, index=True)
    source_url = Column(String, nullable=False, unique=True)
    download_status = Column(String, nullable=False, default="pending", index=True)
    storage_url = Column(String, nullable=True)
    storage_key = Column(String, nullable=True)
    download_progress = Column(Integer, nullable=False, default=0)
    download_error = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes.
    video_metadata = Column("metadata", JSON, nullable=True)
    downloaded_format = Column(JSON, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)
    last_accessed_at = Column(DateTime(timezone=True), nullable=True)
    download_started_at = Column(DateTime(timezone=True), nullable=True)
    download_completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    contents = relationship("Content", back_populates="video_identity")

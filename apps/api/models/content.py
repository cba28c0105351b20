"""VR content item with its embedded external media reference."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Content(Base):
    """Content item. Only the media-reference columns are used by the pipeline."""

    __tablename__ = "contents"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String, nullable=True)
    source_url = Column(String, nullable=True)
    start_time = Column(Integer, nullable=True)
    end_time = Column(Integer, nullable=True)
    download_status = Column(String, nullable=True, index=True)
    downloaded_url = Column(String, nullable=True)
    download_progress = Column(Integer, nullable=False, default=0)
    download_error = Column(Text, nullable=True)
    video_identity_id = Column(
        String,
        ForeignKey("video_identities.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    video_identity = relationship("VideoIdentity", back_populates="contents")

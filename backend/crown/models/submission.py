"""Contest video submissions and their re-hosted media."""
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text
from sqlalchemy.orm import relationship

from crown.db.database import Base


class VideoSubmission(Base):
    """A video submitted by a user into a contest."""

    __tablename__ = "video_submissions"

    id = Column(Integer, primary_key=True, index=True)
    contest_id = Column(String(255), nullable=False, index=True)
    user_id = Column(String(255), nullable=False, index=True)

    source_url = Column(Text, nullable=False)
    tiktok_video_id = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    media = relationship(
        "StoredMedia",
        back_populates="submission",
        cascade="all, delete-orphan",
        uselist=False,
    )

    def __repr__(self):
        return f"<VideoSubmission(id={self.id}, contest_id='{self.contest_id}', user_id='{self.user_id}')>"

    def to_dict(self):
        return {
            "id": self.id,
            "contest_id": self.contest_id,
            "user_id": self.user_id,
            "source_url": self.source_url,
            "tiktok_video_id": self.tiktok_video_id,
            "description": self.description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class StoredMedia(Base):
    """A durable, platform-owned copy of a submitted video."""

    __tablename__ = "stored_media"

    id = Column(Integer, primary_key=True, index=True)
    submission_id = Column(
        Integer,
        ForeignKey("video_submissions.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    object_key = Column(String(1024), nullable=False, unique=True)
    public_url = Column(Text, nullable=False)
    size_bytes = Column(Integer, nullable=False)
    content_type = Column(String(255), nullable=False, default="video/mp4")

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    submission = relationship("VideoSubmission", back_populates="media")

    def __repr__(self):
        return f"<StoredMedia(id={self.id}, object_key='{self.object_key}')>"

    def to_dict(self):
        return {
            "id": self.id,
            "submission_id": self.submission_id,
            "object_key": self.object_key,
            "public_url": self.public_url,
            "size_bytes": self.size_bytes,
            "content_type": self.content_type,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

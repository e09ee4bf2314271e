"""SQLAlchemy models for Potluck."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, declared_attr, deferred, relationship

from .utils import utcnow

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class Event(Base):
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    date = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    rsvps = relationship(
        "RSVP",
        back_populates="event",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="RSVP.created_at",
    )


class RSVP(Base):
    __tablename__ = "rsvps"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(String(120), nullable=False)
    food = Column(Text, nullable=False, default="")
    content = Column(Text, nullable=False, default="")
    attendance = Column(String(16), nullable=False, default="yes")
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="rsvps")


class _Attachment:
    """Columns shared by uploaded file collections."""

    id = Column(String(36), primary_key=True, default=_uuid)
    file_name = Column(String(255), nullable=False)
    file_url = Column(String(512), nullable=True)
    content_type = Column(String(128), nullable=True)
    file_size = Column(Integer, nullable=True)
    upload_date = Column(DateTime, default=_now, nullable=False)

    @declared_attr
    def file_data(cls):
        return deferred(Column(LargeBinary, nullable=True))

    @property
    def stored_on_disk(self) -> bool:
        return bool(self.file_url)


class Recipe(_Attachment, Base):
    __tablename__ = "recipes"

    name = Column(String(255), nullable=False)

    @property
    def display_name(self) -> str:
        return self.name


class SharedContent(_Attachment, Base):
    __tablename__ = "shared_content"

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    @property
    def display_name(self) -> str:
        return self.title

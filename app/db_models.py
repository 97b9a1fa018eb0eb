"""SQLAlchemy ORM models backing the persistent state."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base
from .utils import new_identifier, utcnow


class User(Base):
    """An opaque per-device identity with a display name."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    username: Mapped[str] = mapped_column(String(120))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )


class SessionRecord(Base):
    """A collaborative matching session and its shared configuration."""

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=new_identifier
    )
    owner_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    status: Mapped[str] = mapped_column(String(16), default="waiting")
    join_code: Mapped[str] = mapped_column(String(6), unique=True)
    platform_selections: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, default=list
    )
    platform_ids: Mapped[list[int]] = mapped_column(JSON, default=list)
    genre_selections: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, default=list
    )
    genre_ids: Mapped[list[int]] = mapped_column(JSON, default=list)
    movies_fetched: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    matches: Mapped[list[int]] = mapped_column(JSON, default=list)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )


class Participant(Base):
    """Membership of a user in a session."""

    __tablename__ = "session_users"
    __table_args__ = (
        UniqueConstraint("session_id", "user_id", name="uq_session_user"),
    )

    id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=new_identifier
    )
    session_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("sessions.id", ondelete="CASCADE")
    )
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id", ondelete="CASCADE")
    )
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class SessionMovie(Base):
    """A candidate movie materialized for a session."""

    __tablename__ = "session_movies"
    __table_args__ = (
        UniqueConstraint("session_id", "movie_id", name="uq_session_movie"),
        Index("ix_session_movies_position", "session_id", "position"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("sessions.id", ondelete="CASCADE")
    )
    movie_id: Mapped[int] = mapped_column(Integer)
    title: Mapped[str] = mapped_column(String(255))
    poster_path: Mapped[str | None] = mapped_column(String(255), nullable=True)
    overview: Mapped[str | None] = mapped_column(Text, nullable=True)
    release_date: Mapped[str | None] = mapped_column(String(10), nullable=True)
    genres: Mapped[list[int]] = mapped_column(JSON, default=list)
    rating: Mapped[float] = mapped_column(Float, default=0.0)
    position: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Response(Base):
    """A single like/dislike vote by a user on a session movie."""

    __tablename__ = "responses"
    __table_args__ = (
        UniqueConstraint(
            "session_id", "user_id", "movie_id", name="uq_response_vote"
        ),
        Index("ix_responses_session_movie", "session_id", "movie_id"),
    )

    id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=new_identifier
    )
    session_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("sessions.id", ondelete="CASCADE")
    )
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id", ondelete="CASCADE")
    )
    movie_id: Mapped[int] = mapped_column(Integer)
    liked: Mapped[bool] = mapped_column(Boolean, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

"""Pydantic models describing session payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

SessionStatus = Literal["waiting", "configuring", "matching", "completed"]
SelectionKind = Literal["provider", "genre"]

POSTER_BASE_URL = "https://image.tmdb.org/t/p/w500"


class UserProfile(BaseModel):
    """Identity issued to a device."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str


class Selection(BaseModel):
    """One entry of a collaborative provider or genre selection set."""

    model_config = ConfigDict(populate_by_name=True)

    item_id: int = Field(
        validation_alias=AliasChoices("item_id", "provider_id", "genre_id")
    )
    selected_by: str | None = None
    username: str | None = None
    selected_at: datetime | None = None


class SessionView(BaseModel):
    """Public snapshot of a session row."""

    id: str
    owner_id: str
    status: SessionStatus
    join_code: str
    platform_selections: list[dict[str, Any]] = Field(default_factory=list)
    platform_ids: list[int] = Field(default_factory=list)
    genre_selections: list[dict[str, Any]] = Field(default_factory=list)
    genre_ids: list[int] = Field(default_factory=list)
    movies_fetched: bool = False
    matches: list[int] = Field(default_factory=list)
    version: int = 0
    created_at: datetime | None = None

    @classmethod
    def from_record(cls, record: Any) -> "SessionView":
        return cls(
            id=record.id,
            owner_id=record.owner_id,
            status=record.status,
            join_code=record.join_code,
            platform_selections=list(record.platform_selections or []),
            platform_ids=list(record.platform_ids or []),
            genre_selections=list(record.genre_selections or []),
            genre_ids=list(record.genre_ids or []),
            movies_fetched=bool(record.movies_fetched),
            matches=list(record.matches or []),
            version=record.version or 0,
            created_at=record.created_at,
        )

    def is_owner(self, user_id: str | None) -> bool:
        return bool(user_id) and user_id == self.owner_id


class ParticipantView(BaseModel):
    """Roster entry joined with the participant's display name."""

    id: str
    session_id: str
    user_id: str
    username: str | None = None
    joined_at: datetime
    is_owner: bool = False


class CandidateMovie(BaseModel):
    """A movie from a session's materialized candidate list."""

    model_config = ConfigDict(from_attributes=True)

    movie_id: int
    title: str
    poster_path: str | None = None
    overview: str | None = None
    release_date: str | None = None
    genres: list[int] = Field(default_factory=list)
    rating: float = 0.0
    position: int = 0

    @property
    def poster_url(self) -> str | None:
        if not self.poster_path:
            return None
        if self.poster_path.startswith("http"):
            return self.poster_path
        return f"{POSTER_BASE_URL}{self.poster_path}"


class CandidateList(BaseModel):
    """Result of materializing a session's candidate movies."""

    session_id: str
    movies: list[CandidateMovie] = Field(default_factory=list)
    fetched: bool = False


class FeedView(BaseModel):
    """The remaining unvoted movies for one user."""

    session_id: str
    user_id: str
    movies: list[CandidateMovie] = Field(default_factory=list)
    ready: bool = False
    exhausted: bool = False


class VoteOutcome(BaseModel):
    """Result of recording a vote."""

    advanced: bool = True
    matched: bool = False
    recorded: bool = True
    likes: int = 0
    responses: int = 0


class ChangeEvent(BaseModel):
    """Row-level change pushed to realtime subscribers."""

    table: Literal["sessions", "session_users"]
    event_type: Literal["INSERT", "UPDATE", "DELETE"]
    key: str
    row: dict[str, Any] | None = None


class CatalogProvider(BaseModel):
    """A streaming provider offered by the movie catalog."""

    provider_id: int
    provider_name: str
    logo_path: str | None = None
    display_priority: int | None = None


class CatalogGenre(BaseModel):
    id: int
    name: str


class CatalogMovie(BaseModel):
    """A movie entry as returned by the catalog discover endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    id: int
    title: str = Field(
        default="Unknown Title",
        validation_alias=AliasChoices("title", "name", "original_title"),
    )
    overview: str | None = None
    poster_path: str | None = None
    release_date: str | None = None
    genre_ids: list[int] = Field(default_factory=list)
    vote_average: float = 0.0


class CatalogMovieDetail(CatalogMovie):
    """Full movie metadata including provider availability."""

    runtime: int | None = None
    tagline: str | None = None
    genres: list[CatalogGenre] = Field(default_factory=list)
    providers: dict[str, dict[str, list[CatalogProvider]]] = Field(
        default_factory=dict
    )


class CreateUserRequest(BaseModel):
    username: str | None = Field(default=None, max_length=120)
    user_id: str | None = Field(default=None, max_length=64)


class UpdateUserRequest(BaseModel):
    username: str = Field(min_length=1, max_length=120)


class CreateSessionRequest(BaseModel):
    owner_id: str = Field(min_length=1)


class JoinSessionRequest(BaseModel):
    join_code: str
    user_id: str = Field(min_length=1)


class TransitionRequest(BaseModel):
    user_id: str = Field(min_length=1)
    status: SessionStatus


class ToggleSelectionRequest(BaseModel):
    user_id: str = Field(min_length=1)
    item_id: int
    username: str | None = None


class MaterializeRequest(BaseModel):
    user_id: str = Field(min_length=1)


class VoteRequest(BaseModel):
    user_id: str = Field(min_length=1)
    movie_id: int
    liked: bool

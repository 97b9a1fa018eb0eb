"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Iterable, Literal

from pydantic import AliasChoices, Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_MONETIZATION_TYPES: tuple[str, ...] = ("flatrate", "free", "ads")
KNOWN_MONETIZATION_TYPES = frozenset(
    {"flatrate", "free", "ads", "rent", "buy"}
)


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="MovieMatch", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    tmdb_api_key: str | None = Field(
        default=None,
        alias="TMDB_API_KEY",
        validation_alias=AliasChoices("TMDB_API_KEY", "TMDB_READ_TOKEN"),
    )
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_region: str = Field(default="DK", alias="TMDB_REGION", min_length=2)
    tmdb_language: str = Field(default="da-DK", alias="TMDB_LANGUAGE")
    tmdb_monetization_types: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_MONETIZATION_TYPES, alias="TMDB_MONETIZATION_TYPES"
    )

    candidate_page_count: int = Field(
        default=4, alias="CANDIDATE_PAGE_COUNT", ge=1, le=20
    )
    readiness_poll_seconds: float = Field(
        default=2.0, alias="READINESS_POLL_SECONDS", gt=0
    )
    readiness_timeout_seconds: float = Field(
        default=120.0, alias="READINESS_TIMEOUT_SECONDS", gt=0
    )
    join_code_max_attempts: int = Field(
        default=20, alias="JOIN_CODE_MAX_ATTEMPTS", ge=1, le=1_000
    )
    cas_retry_limit: int = Field(default=5, alias="CAS_RETRY_LIMIT", ge=1, le=50)

    database_url: str = Field(
        default="sqlite+aiosqlite:///./moviematch.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("tmdb_region", mode="after")
    @classmethod
    def _upper_region(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("tmdb_monetization_types", mode="before")
    @classmethod
    def _parse_monetization_types(cls, value: object) -> tuple[str, ...]:
        """Normalise monetization filters from comma or pipe separated values."""

        if value is None:
            return DEFAULT_MONETIZATION_TYPES
        if isinstance(value, str):
            raw_values = [
                part.strip() for part in value.replace("|", ",").split(",")
            ]
        elif isinstance(value, Iterable):
            raw_values = [str(part).strip() for part in value]
        else:
            raise TypeError(
                "TMDB_MONETIZATION_TYPES must be a string or iterable of strings"
            )

        cleaned: list[str] = []
        for entry in raw_values:
            entry = entry.lower()
            if not entry:
                continue
            if entry not in KNOWN_MONETIZATION_TYPES:
                raise ValueError("Unknown monetization types configured")
            if entry not in cleaned:
                cleaned.append(entry)
        if not cleaned:
            return DEFAULT_MONETIZATION_TYPES
        return tuple(cleaned)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()

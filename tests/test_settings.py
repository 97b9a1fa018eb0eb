"""Configuration settings behaviour tests."""

from __future__ import annotations

import pytest

from app.config import DEFAULT_MONETIZATION_TYPES, Settings


def test_matching_defaults() -> None:
    """Candidate fetching and readiness polling defaults match the service contract."""

    settings = Settings(_env_file=None)

    assert settings.candidate_page_count == 4
    assert settings.readiness_poll_seconds == 2.0
    assert settings.tmdb_region == "DK"
    assert settings.tmdb_language == "da-DK"
    assert settings.tmdb_monetization_types == DEFAULT_MONETIZATION_TYPES
    assert settings.database_url.startswith("sqlite+aiosqlite://")


def test_monetization_types_accept_pipe_and_comma_values() -> None:
    """Monetization filters should be parsed case-insensitively without repeats."""

    settings = Settings(_env_file=None, TMDB_MONETIZATION_TYPES="Flatrate|rent, flatrate")

    assert settings.tmdb_monetization_types == ("flatrate", "rent")


def test_monetization_types_blank_defaults() -> None:
    settings = Settings(_env_file=None, TMDB_MONETIZATION_TYPES="")

    assert settings.tmdb_monetization_types == DEFAULT_MONETIZATION_TYPES


def test_monetization_types_invalid_raises() -> None:
    with pytest.raises(ValueError, match="Unknown monetization types configured"):
        Settings(_env_file=None, TMDB_MONETIZATION_TYPES="subscription")


def test_region_is_upper_cased() -> None:
    settings = Settings(_env_file=None, TMDB_REGION="se")

    assert settings.tmdb_region == "SE"


def test_tmdb_key_accepts_read_token_alias() -> None:
    settings = Settings(_env_file=None, TMDB_READ_TOKEN="token")

    assert settings.tmdb_api_key == "token"


def test_candidate_page_count_bounds() -> None:
    with pytest.raises(ValueError):
        Settings(_env_file=None, CANDIDATE_PAGE_COUNT=0)

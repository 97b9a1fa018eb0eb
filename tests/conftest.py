"""Pytest configuration and test helpers."""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

import pytest


# Ensure the application package is importable when running tests without an
# editable install. This mirrors the expected runtime layout where ``app`` sits
# at the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.config import Settings  # noqa: E402
from app.database import Database  # noqa: E402
from app.errors import UpstreamError  # noqa: E402
from app.main import MatchServices, build_services  # noqa: E402
from app.models import CatalogMovie  # noqa: E402
from app.services.tmdb import DiscoverPage  # noqa: E402


def make_movie(movie_id: int, **overrides: Any) -> dict[str, Any]:
    """Return a TMDB discover entry for ``movie_id``."""

    payload: dict[str, Any] = {
        "id": movie_id,
        "title": f"Movie {movie_id}",
        "overview": f"Overview for {movie_id}",
        "poster_path": f"/poster-{movie_id}.jpg",
        "release_date": "2020-01-01",
        "genre_ids": [28],
        "vote_average": 7.5,
    }
    payload.update(overrides)
    return payload


class FakeCatalog:
    """Catalog gateway stub serving canned discover pages."""

    def __init__(
        self,
        pages: dict[int, list[dict[str, Any]]] | None = None,
        *,
        fail_on_page: int | None = None,
    ):
        self.pages = pages or {}
        self.fail_on_page = fail_on_page
        self.calls: list[dict[str, Any]] = []

    async def discover(
        self, *, provider_ids: list[int], genre_ids: list[int], page: int = 1
    ) -> DiscoverPage:
        self.calls.append(
            {"provider_ids": list(provider_ids), "genre_ids": list(genre_ids), "page": page}
        )
        if self.fail_on_page is not None and page == self.fail_on_page:
            raise UpstreamError("catalog unavailable", status_code=503)
        results = [CatalogMovie.model_validate(entry) for entry in self.pages.get(page, [])]
        return DiscoverPage(page=page, results=results, total_pages=len(self.pages))


def paged_catalog(per_page: int = 3, page_count: int = 4) -> FakeCatalog:
    """Return a catalog whose pages hold consecutive movie ids starting at 100."""

    pages = {
        page: [
            make_movie(100 + (page - 1) * per_page + index) for index in range(per_page)
        ]
        for page in range(1, page_count + 1)
    }
    return FakeCatalog(pages)


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


@pytest.fixture
def test_settings() -> Settings:
    """Return settings with defaults suitable for tests."""

    return Settings(  # type: ignore[call-arg]
        _env_file=None,
        TMDB_API_KEY="test-token",
        READINESS_POLL_SECONDS=0.05,
        READINESS_TIMEOUT_SECONDS=2,
    )


@pytest.fixture
def service_factory(tmp_path, test_settings):
    """Return an async context manager yielding services on a fresh database."""

    @asynccontextmanager
    async def factory(catalog: Any = None) -> AsyncIterator[MatchServices]:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'moviematch.db'}")
        await database.create_all()
        try:
            yield build_services(test_settings, database.session_factory, catalog)
        finally:
            await database.dispose()

    return factory


async def start_matching_session(
    services: MatchServices,
    *,
    owner_id: str = "host",
    guests: tuple[str, ...] = ("guest",),
    provider_ids: tuple[int, ...] = (8,),
    genre_ids: tuple[int, ...] = (28,),
):
    """Create a session, enrol guests, pick filters and start matching."""

    session = await services.lifecycle.create_session(owner_id)
    for guest in guests:
        await services.lifecycle.join_session(session.join_code, guest)
    await services.lifecycle.start_configuring(session.id, owner_id)
    for provider_id in provider_ids:
        await services.configuration.toggle_selection(
            session.id, "provider", provider_id, owner_id
        )
    for genre_id in genre_ids:
        await services.configuration.toggle_selection(
            session.id, "genre", genre_id, owner_id
        )
    return await services.lifecycle.start_matching(session.id, owner_id)

"""One-time materialization of a session's candidate movie list."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Protocol

from ..config import Settings
from ..errors import InvalidTransitionError, PermissionDeniedError, UpstreamError
from ..models import CandidateList, CandidateMovie, SessionView
from .lifecycle import SessionLifecycle
from .session_store import SessionStore
from .tmdb import DiscoverPage

logger = logging.getLogger(__name__)


class CatalogGateway(Protocol):
    async def discover(
        self, *, provider_ids: list[int], genre_ids: list[int], page: int = 1
    ) -> DiscoverPage: ...


class MovieListMaterializer:
    """Fetches and persists each session's candidate list exactly once.

    Whether a list exists is decided by the presence of stored candidate
    rows, so retries and reloads short-circuit. Concurrent first-time calls
    for the same session inside this process are serialized by a
    per-session lock.
    """

    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        lifecycle: SessionLifecycle,
        catalog: CatalogGateway | None,
    ):
        self._settings = settings
        self._store = store
        self._lifecycle = lifecycle
        self._catalog = catalog
        self._locks: dict[str, asyncio.Lock] = {}

    async def materialize(self, session_id: str, user_id: str) -> CandidateList:
        """Ensure the candidate list exists (owner only) and return it."""

        session = await self._lifecycle.get_session(session_id)
        if not session.is_owner(user_id):
            raise PermissionDeniedError("Only the host can load the movie list")
        if session.status != "matching":
            raise InvalidTransitionError(
                session.status,
                "matching",
                "Movies can only be loaded once matching has started",
            )

        lock = self._locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            if await self._store.has_movies(session_id):
                logger.debug(
                    "Session %s already has a candidate list, skipping fetch", session_id
                )
            else:
                await self._fetch_and_store(session)
            if await self._store.mark_movies_fetched(session_id):
                logger.info("Session %s candidate list is ready", session_id)
            if self._locks.get(session_id) is lock:
                del self._locks[session_id]

        movies = await self._store.list_movies(session_id)
        return CandidateList(session_id=session_id, movies=movies, fetched=True)

    async def _fetch_and_store(self, session: SessionView) -> None:
        if self._catalog is None:
            raise UpstreamError("The movie catalog is not configured")
        provider_ids = list(session.platform_ids)
        genre_ids = list(session.genre_ids)
        logger.info(
            "Fetching candidates for session %s (providers=%s, genres=%s)",
            session.id,
            provider_ids,
            genre_ids,
        )
        position = 0
        stored = 0
        seen: set[int] = set()
        for page in range(1, self._settings.candidate_page_count + 1):
            try:
                result = await self._catalog.discover(
                    provider_ids=provider_ids, genre_ids=genre_ids, page=page
                )
            except UpstreamError:
                logger.warning(
                    "Candidate fetch for session %s failed on page %s after %s movies",
                    session.id,
                    page,
                    stored,
                )
                raise

            batch: list[CandidateMovie] = []
            for item in result.results:
                if item.id in seen:
                    # Repeats across pages keep their first-seen position.
                    continue
                seen.add(item.id)
                batch.append(
                    CandidateMovie(
                        movie_id=item.id,
                        title=item.title or "Unknown Title",
                        poster_path=item.poster_path or None,
                        overview=item.overview or None,
                        release_date=(item.release_date or "").strip() or None,
                        genres=list(item.genre_ids),
                        rating=item.vote_average or 0.0,
                        position=position,
                    )
                )
                position += 1
            # Persist page by page so a later failure keeps what was fetched.
            stored += await self._store.upsert_movies(session.id, batch)
        logger.info("Stored %s candidate movies for session %s", stored, session.id)

    async def wait_until_ready(
        self,
        session_id: str,
        *,
        poll_interval: float | None = None,
        timeout: float | None = None,
    ) -> bool:
        """Block until the host has materialized the list.

        Change notifications wake the waiter immediately; the store is also
        re-read every ``poll_interval`` seconds in case an event is missed.
        Returns ``False`` if ``timeout`` elapses first.
        """

        interval = poll_interval or self._settings.readiness_poll_seconds
        limit = timeout if timeout is not None else self._settings.readiness_timeout_seconds
        deadline = time.monotonic() + limit
        async with self._store.notifier.subscribe(session_id) as events:
            while True:
                session = await self._lifecycle.get_session(session_id)
                if session.movies_fetched:
                    return True
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.info("Gave up waiting for session %s movies", session_id)
                    return False
                logger.debug("Waiting for host to fetch movies for %s", session_id)
                await events.get(timeout=min(interval, remaining))

"""Per-user view of a session's candidate list."""

from __future__ import annotations

from typing import Iterable, Sequence

from ..models import CandidateMovie, FeedView
from .lifecycle import SessionLifecycle
from .session_store import SessionStore


def filter_voted(
    movies: Sequence[CandidateMovie], voted_ids: Iterable[int]
) -> list[CandidateMovie]:
    """Return ``movies`` in position order without the already voted ones."""

    excluded = set(voted_ids)
    ordered = sorted(movies, key=lambda movie: movie.position)
    return [movie for movie in ordered if movie.movie_id not in excluded]


class FeedService:
    def __init__(self, store: SessionStore, lifecycle: SessionLifecycle):
        self._store = store
        self._lifecycle = lifecycle

    async def feed(self, session_id: str, user_id: str) -> FeedView:
        """Return the movies ``user_id`` has not voted on yet.

        A user whose feed is empty after the list was materialized has
        finished the session.
        """

        session = await self._lifecycle.require_participant(session_id, user_id)
        if not session.movies_fetched:
            return FeedView(session_id=session_id, user_id=user_id, ready=False)
        movies = await self._store.list_movies(session_id)
        voted = await self._store.voted_movie_ids(session_id, user_id)
        remaining = filter_voted(movies, voted)
        return FeedView(
            session_id=session_id,
            user_id=user_id,
            movies=remaining,
            ready=True,
            exhausted=not remaining,
        )

"""Vote recording and consensus match detection."""

from __future__ import annotations

import logging

from ..config import Settings
from ..errors import ConflictError, InvalidTransitionError, NotFoundError, RaceLossError
from ..models import CandidateMovie, VoteOutcome
from .lifecycle import SessionLifecycle
from .session_store import SessionStore

logger = logging.getLogger(__name__)

MIN_MATCH_LIKES = 2


def is_match(likes: int, responses: int) -> bool:
    """A movie matches when at least two users liked it and nobody who voted
    on it disliked it.

    ``responses`` counts users who have reached and voted on the movie, not
    the whole roster, so late or departed participants cannot hold a match
    back.
    """

    return likes >= MIN_MATCH_LIKES and likes == responses


def append_if_absent(matches: list[int], movie_id: int) -> list[int]:
    if movie_id in matches:
        return list(matches)
    return [*matches, movie_id]


class VoteEngine:
    """Records likes/dislikes and appends consensus picks to ``matches``."""

    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        lifecycle: SessionLifecycle,
    ):
        self._settings = settings
        self._store = store
        self._lifecycle = lifecycle

    async def vote(
        self, session_id: str, user_id: str, movie_id: int, liked: bool
    ) -> VoteOutcome:
        """Record ``user_id``'s vote on ``movie_id`` and re-check for a match.

        Voting twice on the same movie is a no-op; the caller still advances
        past it.
        """

        session = await self._lifecycle.require_participant(session_id, user_id)
        if session.status != "matching":
            raise InvalidTransitionError(
                session.status,
                session.status,
                "Votes are only accepted while the session is matching",
            )
        if await self._store.get_movie(session_id, movie_id) is None:
            raise NotFoundError(f"Movie {movie_id} is not part of session {session_id}")

        recorded = True
        if await self._store.has_response(session_id, user_id, movie_id):
            recorded = False
        else:
            try:
                await self._store.insert_response(session_id, user_id, movie_id, liked)
            except ConflictError:
                recorded = False
        if not recorded:
            logger.debug(
                "User %s already voted on %s in session %s", user_id, movie_id, session_id
            )

        likes, responses = await self._store.tally(session_id, movie_id)
        matched = movie_id in session.matches
        # Decided from the stored tally so a retried vote can still record a
        # match whose first append was lost.
        if not matched and is_match(likes, responses):
            matched = await self._record_match(session_id, movie_id)
        elif not matched:
            current = await self._lifecycle.get_session(session_id)
            matched = movie_id in current.matches

        return VoteOutcome(
            advanced=True,
            matched=matched,
            recorded=recorded,
            likes=likes,
            responses=responses,
        )

    async def _record_match(self, session_id: str, movie_id: int) -> bool:
        """Append ``movie_id`` to the session's matches exactly once."""

        for _ in range(self._settings.cas_retry_limit):
            session = await self._lifecycle.get_session(session_id)
            if movie_id in session.matches:
                return True
            updated = await self._store.compare_and_set(
                session_id,
                session.version,
                matches=append_if_absent(session.matches, movie_id),
            )
            if updated is not None:
                logger.info(
                    "Match found in session %s: movie %s (%s total)",
                    session_id,
                    movie_id,
                    len(updated.matches),
                )
                return True
        logger.warning("Recording match %s on session %s kept losing races", movie_id, session_id)
        raise RaceLossError(f"Session {session_id} changed while recording a match")

    async def list_matches(self, session_id: str) -> list[CandidateMovie]:
        """Return the matched movies in the order they were matched."""

        session = await self._lifecycle.get_session(session_id)
        movies = await self._store.movies_by_ids(session_id, session.matches)
        return [movies[movie_id] for movie_id in session.matches if movie_id in movies]

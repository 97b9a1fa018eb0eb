"""Persistence layer for sessions, participants, candidate movies and votes."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import Participant, Response, SessionMovie, SessionRecord, User
from ..errors import ConflictError, NotFoundError
from ..models import CandidateMovie, ChangeEvent, ParticipantView, SessionView
from ..utils import utcnow
from .notifier import ChangeNotifier

logger = logging.getLogger(__name__)


class SessionStore:
    """Single source of truth for session state.

    Every shared mutable field on a session row is written through
    :meth:`compare_and_set`, which only succeeds when the caller's view of
    ``version`` is still current. Committed writes are mirrored to the
    :class:`ChangeNotifier` so subscribed clients can resync.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: ChangeNotifier | None = None,
    ):
        self._session_factory = session_factory
        self._notifier = notifier or ChangeNotifier()

    @property
    def notifier(self) -> ChangeNotifier:
        return self._notifier

    # Users -----------------------------------------------------------------

    async def get_user(self, user_id: str) -> User | None:
        async with self._session_factory() as session:
            return await session.get(User, user_id)

    async def insert_user(self, user_id: str, username: str) -> User:
        """Persist a new identity, raising :class:`ConflictError` on reuse."""

        now = utcnow()
        user = User(id=user_id, username=username, created_at=now, updated_at=now)
        async with self._session_factory() as session:
            session.add(user)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictError(f"User {user_id} already exists") from exc
        return user

    async def update_username(self, user_id: str, username: str) -> User | None:
        async with self._session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                return None
            user.username = username
            user.updated_at = utcnow()
            await session.commit()
            return user

    # Sessions --------------------------------------------------------------

    async def get_session(self, session_id: str) -> SessionView | None:
        async with self._session_factory() as session:
            record = await session.get(SessionRecord, session_id)
            if record is None:
                return None
            return SessionView.from_record(record)

    async def find_by_join_code(self, join_code: str) -> SessionView | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SessionRecord).where(SessionRecord.join_code == join_code)
            )
            record = result.scalar_one_or_none()
            if record is None:
                return None
            return SessionView.from_record(record)

    async def join_code_in_use(self, join_code: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SessionRecord.id)
                .where(SessionRecord.join_code == join_code)
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def insert_session(self, owner_id: str, join_code: str) -> SessionView:
        """Create a waiting session and enrol its owner as first participant.

        Raises :class:`ConflictError` when ``join_code`` was taken between the
        caller's availability check and this insert.
        """

        now = utcnow()
        async with self._session_factory() as session:
            record = SessionRecord(
                owner_id=owner_id,
                status="waiting",
                join_code=join_code,
                platform_selections=[],
                platform_ids=[],
                genre_selections=[],
                genre_ids=[],
                movies_fetched=False,
                matches=[],
                version=0,
                created_at=now,
                updated_at=now,
            )
            session.add(record)
            try:
                await session.flush()
                session.add(
                    Participant(session_id=record.id, user_id=owner_id, joined_at=now)
                )
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictError(f"Join code {join_code} already in use") from exc
            view = SessionView.from_record(record)
        self._publish("sessions", "INSERT", view.id, view.model_dump(mode="json"))
        return view

    async def list_owned_sessions(self, owner_id: str) -> list[SessionView]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SessionRecord)
                .where(SessionRecord.owner_id == owner_id)
                .order_by(SessionRecord.created_at.desc())
            )
            return [SessionView.from_record(record) for record in result.scalars()]

    async def compare_and_set(
        self, session_id: str, expected_version: int, **values: Any
    ) -> SessionView | None:
        """Apply ``values`` only if the row is still at ``expected_version``.

        Returns the updated view, or ``None`` when another writer got there
        first (or the session no longer exists).
        """

        async with self._session_factory() as session:
            result = await session.execute(
                update(SessionRecord)
                .where(
                    SessionRecord.id == session_id,
                    SessionRecord.version == expected_version,
                )
                .values(
                    **values,
                    version=expected_version + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                logger.debug(
                    "Compare-and-set on session %s lost at version %s",
                    session_id,
                    expected_version,
                )
                return None
            await session.commit()
            record = await session.get(SessionRecord, session_id, populate_existing=True)
            if record is None:  # pragma: no cover - deleted right after commit
                return None
            view = SessionView.from_record(record)
        self._publish("sessions", "UPDATE", session_id, view.model_dump(mode="json"))
        return view

    async def mark_movies_fetched(self, session_id: str) -> bool:
        """Flip ``movies_fetched`` to true; returns whether this call flipped it."""

        async with self._session_factory() as session:
            result = await session.execute(
                update(SessionRecord)
                .where(
                    SessionRecord.id == session_id,
                    SessionRecord.movies_fetched.is_(False),
                )
                .values(
                    movies_fetched=True,
                    version=SessionRecord.version + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            flipped = result.rowcount == 1
            await session.commit()
            if not flipped:
                return False
            record = await session.get(SessionRecord, session_id, populate_existing=True)
            view = SessionView.from_record(record) if record is not None else None
        if view is not None:
            self._publish("sessions", "UPDATE", session_id, view.model_dump(mode="json"))
        return True

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session along with its roster, candidate list and votes."""

        async with self._session_factory() as session:
            for model in (Response, SessionMovie, Participant):
                await session.execute(
                    delete(model).where(model.session_id == session_id)
                )
            result = await session.execute(
                delete(SessionRecord).where(SessionRecord.id == session_id)
            )
            await session.commit()
            deleted = result.rowcount == 1
        if deleted:
            self._publish("sessions", "DELETE", session_id, None)
            self._publish("session_users", "DELETE", session_id, None)
        return deleted

    # Participants ----------------------------------------------------------

    async def add_participant(
        self, session_id: str, user_id: str
    ) -> tuple[ParticipantView, bool]:
        """Add ``user_id`` to the roster; returns ``(participant, created)``."""

        now = utcnow()
        async with self._session_factory() as session:
            participant = Participant(session_id=session_id, user_id=user_id, joined_at=now)
            session.add(participant)
            try:
                await session.commit()
                created = True
            except IntegrityError:
                await session.rollback()
                created = False

        if not created:
            existing = await self.get_participant(session_id, user_id)
            if existing is None:
                # The insert failed for a reason other than a duplicate join.
                raise ConflictError(
                    f"Could not add user {user_id} to session {session_id}"
                )
            return existing, False

        view = await self.get_participant(session_id, user_id)
        if view is None:
            # Session ended between the insert and the read.
            raise NotFoundError(
                f"Session {session_id} was removed while adding user {user_id}"
            )
        self._publish("session_users", "INSERT", session_id, view.model_dump(mode="json"))
        return view, True

    async def get_participant(
        self, session_id: str, user_id: str
    ) -> ParticipantView | None:
        async with self._session_factory() as session:
            result = await session.execute(
                self._participant_query(session_id).where(
                    Participant.user_id == user_id
                )
            )
            row = result.first()
            return self._participant_view(row) if row is not None else None

    async def remove_participant(self, session_id: str, user_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(Participant).where(
                    Participant.session_id == session_id,
                    Participant.user_id == user_id,
                )
            )
            await session.commit()
            removed = result.rowcount > 0
        if removed:
            self._publish(
                "session_users", "DELETE", session_id, {"user_id": user_id}
            )
        return removed

    async def is_participant(self, session_id: str, user_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Participant.id)
                .where(
                    Participant.session_id == session_id,
                    Participant.user_id == user_id,
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def list_participants(self, session_id: str) -> list[ParticipantView]:
        async with self._session_factory() as session:
            result = await session.execute(
                self._participant_query(session_id).order_by(
                    Participant.joined_at, Participant.id
                )
            )
            return [self._participant_view(row) for row in result.all()]

    @staticmethod
    def _participant_query(session_id: str):
        return (
            select(Participant, User.username, SessionRecord.owner_id)
            .join(User, User.id == Participant.user_id, isouter=True)
            .join(SessionRecord, SessionRecord.id == Participant.session_id)
            .where(Participant.session_id == session_id)
        )

    @staticmethod
    def _participant_view(row: Any) -> ParticipantView:
        participant, username, owner_id = row
        return ParticipantView(
            id=participant.id,
            session_id=participant.session_id,
            user_id=participant.user_id,
            username=username,
            joined_at=participant.joined_at,
            is_owner=participant.user_id == owner_id,
        )

    # Candidate movies ------------------------------------------------------

    async def has_movies(self, session_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SessionMovie.id)
                .where(SessionMovie.session_id == session_id)
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def upsert_movies(
        self, session_id: str, movies: Sequence[CandidateMovie]
    ) -> int:
        """Insert candidate rows not yet stored; existing rows are left alone.

        Returns the number of rows inserted. Rows already present keep the
        position they were first stored with.
        """

        if not movies:
            return 0
        now = utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                select(SessionMovie.movie_id).where(
                    SessionMovie.session_id == session_id,
                    SessionMovie.movie_id.in_([movie.movie_id for movie in movies]),
                )
            )
            seen = set(result.scalars())
            inserted = 0
            for movie in movies:
                if movie.movie_id in seen:
                    continue
                seen.add(movie.movie_id)
                session.add(
                    SessionMovie(
                        session_id=session_id,
                        movie_id=movie.movie_id,
                        title=movie.title,
                        poster_path=movie.poster_path,
                        overview=movie.overview,
                        release_date=movie.release_date,
                        genres=list(movie.genres),
                        rating=movie.rating,
                        position=movie.position,
                        created_at=now,
                    )
                )
                inserted += 1
            await session.commit()
        return inserted

    async def list_movies(self, session_id: str) -> list[CandidateMovie]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SessionMovie)
                .where(SessionMovie.session_id == session_id)
                .order_by(SessionMovie.position, SessionMovie.id)
            )
            return [CandidateMovie.model_validate(row) for row in result.scalars()]

    async def get_movie(self, session_id: str, movie_id: int) -> CandidateMovie | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SessionMovie).where(
                    SessionMovie.session_id == session_id,
                    SessionMovie.movie_id == movie_id,
                )
            )
            row = result.scalar_one_or_none()
            return CandidateMovie.model_validate(row) if row is not None else None

    async def movies_by_ids(
        self, session_id: str, movie_ids: Iterable[int]
    ) -> dict[int, CandidateMovie]:
        wanted = list(movie_ids)
        if not wanted:
            return {}
        async with self._session_factory() as session:
            result = await session.execute(
                select(SessionMovie).where(
                    SessionMovie.session_id == session_id,
                    SessionMovie.movie_id.in_(wanted),
                )
            )
            return {
                row.movie_id: CandidateMovie.model_validate(row)
                for row in result.scalars()
            }

    # Responses -------------------------------------------------------------

    async def voted_movie_ids(self, session_id: str, user_id: str) -> set[int]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Response.movie_id).where(
                    Response.session_id == session_id,
                    Response.user_id == user_id,
                )
            )
            return set(result.scalars())

    async def has_response(self, session_id: str, user_id: str, movie_id: int) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Response.id)
                .where(
                    Response.session_id == session_id,
                    Response.user_id == user_id,
                    Response.movie_id == movie_id,
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def insert_response(
        self, session_id: str, user_id: str, movie_id: int, liked: bool
    ) -> None:
        """Record a vote, raising :class:`ConflictError` if one already exists."""

        async with self._session_factory() as session:
            session.add(
                Response(
                    session_id=session_id,
                    user_id=user_id,
                    movie_id=movie_id,
                    liked=liked,
                    created_at=utcnow(),
                )
            )
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictError(
                    f"User {user_id} already voted on {movie_id} in {session_id}"
                ) from exc

    async def tally(self, session_id: str, movie_id: int) -> tuple[int, int]:
        """Return ``(likes, responses)`` as distinct-user counts for a movie."""

        async with self._session_factory() as session:
            likes = await session.scalar(
                select(func.count(func.distinct(Response.user_id))).where(
                    Response.session_id == session_id,
                    Response.movie_id == movie_id,
                    Response.liked.is_(True),
                )
            )
            total = await session.scalar(
                select(func.count(func.distinct(Response.user_id))).where(
                    Response.session_id == session_id,
                    Response.movie_id == movie_id,
                )
            )
        return int(likes or 0), int(total or 0)

    def _publish(
        self,
        table: str,
        event_type: str,
        key: str,
        row: dict[str, Any] | None,
    ) -> None:
        self._notifier.publish(
            ChangeEvent(table=table, event_type=event_type, key=key, row=row)  # type: ignore[arg-type]
        )

"""Session creation, membership and the status state machine."""

from __future__ import annotations

import logging

from ..config import Settings
from ..errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    RaceLossError,
    ValidationError,
)
from ..models import ParticipantView, SessionStatus, SessionView
from ..utils import generate_join_code, normalize_join_code
from .identity import IdentityProvider
from .session_store import SessionStore

logger = logging.getLogger(__name__)

# Legal owner-driven status edges. Deletion is handled by ``end_session``.
TRANSITIONS: dict[str, frozenset[str]] = {
    "waiting": frozenset({"configuring"}),
    "configuring": frozenset({"matching"}),
    "matching": frozenset({"completed"}),
    "completed": frozenset(),
}

SELECTION_REQUIRED_MESSAGE = "Select at least one provider and one genre"


def can_transition(current: str, requested: str) -> bool:
    return requested in TRANSITIONS.get(current, frozenset())


class SessionLifecycle:
    """Owns session creation, joining and owner-driven status changes."""

    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        identity: IdentityProvider,
    ):
        self._settings = settings
        self._store = store
        self._identity = identity

    async def get_session(self, session_id: str) -> SessionView:
        session = await self._store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        return session

    async def create_session(self, owner_id: str) -> SessionView:
        """Create a waiting session owned by ``owner_id`` with a fresh join code."""

        await self._identity.ensure_user(owner_id)
        for attempt in range(1, self._settings.join_code_max_attempts + 1):
            join_code = generate_join_code()
            if await self._store.join_code_in_use(join_code):
                logger.debug("Join code %s already taken (attempt %s)", join_code, attempt)
                continue
            try:
                session = await self._store.insert_session(owner_id, join_code)
            except ConflictError:
                continue
            logger.info(
                "Created session %s with join code %s for owner %s",
                session.id,
                session.join_code,
                owner_id,
            )
            return session
        raise RaceLossError("Could not allocate an unused join code")

    async def join_session(self, join_code: str, user_id: str) -> SessionView:
        """Resolve ``join_code`` and add ``user_id`` to the roster.

        Joining a session twice is a no-op.
        """

        code = normalize_join_code(join_code)
        if not code:
            raise ValidationError("Please enter a join code")
        session = await self._store.find_by_join_code(code)
        if session is None:
            raise NotFoundError("Session not found. Please check your join code.")
        if session.status == "completed":
            raise ValidationError("This session has already ended.")
        await self._identity.ensure_user(user_id)
        _, created = await self._store.add_participant(session.id, user_id)
        if created:
            logger.info("User %s joined session %s", user_id, session.id)
        else:
            logger.debug("User %s already in session %s", user_id, session.id)
        return session

    async def leave_session(self, session_id: str, user_id: str) -> bool:
        """Remove ``user_id`` from the roster. Committed votes are kept."""

        session = await self.get_session(session_id)
        if session.is_owner(user_id):
            raise ValidationError(
                "The host cannot leave the session; end it for everyone instead"
            )
        removed = await self._store.remove_participant(session_id, user_id)
        if removed:
            logger.info("User %s left session %s", user_id, session_id)
        return removed

    async def end_session(self, session_id: str, user_id: str) -> None:
        """Delete the session and everything attached to it (owner only)."""

        session = await self.get_session(session_id)
        if not session.is_owner(user_id):
            raise PermissionDeniedError("Only the host can end the session")
        await self._store.delete_session(session_id)
        logger.info("Session %s ended by owner %s", session_id, user_id)

    async def list_participants(self, session_id: str) -> list[ParticipantView]:
        await self.get_session(session_id)
        return await self._store.list_participants(session_id)

    async def list_owned_sessions(self, owner_id: str) -> list[SessionView]:
        return await self._store.list_owned_sessions(owner_id)

    async def transition(
        self, session_id: str, user_id: str, requested: SessionStatus
    ) -> SessionView:
        """Move the session to ``requested`` if the edge is legal.

        Only the owner may change status. Rejected requests leave the stored
        session untouched.
        """

        for _ in range(self._settings.cas_retry_limit):
            session = await self.get_session(session_id)
            if not session.is_owner(user_id):
                raise PermissionDeniedError("Only the host can change the session status")
            if not can_transition(session.status, requested):
                raise InvalidTransitionError(session.status, requested)
            if requested == "matching" and not (
                session.platform_selections and session.genre_selections
            ):
                raise ValidationError(SELECTION_REQUIRED_MESSAGE)
            updated = await self._store.compare_and_set(
                session_id, session.version, status=requested
            )
            if updated is not None:
                logger.info(
                    "Session %s moved from %s to %s",
                    session_id,
                    session.status,
                    requested,
                )
                return updated
        logger.warning("Status change on session %s kept losing races", session_id)
        raise RaceLossError(f"Session {session_id} changed while updating its status")

    async def start_configuring(self, session_id: str, user_id: str) -> SessionView:
        return await self.transition(session_id, user_id, "configuring")

    async def start_matching(self, session_id: str, user_id: str) -> SessionView:
        return await self.transition(session_id, user_id, "matching")

    async def complete(self, session_id: str, user_id: str) -> SessionView:
        return await self.transition(session_id, user_id, "completed")

    async def require_participant(self, session_id: str, user_id: str) -> SessionView:
        """Return the session if ``user_id`` belongs to it."""

        session = await self.get_session(session_id)
        if not await self._store.is_participant(session_id, user_id):
            raise PermissionDeniedError(
                f"User {user_id} is not a participant of session {session_id}"
            )
        return session

"""Collaborative editing of a session's provider and genre selections."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Sequence

from ..config import Settings
from ..errors import InvalidTransitionError, RaceLossError, ValidationError
from ..models import Selection, SelectionKind, SessionView
from ..utils import utcnow
from .lifecycle import SessionLifecycle
from .session_store import SessionStore

logger = logging.getLogger(__name__)

EDITABLE_STATUSES = frozenset({"waiting", "configuring"})


@dataclass(frozen=True, slots=True)
class SelectionField:
    """Where a selection kind lives on the session row."""

    key: str
    selections_column: str
    ids_column: str


SELECTION_FIELDS: dict[str, SelectionField] = {
    "provider": SelectionField("provider_id", "platform_selections", "platform_ids"),
    "genre": SelectionField("genre_id", "genre_selections", "genre_ids"),
}


def selection_field(kind: str) -> SelectionField:
    try:
        return SELECTION_FIELDS[kind]
    except KeyError:
        raise ValidationError(f"Unknown selection kind {kind!r}") from None


def current_selections(session: SessionView, kind: SelectionKind) -> list[dict[str, Any]]:
    """Return the rich selection set, upgrading legacy id-only sessions."""

    target = selection_field(kind)
    selections = getattr(session, target.selections_column)
    if selections:
        return [dict(entry) for entry in selections]
    return [
        {target.key: item_id, "selected_by": None}
        for item_id in getattr(session, target.ids_column)
    ]


def toggle(
    selections: Sequence[dict[str, Any]],
    key: str,
    item_id: int,
    *,
    user_id: str,
    username: str | None,
) -> list[dict[str, Any]]:
    """Remove ``item_id`` if present (whoever added it), otherwise append it."""

    if any(entry.get(key) == item_id for entry in selections):
        return [dict(entry) for entry in selections if entry.get(key) != item_id]
    return [
        *(dict(entry) for entry in selections),
        {
            key: item_id,
            "selected_by": user_id,
            "username": username,
            "selected_at": utcnow().isoformat(),
        },
    ]


def is_selected(selections: Sequence[dict[str, Any]], key: str, item_id: int) -> bool:
    return any(entry.get(key) == item_id for entry in selections)


def selection_owner(
    selections: Sequence[dict[str, Any]], key: str, item_id: int
) -> Selection | None:
    """Return who selected ``item_id``, or ``None`` when it is not selected."""

    for entry in selections:
        if entry.get(key) == item_id:
            return Selection.model_validate({**entry, "item_id": item_id})
    return None


class ConfigurationEngine:
    """Merges concurrent selection edits from all participants."""

    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        lifecycle: SessionLifecycle,
    ):
        self._settings = settings
        self._store = store
        self._lifecycle = lifecycle

    async def toggle_selection(
        self,
        session_id: str,
        kind: SelectionKind,
        item_id: int,
        user_id: str,
        username: str | None = None,
    ) -> list[dict[str, Any]]:
        """Toggle ``item_id`` in the ``kind`` selection set and return the new set.

        The set is recomputed from the latest stored state and written with
        compare-and-set, so concurrent toggles serialize instead of
        overwriting each other.
        """

        target = selection_field(kind)
        await self._lifecycle.require_participant(session_id, user_id)
        for attempt in range(1, self._settings.cas_retry_limit + 1):
            session = await self._lifecycle.get_session(session_id)
            if session.status not in EDITABLE_STATUSES:
                raise InvalidTransitionError(
                    session.status,
                    session.status,
                    f"Selections cannot change while the session is {session.status}",
                )
            updated_set = toggle(
                current_selections(session, kind),
                target.key,
                item_id,
                user_id=user_id,
                username=username,
            )
            updated = await self._store.compare_and_set(
                session_id,
                session.version,
                **{
                    target.selections_column: updated_set,
                    target.ids_column: [entry[target.key] for entry in updated_set],
                },
            )
            if updated is not None:
                logger.info(
                    "User %s %s %s %s in session %s",
                    user_id,
                    "selected" if is_selected(updated_set, target.key, item_id) else "cleared",
                    kind,
                    item_id,
                    session_id,
                )
                return getattr(updated, target.selections_column)
            logger.debug(
                "Selection toggle on session %s retried (attempt %s)", session_id, attempt
            )
        logger.warning("Selection toggle on session %s kept losing races", session_id)
        raise RaceLossError(f"Session {session_id} changed while updating selections")

    async def get_selections(
        self, session_id: str, kind: SelectionKind
    ) -> list[dict[str, Any]]:
        session = await self._lifecycle.get_session(session_id)
        return current_selections(session, kind)

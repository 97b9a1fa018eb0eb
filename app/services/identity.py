"""Issuing and resolving opaque per-device user identities."""

from __future__ import annotations

import logging
from typing import Protocol

from ..errors import ConflictError, NotFoundError, ValidationError
from ..models import UserProfile
from ..utils import generate_username, new_identifier
from .session_store import SessionStore

logger = logging.getLogger(__name__)

MAX_USERNAME_LENGTH = 120


class IdentityProvider(Protocol):
    """What the session services need from identity management.

    Identities are unverified tokens. A stronger scheme only has to provide
    these three operations.
    """

    async def get_user(self, user_id: str) -> UserProfile: ...

    async def ensure_user(
        self, user_id: str, username: str | None = None
    ) -> UserProfile: ...

    async def rename(self, user_id: str, username: str) -> UserProfile: ...


class IdentityService:
    """Token-issuing identity provider backed by the session store."""

    def __init__(self, store: SessionStore):
        self._store = store

    async def create_user(
        self, username: str | None = None, *, user_id: str | None = None
    ) -> UserProfile:
        """Issue a new identity, or return the existing one for ``user_id``."""

        if user_id:
            return await self.ensure_user(user_id, username)
        resolved_id = new_identifier()
        resolved_name = self._clean_username(username) or generate_username()
        user = await self._store.insert_user(resolved_id, resolved_name)
        logger.info("Issued user %s (%s)", user.id, user.username)
        return UserProfile.model_validate(user)

    async def get_user(self, user_id: str) -> UserProfile:
        user = await self._store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return UserProfile.model_validate(user)

    async def ensure_user(
        self, user_id: str, username: str | None = None
    ) -> UserProfile:
        """Return the user for ``user_id``, registering it on first sight."""

        if not user_id or not user_id.strip():
            raise ValidationError("A user id is required")
        user = await self._store.get_user(user_id)
        if user is not None:
            return UserProfile.model_validate(user)
        resolved_name = self._clean_username(username) or generate_username()
        try:
            user = await self._store.insert_user(user_id, resolved_name)
        except ConflictError:
            # Another request registered the same device id first.
            user = await self._store.get_user(user_id)
            if user is None:
                raise
        else:
            logger.info("Registered client-issued user %s (%s)", user.id, user.username)
        return UserProfile.model_validate(user)

    async def rename(self, user_id: str, username: str) -> UserProfile:
        cleaned = self._clean_username(username)
        if not cleaned:
            raise ValidationError("Username may not be blank")
        user = await self._store.update_username(user_id, cleaned)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return UserProfile.model_validate(user)

    @staticmethod
    def _clean_username(value: str | None) -> str:
        return (value or "").strip()[:MAX_USERNAME_LENGTH]

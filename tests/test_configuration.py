"""Tests for collaborative provider and genre selection."""

from __future__ import annotations

import asyncio

import pytest

from app.errors import InvalidTransitionError, PermissionDeniedError, ValidationError
from app.models import SessionView
from app.services.configuration import (
    current_selections,
    is_selected,
    selection_field,
    selection_owner,
    toggle,
)

from conftest import start_matching_session


def test_toggle_appends_then_removes() -> None:
    added = toggle([], "provider_id", 8, user_id="alice", username="Alice")
    assert [entry["provider_id"] for entry in added] == [8]
    assert added[0]["selected_by"] == "alice"
    assert added[0]["username"] == "Alice"
    assert added[0]["selected_at"]

    removed = toggle(added, "provider_id", 8, user_id="bob", username=None)
    assert removed == []


def test_toggle_does_not_mutate_input() -> None:
    original = [{"genre_id": 28, "selected_by": "alice"}]

    toggle(original, "genre_id", 35, user_id="bob", username=None)

    assert original == [{"genre_id": 28, "selected_by": "alice"}]


def test_selection_owner_and_membership() -> None:
    selections = [
        {"genre_id": 28, "selected_by": "alice", "username": "Alice"},
        {"genre_id": 35, "selected_by": "bob", "username": None},
    ]

    owner = selection_owner(selections, "genre_id", 28)
    assert owner is not None
    assert owner.item_id == 28
    assert owner.selected_by == "alice"
    assert selection_owner(selections, "genre_id", 99) is None
    assert is_selected(selections, "genre_id", 35)
    assert not is_selected(selections, "genre_id", 99)


def test_unknown_selection_kind() -> None:
    with pytest.raises(ValidationError):
        selection_field("language")


def test_legacy_id_only_sessions_are_upgraded() -> None:
    session = SessionView(
        id="s1",
        owner_id="host",
        status="configuring",
        join_code="ABCDEF",
        platform_ids=[8, 337],
    )

    selections = current_selections(session, "provider")

    assert selections == [
        {"provider_id": 8, "selected_by": None},
        {"provider_id": 337, "selected_by": None},
    ]
    assert current_selections(session, "genre") == []


def test_toggle_selection_records_who_selected(service_factory) -> None:
    async def runner() -> None:
        async with service_factory() as services:
            session = await services.lifecycle.create_session("host")
            await services.lifecycle.join_session(session.join_code, "guest")

            selections = await services.configuration.toggle_selection(
                session.id, "provider", 8, "guest", "Guest"
            )
            await services.configuration.toggle_selection(session.id, "genre", 28, "host")

            assert [entry["provider_id"] for entry in selections] == [8]
            assert selections[0]["selected_by"] == "guest"
            stored = await services.lifecycle.get_session(session.id)
            assert stored.platform_ids == [8]
            assert stored.genre_ids == [28]
            assert stored.genre_selections[0]["selected_by"] == "host"

    asyncio.run(runner())


def test_double_toggle_restores_original(service_factory) -> None:
    async def runner() -> None:
        async with service_factory() as services:
            session = await services.lifecycle.create_session("host")
            await services.lifecycle.join_session(session.join_code, "guest")
            await services.configuration.toggle_selection(session.id, "genre", 28, "host")
            before = await services.configuration.get_selections(session.id, "genre")

            await services.configuration.toggle_selection(session.id, "genre", 35, "guest")
            after = await services.configuration.toggle_selection(
                session.id, "genre", 35, "guest"
            )

            assert after == before
            stored = await services.lifecycle.get_session(session.id)
            assert stored.genre_ids == [28]

    asyncio.run(runner())


def test_any_participant_can_remove_any_selection(service_factory) -> None:
    async def runner() -> None:
        async with service_factory() as services:
            session = await services.lifecycle.create_session("host")
            await services.lifecycle.join_session(session.join_code, "guest")
            await services.configuration.toggle_selection(session.id, "provider", 8, "host")

            remaining = await services.configuration.toggle_selection(
                session.id, "provider", 8, "guest"
            )

            assert remaining == []
            stored = await services.lifecycle.get_session(session.id)
            assert stored.platform_ids == []

    asyncio.run(runner())


def test_concurrent_toggles_are_all_kept(service_factory) -> None:
    async def runner() -> None:
        async with service_factory() as services:
            session = await services.lifecycle.create_session("host")
            for guest in ("alice", "bob"):
                await services.lifecycle.join_session(session.join_code, guest)

            await asyncio.gather(
                services.configuration.toggle_selection(session.id, "genre", 28, "host"),
                services.configuration.toggle_selection(session.id, "genre", 35, "alice"),
                services.configuration.toggle_selection(session.id, "genre", 18, "bob"),
            )

            stored = await services.lifecycle.get_session(session.id)
            assert sorted(stored.genre_ids) == [18, 28, 35]
            assert len(stored.genre_selections) == 3
            assert stored.version == session.version + 3

    asyncio.run(runner())


def test_non_participant_cannot_toggle(service_factory) -> None:
    async def runner() -> None:
        async with service_factory() as services:
            session = await services.lifecycle.create_session("host")

            with pytest.raises(PermissionDeniedError):
                await services.configuration.toggle_selection(
                    session.id, "provider", 8, "stranger"
                )

    asyncio.run(runner())


def test_selections_locked_once_matching(service_factory) -> None:
    async def runner() -> None:
        async with service_factory() as services:
            session = await start_matching_session(services)

            with pytest.raises(InvalidTransitionError):
                await services.configuration.toggle_selection(
                    session.id, "genre", 35, "guest"
                )

            stored = await services.lifecycle.get_session(session.id)
            assert stored.genre_ids == [28]

    asyncio.run(runner())


def test_owner_toggle_on_then_off(service_factory) -> None:
    async def runner() -> None:
        async with service_factory() as services:
            session = await services.lifecycle.create_session("host")
            await services.lifecycle.start_configuring(session.id, "host")

            added = await services.configuration.toggle_selection(
                session.id, "provider", 9, "host"
            )
            assert is_selected(added, "provider_id", 9)
            removed = await services.configuration.toggle_selection(
                session.id, "provider", 9, "host"
            )

            assert not is_selected(removed, "provider_id", 9)
            stored = await services.lifecycle.get_session(session.id)
            assert 9 not in stored.platform_ids

    asyncio.run(runner())

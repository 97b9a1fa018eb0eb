"""Tests for vote recording, match detection and per-user feeds."""

from __future__ import annotations

import asyncio

import pytest

from app.errors import (
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    RaceLossError,
)
from app.models import CandidateMovie
from app.services.feed import filter_voted
from app.services.voting import append_if_absent, is_match

from conftest import FakeCatalog, make_movie, start_matching_session


def voting_catalog() -> FakeCatalog:
    return FakeCatalog({1: [make_movie(550), make_movie(551), make_movie(552)]})


async def materialized_session(services, guests=("guest",)):
    session = await start_matching_session(services, guests=guests)
    await services.materializer.materialize(session.id, "host")
    return session


def test_is_match_rule() -> None:
    assert is_match(2, 2)
    assert is_match(3, 3)
    assert not is_match(1, 1)
    assert not is_match(1, 2)
    assert not is_match(2, 3)


def test_append_if_absent() -> None:
    assert append_if_absent([1, 2], 3) == [1, 2, 3]
    assert append_if_absent([1, 2], 2) == [1, 2]


def test_filter_voted_keeps_position_order() -> None:
    movies = [
        CandidateMovie(movie_id=3, title="C", position=2),
        CandidateMovie(movie_id=1, title="A", position=0),
        CandidateMovie(movie_id=2, title="B", position=1),
    ]

    assert [movie.movie_id for movie in filter_voted(movies, {2})] == [1, 3]


def test_two_likes_make_a_match(service_factory) -> None:
    async def runner() -> None:
        async with service_factory(voting_catalog()) as services:
            session = await materialized_session(services)

            first = await services.voting.vote(session.id, "host", 550, True)
            assert first.recorded
            assert not first.matched
            assert (first.likes, first.responses) == (1, 1)

            second = await services.voting.vote(session.id, "guest", 550, True)
            assert second.matched
            assert (second.likes, second.responses) == (2, 2)

            stored = await services.lifecycle.get_session(session.id)
            assert stored.matches == [550]
            matches = await services.voting.list_matches(session.id)
            assert [movie.movie_id for movie in matches] == [550]

    asyncio.run(runner())


def test_a_dislike_blocks_the_match(service_factory) -> None:
    async def runner() -> None:
        async with service_factory(voting_catalog()) as services:
            session = await materialized_session(services)

            await services.voting.vote(session.id, "host", 551, False)
            outcome = await services.voting.vote(session.id, "guest", 551, True)

            assert not outcome.matched
            assert (outcome.likes, outcome.responses) == (1, 2)
            assert (await services.lifecycle.get_session(session.id)).matches == []

    asyncio.run(runner())


def test_late_voters_extend_an_existing_match_once(service_factory) -> None:
    async def runner() -> None:
        async with service_factory(voting_catalog()) as services:
            session = await materialized_session(services, guests=("alice", "bob"))

            await services.voting.vote(session.id, "host", 550, True)
            await services.voting.vote(session.id, "alice", 550, True)
            late = await services.voting.vote(session.id, "bob", 550, True)

            assert late.matched
            assert (await services.lifecycle.get_session(session.id)).matches == [550]

    asyncio.run(runner())


def test_matches_never_shrink(service_factory) -> None:
    async def runner() -> None:
        async with service_factory(voting_catalog()) as services:
            session = await materialized_session(services, guests=("alice", "bob"))

            await services.voting.vote(session.id, "host", 550, True)
            await services.voting.vote(session.id, "alice", 550, True)
            outcome = await services.voting.vote(session.id, "bob", 550, False)

            assert outcome.matched
            assert (outcome.likes, outcome.responses) == (2, 3)
            assert (await services.lifecycle.get_session(session.id)).matches == [550]

    asyncio.run(runner())


def test_matches_keep_discovery_order(service_factory) -> None:
    async def runner() -> None:
        async with service_factory(voting_catalog()) as services:
            session = await materialized_session(services)

            for movie_id in (552, 550):
                await services.voting.vote(session.id, "host", movie_id, True)
                await services.voting.vote(session.id, "guest", movie_id, True)

            matches = await services.voting.list_matches(session.id)
            assert [movie.movie_id for movie in matches] == [552, 550]

    asyncio.run(runner())


def test_duplicate_vote_is_ignored(service_factory) -> None:
    async def runner() -> None:
        async with service_factory(voting_catalog()) as services:
            session = await materialized_session(services)

            await services.voting.vote(session.id, "guest", 550, False)
            repeat = await services.voting.vote(session.id, "guest", 550, True)

            assert not repeat.recorded
            assert repeat.advanced
            assert (repeat.likes, repeat.responses) == (0, 1)

    asyncio.run(runner())


def test_concurrent_likes_record_one_match(service_factory) -> None:
    async def runner() -> None:
        async with service_factory(voting_catalog()) as services:
            session = await materialized_session(services, guests=("alice", "bob"))

            await asyncio.gather(
                services.voting.vote(session.id, "host", 550, True),
                services.voting.vote(session.id, "alice", 550, True),
                services.voting.vote(session.id, "bob", 550, True),
            )

            assert (await services.lifecycle.get_session(session.id)).matches == [550]

    asyncio.run(runner())


def test_retried_like_records_a_lost_match(service_factory, monkeypatch) -> None:
    async def runner() -> None:
        async with service_factory(voting_catalog()) as services:
            session = await materialized_session(services)
            original = services.store.compare_and_set

            async def always_stale(*args, **kwargs):
                return None

            await services.voting.vote(session.id, "host", 550, True)
            monkeypatch.setattr(services.store, "compare_and_set", always_stale)
            with pytest.raises(RaceLossError):
                await services.voting.vote(session.id, "guest", 550, True)
            assert (await services.lifecycle.get_session(session.id)).matches == []

            monkeypatch.setattr(services.store, "compare_and_set", original)
            retry = await services.voting.vote(session.id, "guest", 550, True)

            assert not retry.recorded
            assert retry.matched
            assert (await services.lifecycle.get_session(session.id)).matches == [550]

    asyncio.run(runner())


def test_vote_rejections(service_factory) -> None:
    async def runner() -> None:
        async with service_factory(voting_catalog()) as services:
            session = await materialized_session(services)

            with pytest.raises(NotFoundError):
                await services.voting.vote(session.id, "guest", 999, True)
            with pytest.raises(PermissionDeniedError):
                await services.voting.vote(session.id, "stranger", 550, True)

            await services.lifecycle.complete(session.id, "host")
            with pytest.raises(InvalidTransitionError):
                await services.voting.vote(session.id, "guest", 550, True)

    asyncio.run(runner())


def test_feed_excludes_voted_movies_until_exhausted(service_factory) -> None:
    async def runner() -> None:
        async with service_factory(voting_catalog()) as services:
            session = await materialized_session(services)

            feed = await services.feed.feed(session.id, "guest")
            assert feed.ready
            assert [movie.movie_id for movie in feed.movies] == [550, 551, 552]

            await services.voting.vote(session.id, "guest", 551, True)
            feed = await services.feed.feed(session.id, "guest")
            assert [movie.movie_id for movie in feed.movies] == [550, 552]
            # Other users' feeds are unaffected.
            host_feed = await services.feed.feed(session.id, "host")
            assert len(host_feed.movies) == 3

            for movie_id in (550, 552):
                await services.voting.vote(session.id, "guest", movie_id, False)
            feed = await services.feed.feed(session.id, "guest")
            assert feed.movies == []
            assert feed.exhausted

    asyncio.run(runner())


def test_feed_requires_participant(service_factory) -> None:
    async def runner() -> None:
        async with service_factory(voting_catalog()) as services:
            session = await materialized_session(services)

            with pytest.raises(PermissionDeniedError):
                await services.feed.feed(session.id, "stranger")

    asyncio.run(runner())

"""Utility helpers for the MovieMatch service."""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timezone


# Visually ambiguous glyphs (letter O and digit zero) are left out.
JOIN_CODE_ALPHABET = "ABCDEFGHIJKLMNPQRSTUVWXYZ123456789"
JOIN_CODE_LENGTH = 6

USERNAME_ADJECTIVES = (
    "brave", "calm", "clever", "cosy", "curious", "eager", "fancy", "gentle",
    "happy", "jolly", "kind", "lively", "lucky", "mellow", "nimble", "proud",
    "quiet", "rapid", "shiny", "silly", "sleepy", "sunny", "swift", "witty",
)
USERNAME_ANIMALS = (
    "badger", "beaver", "bison", "camel", "crane", "dolphin", "falcon",
    "ferret", "gecko", "heron", "koala", "lemur", "lynx", "marmot", "moose",
    "otter", "panda", "puffin", "raven", "seal", "sloth", "tapir", "walrus",
    "wombat",
)


def utcnow() -> datetime:
    """Return a naive UTC timestamp, matching the stored column type."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_identifier() -> str:
    """Return an opaque identifier for users, sessions and rows."""

    return str(uuid.uuid4())


def generate_join_code(length: int = JOIN_CODE_LENGTH) -> str:
    """Return a random human-enterable join code."""

    return "".join(secrets.choice(JOIN_CODE_ALPHABET) for _ in range(length))


def normalize_join_code(value: str | None) -> str:
    """Return the canonical form of a user-entered join code."""

    return (value or "").strip().upper()


def is_valid_join_code(value: str) -> bool:
    return len(value) == JOIN_CODE_LENGTH and all(
        char in JOIN_CODE_ALPHABET for char in value
    )


def generate_username() -> str:
    """Return a random ``adjective-animal`` display name."""

    return f"{secrets.choice(USERNAME_ADJECTIVES)}-{secrets.choice(USERNAME_ANIMALS)}"

"""Identifier generation for sessions, tournaments and hypotheses."""

from __future__ import annotations

from uuid import uuid4


def new_id() -> str:
    """Generate a new random UUID v4 rendered as a string.

    Identifiers are opaque to callers; the string form keeps them
    JSON-friendly and comparable lexicographically for tie-breaks.
    """
    return str(uuid4())

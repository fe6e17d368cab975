"""Per-cycle log context.

Every record emitted while a cycle runs carries ``user_id`` and ``cycle_id``,
including records from plain ``logging`` loggers, because the structured
formatter merges structlog's contextvars into foreign records too.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager

import structlog


def new_cycle_id() -> str:
    return uuid.uuid4().hex[:12]


@contextmanager
def cycle_context(user_id: str, cycle_id: str | None = None) -> Iterator[str]:
    """Bind ``user_id`` and a cycle id for the duration of the block.

    Yields the cycle id. Previous values are restored on exit, so nested
    blocks and concurrent tasks do not clobber each other.
    """
    cycle_id = cycle_id or new_cycle_id()
    with structlog.contextvars.bound_contextvars(user_id=user_id, cycle_id=cycle_id):
        yield cycle_id


def current_context() -> dict[str, object]:
    return dict(structlog.contextvars.get_contextvars())

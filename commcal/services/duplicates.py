"""Squashed-duplicate chain resolution shared by events and venues."""

from __future__ import annotations

import logging
from typing import TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from commcal.models import Event, Venue

logger = logging.getLogger(__name__)

R = TypeVar("R", Event, Venue)


async def resolve_duplicate_chain(session: AsyncSession, model: type[R], record: R) -> R:
    """Follow ``duplicate_of_id`` from *record* to its canonical root.

    A chain that ends at a missing row or loops back on itself is broken:
    the marking on *record* is cleared and *record* itself is returned.
    """
    visited = {record.id}
    current = record
    while current.duplicate_of_id is not None:
        target_id = current.duplicate_of_id
        if target_id in visited:
            logger.warning(
                "%s %d: duplicate chain loops at %d, clearing marking",
                model.__name__, record.id, target_id,
            )
            record.duplicate_of_id = None
            return record
        target = await session.get(model, target_id)
        if target is None:
            logger.info(
                "%s %d: duplicate_of %d no longer exists, clearing marking",
                model.__name__, record.id, target_id,
            )
            record.duplicate_of_id = None
            return record
        visited.add(target.id)
        current = target
    return current

"""
Apply generator-proposed field updates onto the client state.

Deduplication is a case-insensitive substring check, not semantic matching:
a paraphrased fact will still be appended.
"""
from __future__ import annotations

import logging
from typing import Iterable

from .field_store import ClientState
from .schemas import ExtractionUpdate, UpdateAction

logger = logging.getLogger(__name__)

BULLET_PREFIX = "* "


def _normalize_candidate(value: str) -> str:
    lowered = value.strip().lower()
    if lowered.startswith(BULLET_PREFIX):
        lowered = lowered[len(BULLET_PREFIX):]
    return lowered.strip()


def is_duplicate(existing: str, candidate: str) -> bool:
    """True if the existing value already contains the normalized candidate."""
    return _normalize_candidate(candidate) in existing.lower()


def apply_updates(state: ClientState, updates: Iterable[ExtractionUpdate]) -> dict[str, str]:
    """Apply updates in order and return ``{field_id: current_value}`` for changed fields.

    An empty dict means nothing changed and nothing should be sent.
    """
    changed: dict[str, str] = {}

    for update in updates:
        target = state.get(update.field_id)
        if target is None:
            logger.warning("Discarding update for unknown field %r", update.field_id)
            continue

        if update.action is UpdateAction.SKIP:
            continue

        candidate = update.value.strip()

        if update.action is UpdateAction.REPLACE:
            if candidate == target.current_value:
                continue
            target.current_value = candidate
            changed[target.id] = target.current_value
            continue

        existing = target.current_value
        if is_duplicate(existing, candidate):
            logger.debug("Skipping duplicate append for %s: %r", target.id, candidate)
            continue

        target.current_value = f"{existing}\n{candidate}" if existing else candidate
        changed[target.id] = target.current_value

    return changed

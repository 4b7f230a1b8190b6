"""
Per-session field state mirrored from the client.

The store holds the active template (what to extract) and the client state
(current field values plus free-text notes). It is the source of truth the
merge engine writes into.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List

from .schemas import FieldState, TemplateField

logger = logging.getLogger(__name__)


@dataclass
class Field:
    id: str
    name: str = ""
    hint: str = ""
    current_value: str = ""


@dataclass
class ClientState:
    fields: List[Field] = field(default_factory=list)
    user_notes: str = ""

    def get(self, field_id: str) -> Field | None:
        for item in self.fields:
            if item.id == field_id:
                return item
        return None

    def values(self) -> dict[str, str]:
        return {item.id: item.current_value for item in self.fields}


def _unique_by_id(items: Iterable, kind: str) -> list:
    seen: set[str] = set()
    unique = []
    for item in items:
        if item.id in seen:
            logger.warning("Duplicate %s id %r ignored", kind, item.id)
            continue
        seen.add(item.id)
        unique.append(item)
    return unique


class FieldStore:
    """Active template plus the client-visible field values."""

    def __init__(self):
        self.template: List[TemplateField] = []
        self.state = ClientState()

    @property
    def template_ids(self) -> set[str]:
        return {f.id for f in self.template}

    def set_template(self, descriptors: Iterable[TemplateField]) -> bool:
        """Replace the active template from a legacy ``updateTemplate:`` command.

        Descriptors with no matching client field get an empty one; existing
        values are left untouched. Returns True if the set of field ids changed.
        """
        descriptors = _unique_by_id(descriptors, "template field")
        previous_ids = self.template_ids
        self.template = list(descriptors)

        known = {f.id for f in self.state.fields}
        for d in self.template:
            if d.id not in known:
                self.state.fields.append(Field(id=d.id, name=d.name, hint=d.hint))

        changed = previous_ids != self.template_ids
        logger.info("Template updated: %d fields (id set changed: %s)", len(self.template), changed)
        return changed

    def apply_context(self, fields: Iterable[FieldState], user_notes: str) -> bool:
        """Replace the client state with a full context sync from the client.

        The active template follows the synced field list. Returns True if
        the set of field ids differs from the previously active template.
        """
        fields = _unique_by_id(fields, "context field")
        previous_ids = self.template_ids

        self.state = ClientState(
            fields=[Field(id=f.id, name=f.name, hint=f.hint, current_value=f.current_value) for f in fields],
            user_notes=user_notes,
        )
        self.template = [TemplateField(id=f.id, name=f.name, hint=f.hint) for f in fields]

        changed = previous_ids != self.template_ids
        logger.debug("Context synced: %d fields, %d chars of notes (id set changed: %s)", len(fields), len(user_notes), changed)
        return changed

    def active_template(self) -> List[TemplateField]:
        """Return the template, adopting the client field list if the template is empty."""
        if not self.template and self.state.fields:
            logger.info("Template empty; recovering %d fields from client state", len(self.state.fields))
            self.template = [TemplateField(id=f.id, name=f.name, hint=f.hint) for f in self.state.fields]
        return self.template

"""
Copyright © 2026 Vladimir Vaulin-Belskii. All rights reserved.

Pydantic schemas for WebSocket messages and extraction results.
"""
from enum import Enum
from typing import List, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


def _as_str(value):
    if value is None:
        return ""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


class TemplateField(BaseModel):
    """Field descriptor without a value: what extraction should look for."""

    id: str = Field(..., min_length=1)
    name: str = ""
    hint: str = ""

    model_config = ConfigDict(extra="ignore")

    @field_validator("id", "name", "hint", mode="before")
    @classmethod
    def _coerce_str(cls, value):
        return _as_str(value)


class FieldState(TemplateField):
    """A template field together with its accumulated value."""

    current_value: str = Field("", alias="currentValue")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("current_value", mode="before")
    @classmethod
    def _coerce_value(cls, value):
        return _as_str(value)


class ContextUpdate(BaseModel):
    """Full client state pushed by the client at any point during a session."""

    type: Literal["contextUpdate"]
    fields: List[FieldState] = Field(default_factory=list)
    user_notes: str = Field("", alias="userNotes")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("user_notes", mode="before")
    @classmethod
    def _notes_none_as_empty(cls, value):
        return "" if value is None else value


template_adapter = TypeAdapter(List[TemplateField])


class UpdateAction(str, Enum):
    APPEND = "APPEND"
    REPLACE = "REPLACE"
    SKIP = "SKIP"


class ExtractionUpdate(BaseModel):
    """One proposed change to one field, produced by the text generator."""

    field_id: str = Field(..., alias="fieldId", min_length=1)
    action: UpdateAction = UpdateAction.APPEND
    value: str = ""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("action", mode="before")
    @classmethod
    def _normalize_action(cls, value):
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("value", mode="before")
    @classmethod
    def _flatten_value(cls, value):
        if value is None:
            return ""
        if isinstance(value, list):
            return "\n".join(str(item) for item in value if item is not None)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class ExtractionResult(BaseModel):
    updates: List[ExtractionUpdate] = Field(default_factory=list)

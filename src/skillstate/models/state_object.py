"""Id-value state without a declared model type."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from skillstate.scope import Scope


class StateObject(BaseModel):
    """A single named value persisted in a scope.

    Values written in USER or APPLICATION scope must be JSON-serializable.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., description="Key of the value in every store")
    value: Any = None
    scope: Scope = Scope.SESSION

    @field_validator("id")
    @classmethod
    def _require_id(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("id of a state object must not be blank")
        return value

"""Interaction session: the ephemeral attribute store."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from skillstate._redact import redact_for_log
from skillstate.exceptions import StateConfigError
from skillstate.models._base import StateModel
from skillstate.scope import Scope

_logger = logging.getLogger(__name__)


class AttributeBag(Protocol):
    """Minimal attribute map of one interaction, as required by the handlers."""

    def get_attribute(self, key: str) -> Any: ...

    def set_attribute(self, key: str, value: Any) -> None: ...

    def remove_attribute(self, key: str) -> None: ...

    def has_attribute(self, key: str) -> bool: ...

    def attribute_keys(self) -> Iterable[str]: ...


class SkillSession(BaseModel):
    """Session of a single interaction with the skill.

    Parameters
    ----------
    session_id : str
        Identifier of the interaction.
    application_id : str
        Identifier of the skill.  Partitions application-scoped state.
    user_id : str
        Identifier of the calling account.  Partitions user-scoped state.
    attributes : dict
        Session attributes.  Values live as long as the interaction.
    new : bool
        Whether the interaction just started.
    """

    model_config = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    session_id: str = ""
    application_id: str = ""
    user_id: str = ""
    attributes: dict[str, Any] = Field(default_factory=dict)
    new: bool = False

    @model_validator(mode="before")
    @classmethod
    def _flatten_envelope(cls, values: Any) -> Any:
        """Lift ``application.applicationId`` and ``user.userId`` to the top level."""
        if not isinstance(values, dict):
            return values
        working = dict(values)
        application = working.pop("application", None)
        if isinstance(application, Mapping) and "applicationId" in application:
            working.setdefault("applicationId", application["applicationId"])
        user = working.pop("user", None)
        if isinstance(user, Mapping) and "userId" in user:
            working.setdefault("userId", user["userId"])
        if working.get("attributes") is None:
            working.pop("attributes", None)
        return working

    @classmethod
    def from_request(cls, envelope: Mapping[str, Any]) -> SkillSession:
        """Build a session from a request envelope (``{"session": {...}, "request": {...}}``)."""
        raw = envelope.get("session")
        if not isinstance(raw, Mapping):
            raise StateConfigError("Request envelope has no session object")
        _logger.debug("Session from request %s", redact_for_log(raw))
        return cls.model_validate(dict(raw))

    # ------------------------------------------------------------------
    # Attribute map
    # ------------------------------------------------------------------

    def get_attribute(self, key: str) -> Any:
        return self.attributes.get(key)

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value

    def remove_attribute(self, key: str) -> None:
        self.attributes.pop(key, None)

    def has_attribute(self, key: str) -> bool:
        return key in self.attributes

    def attribute_keys(self) -> list[str]:
        return list(self.attributes)

    def clear_attributes(self) -> None:
        self.attributes.clear()

    def response_attributes(self) -> dict[str, Any]:
        """Attributes ready to be returned with the response.

        Live model instances are replaced by their session documents.
        """
        result: dict[str, Any] = {}
        for key, value in self.attributes.items():
            if isinstance(value, StateModel):
                result[key] = value.to_map(Scope.SESSION)
            else:
                result[key] = value
        return result

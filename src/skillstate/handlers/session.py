"""Handler keeping all state in the session of the interaction."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any, TypeVar

from pydantic_core import PydanticSerializationError, to_jsonable_python

from skillstate.exceptions import StateSerializationError
from skillstate.handlers.base import StateHandler, make_state_object, value_requests
from skillstate.models._base import StateModel, attribute_key, validate_model_id
from skillstate.models.state_object import StateObject
from skillstate.scope import Scope
from skillstate.serialization import deserialize_onto

_logger = logging.getLogger(__name__)

M = TypeVar("M", bound=StateModel)


def jsonable_value(value: Any, *, value_id: str = "") -> Any:
    try:
        return to_jsonable_python(value)
    except PydanticSerializationError as exc:
        raise StateSerializationError(f"Value of {value_id!r} is not serializable") from exc


class SessionStateHandler(StateHandler):
    """State lives in the session attributes only and ends with the interaction.

    Session records are documents keyed by attribute key.  A record may also
    be a JSON string or a live model instance put there by other code.
    """

    def with_user_id(self, user_id: str | None) -> SessionStateHandler:
        """Use *user_id* instead of the session user for user-scoped state."""
        self._user_id = user_id
        return self

    def _unique_ids(self, model_ids: Iterable[str | None]) -> list[str | None]:
        return list(dict.fromkeys(validate_model_id(model_id) for model_id in model_ids))

    def _session_record(self, model_type: type[StateModel], model_id: str | None) -> Any:
        store = self._session_store
        return store.get(store.location(attribute_key(model_type, model_id)))

    def _from_session(self, model_type: type[M], model_id: str | None, record: Any) -> M:
        """Materialize a model from a session record."""
        if isinstance(record, model_type):
            if record.handler is None:
                record.bind(self)
            return record
        if isinstance(record, StateModel):
            record = record.to_map(Scope.SESSION)
        model = self.create_model(model_type, model_id)
        deserialize_onto(model, record, Scope.SESSION)
        return model

    def _cache(self, model: StateModel) -> None:
        store = self._session_store
        store.put(store.location(model.attribute_key), model.to_map(Scope.SESSION))

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    def write_models(self, models: Iterable[StateModel]) -> None:
        documents = [(model.attribute_key, model.to_map(Scope.SESSION)) for model in models]
        for key, document in documents:
            self._session_store.put(self._session_store.location(key), document)

    def remove_models(self, models: Iterable[StateModel]) -> None:
        for model in models:
            self._session_store.delete(self._session_store.location(model.attribute_key))

    def read_models(self, model_type: type[M], model_ids: Iterable[str | None]) -> dict[str | None, M]:
        found: dict[str | None, M] = {}
        for model_id in self._unique_ids(model_ids):
            record = self._session_record(model_type, model_id)
            if record is not None:
                found[model_id] = self._from_session(model_type, model_id, record)
        return found

    def exists(self, model_type: type[StateModel], model_id: str | None = None, *, scope: Scope = Scope.SESSION) -> bool:
        store = self._session_store
        return store.exists(store.location(attribute_key(model_type, validate_model_id(model_id))))

    # ------------------------------------------------------------------
    # Values
    # ------------------------------------------------------------------

    def write_values(self, states: Iterable[StateObject]) -> None:
        entries = [(state.id, jsonable_value(state.value, value_id=state.id)) for state in states]
        for value_id, value in entries:
            self._session_store.put(self._session_store.location(value_id), value)

    def remove_values(self, value_ids: Iterable[str]) -> None:
        for value_id in value_ids:
            self._session_store.delete(self._session_store.location(value_id))

    def read_values(
        self,
        value_ids: Iterable[str] | Mapping[str, Scope],
        scope: Scope = Scope.SESSION,
    ) -> dict[str, StateObject]:
        found: dict[str, StateObject] = {}
        for value_id, value_scope in value_requests(value_ids, scope).items():
            location = self._session_store.location(value_id)
            if self._session_store.exists(location):
                found[value_id] = make_state_object(value_id, self._session_store.get(location), value_scope)
        return found

    def value_exists(self, value_id: str, *, scope: Scope = Scope.SESSION) -> bool:
        return self._session_store.exists(self._session_store.location(value_id))

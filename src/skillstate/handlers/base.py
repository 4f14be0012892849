"""Abstract state handler.

A handler reads and writes models and single values for one interaction.
Single-item operations delegate to their batch counterparts, so concrete
handlers only implement the batch operations.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from typing import Any, TypeVar

from pydantic import ValidationError

from skillstate.exceptions import StateConfigError
from skillstate.models._base import StateModel, validate_model_id
from skillstate.models._base import create_model as _create_model
from skillstate.models.state_object import StateObject
from skillstate.scope import Scope
from skillstate.session import AttributeBag
from skillstate.stores.session import SessionStore

M = TypeVar("M", bound=StateModel)


def make_state_object(value_id: str, value: Any, scope: Scope) -> StateObject:
    try:
        return StateObject(id=value_id, value=value, scope=scope)
    except ValidationError as exc:
        raise StateConfigError(f"Invalid state value {value_id!r}: {exc.errors()[0]['msg']}") from exc


def value_requests(ids: Iterable[str] | Mapping[str, Scope], scope: Scope) -> dict[str, Scope]:
    """Normalise value ids (optionally mapped to their own scope) to ``{id: scope}``."""
    if isinstance(ids, Mapping):
        return {str(value_id): Scope(value_scope) for value_id, value_scope in ids.items()}
    if isinstance(ids, str):
        return {ids: scope}
    return dict.fromkeys(ids, scope)


class StateHandler(ABC):
    """Reads, writes and removes state for one interaction.

    Parameters
    ----------
    session : AttributeBag
        Attribute map of the current interaction.
    user_id : str or None
        Identity used for user-scoped state.  Defaults to the user id of
        the session.
    """

    def __init__(self, session: AttributeBag, *, user_id: str | None = None) -> None:
        if session is None:
            raise StateConfigError("A state handler needs a session")
        self._session = session
        self._session_store = SessionStore(session)
        self._user_id = user_id

    @property
    def session(self) -> AttributeBag:
        return self._session

    @property
    def session_store(self) -> SessionStore:
        return self._session_store

    @property
    def user_id(self) -> str | None:
        return self._user_id or getattr(self._session, "user_id", None) or None

    @property
    def application_id(self) -> str:
        return getattr(self._session, "application_id", "") or ""

    def create_model(self, model_type: type[M], model_id: str | None = None) -> M:
        """Create a new instance of *model_type* bound to this handler."""
        return _create_model(model_type, self, model_id)

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def write_model(self, model: StateModel) -> None:
        self.write_models([model])

    @abstractmethod
    def write_models(self, models: Iterable[StateModel]) -> None:
        """Persist every field of *models* in the stores of their scopes."""

    def write_value(self, value_id: str, value: Any, scope: Scope = Scope.SESSION) -> None:
        self.write_values([make_state_object(value_id, value, scope)])

    def write_state(self, state: StateObject) -> None:
        self.write_values([state])

    @abstractmethod
    def write_values(self, states: Iterable[StateObject]) -> None: ...

    # ------------------------------------------------------------------
    # Removing
    # ------------------------------------------------------------------

    def remove_model(self, model: StateModel) -> None:
        self.remove_models([model])

    @abstractmethod
    def remove_models(self, models: Iterable[StateModel]) -> None:
        """Remove *models* from every store.  The instances keep their field values."""

    def remove_value(self, value_id: str) -> None:
        self.remove_values([value_id])

    @abstractmethod
    def remove_values(self, value_ids: Iterable[str]) -> None: ...

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def read_model(self, model_type: type[M], model_id: str | None = None) -> M | None:
        """Return the model with *model_id*, or ``None`` when no store knows it."""
        return self.read_models(model_type, [model_id]).get(validate_model_id(model_id))

    @abstractmethod
    def read_models(self, model_type: type[M], model_ids: Iterable[str | None]) -> dict[str | None, M]:
        """Read several models of one type.  Ids without state are left out of the result."""

    def read_value(self, value_id: str, scope: Scope = Scope.SESSION) -> StateObject | None:
        return self.read_values({value_id: scope}).get(value_id)

    @abstractmethod
    def read_values(
        self,
        value_ids: Iterable[str] | Mapping[str, Scope],
        scope: Scope = Scope.SESSION,
    ) -> dict[str, StateObject]:
        """Read several values.  A mapping assigns each id its own scope."""

    @abstractmethod
    def exists(self, model_type: type[StateModel], model_id: str | None = None, *, scope: Scope = Scope.SESSION) -> bool:
        """Whether state of the model is present in the store of *scope*."""

    @abstractmethod
    def value_exists(self, value_id: str, *, scope: Scope = Scope.SESSION) -> bool: ...

"""Handler reconciling session state with durable stores.

Reads look in the session first.  A session record that already carries
every user- and application-scoped field answers the read on its own.
Otherwise the durable stores of the scopes the model declares fields in
are asked, their documents are merged onto one model instance and the
merged model is written back to the session, so later reads within the
same interaction are answered from there.

Writes go to the session and to the durable store of every scope the
model has fields in.  All payloads are computed and all stores are
provisioned before the first write, so a failure in either step writes
nothing.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping
from typing import Any, TypeVar

from skillstate._redact import redact_identity
from skillstate.exceptions import StateConfigError, StateSerializationError
from skillstate.fields import field_names_for, has_any_field
from skillstate.handlers.base import make_state_object, value_requests
from skillstate.handlers.session import SessionStateHandler, jsonable_value
from skillstate.models._base import StateModel, validate_model_id
from skillstate.models.state_object import StateObject
from skillstate.scope import DURABLE_SCOPES, Scope
from skillstate.serialization import deserialize_onto, parse_document
from skillstate.session import AttributeBag
from skillstate.stores._base import DurableStore, StateStore, StoreLocation

_logger = logging.getLogger(__name__)

M = TypeVar("M", bound=StateModel)


def _encode_value(value: Any, value_id: str) -> str:
    return json.dumps(jsonable_value(value, value_id=value_id), separators=(",", ":"), ensure_ascii=False)


def _decode_value(payload: Any, value_id: str) -> Any:
    if isinstance(payload, (bytes, bytearray)):
        payload = bytes(payload).decode("utf-8")
    try:
        return json.loads(payload)
    except (TypeError, ValueError) as exc:
        raise StateSerializationError(f"Stored value of {value_id!r} is not JSON") from exc


class ReconcilingStateHandler(SessionStateHandler):
    """Session state backed by durable stores for user and application scope.

    Parameters
    ----------
    session : AttributeBag
        Attribute map of the current interaction.
    store : StateStore
        Durable store for user-scoped state, and for application-scoped
        state unless *application_store* is given.
    application_store : StateStore or None
        Separate durable store for application-scoped state.
    user_id : str or None
        Identity used for user-scoped state instead of the session user.
    """

    def __init__(
        self,
        session: AttributeBag,
        store: StateStore,
        *,
        application_store: StateStore | None = None,
        user_id: str | None = None,
    ) -> None:
        super().__init__(session, user_id=user_id)
        if store is None:
            raise StateConfigError("A reconciling handler needs a durable store")
        self._store = store
        self._application_store = application_store
        if user_id:
            self._sync_user_id()

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def application_store(self) -> StateStore:
        return self._application_store or self._store

    def store_for(self, scope: Scope) -> StateStore:
        if scope is Scope.USER:
            return self._store
        if scope is Scope.APPLICATION:
            return self.application_store
        return self._session_store

    def with_user_id(self, user_id: str | None) -> ReconcilingStateHandler:
        super().with_user_id(user_id)
        self._sync_user_id()
        return self

    def _sync_user_id(self) -> None:
        for store in (self._store, self._application_store):
            if isinstance(store, DurableStore):
                store.user_id = self.user_id

    def _addressable(self, scope: Scope) -> bool:
        store = self.store_for(scope)
        return not isinstance(store, DurableStore) or store.can_address(scope)

    @staticmethod
    def is_scope_complete(model_type: type[StateModel], record: Any) -> bool:
        """Whether a session record already carries every durable field of *model_type* kept in the session."""
        durable = field_names_for(model_type, Scope.USER) | field_names_for(model_type, Scope.APPLICATION)
        # fields ignored in SESSION never reach a session record
        durable &= field_names_for(model_type, Scope.SESSION)
        if not durable or isinstance(record, StateModel):
            return True
        return durable <= parse_document(record).keys()

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    def read_model(self, model_type: type[M], model_id: str | None = None, *, refresh: bool = False) -> M | None:
        return self.read_models(model_type, [model_id], refresh=refresh).get(validate_model_id(model_id))

    def read_models(
        self,
        model_type: type[M],
        model_ids: Iterable[str | None],
        *,
        refresh: bool = False,
    ) -> dict[str | None, M]:
        """Read several models of one type with one durable fetch per scope.

        With *refresh* the session records are merged with durable state
        even when they are complete.
        """
        ids = self._unique_ids(model_ids)
        answered: dict[str | None, M] = {}
        pending: dict[str | None, M] = {}
        in_session: set[str | None] = set()

        for model_id in ids:
            record = self._session_record(model_type, model_id)
            if record is None:
                pending[model_id] = self.create_model(model_type, model_id)
                continue
            model = self._from_session(model_type, model_id, record)
            in_session.add(model_id)
            if not refresh and self.is_scope_complete(model_type, record):
                answered[model_id] = model
            else:
                pending[model_id] = model

        changed: set[str | None] = set()
        if pending:
            for scope in DURABLE_SCOPES:
                if not has_any_field(model_type, scope):
                    continue
                store = self.store_for(scope)
                store.ensure_ready(scope)
                locations = {model_id: store.key_for(model_type, model_id, scope) for model_id in pending}
                payloads = store.get_many(list(locations.values()))
                _logger.debug(
                    "Fetched %d of %d %s records of %s from %s",
                    len(payloads),
                    len(locations),
                    scope,
                    model_type.__name__,
                    store.name,
                )
                for model_id, location in locations.items():
                    payload = payloads.get(location)
                    if payload is not None and deserialize_onto(pending[model_id], payload, scope):
                        changed.add(model_id)

        for model_id, model in pending.items():
            if model_id in changed:
                self._cache(model)
                answered[model_id] = model
            elif model_id in in_session:
                answered[model_id] = model

        return {model_id: answered[model_id] for model_id in ids if model_id in answered}

    def write_models(self, models: Iterable[StateModel]) -> None:
        models = list(models)
        documents = [(model.attribute_key, model.to_map(Scope.SESSION)) for model in models]
        batches: dict[Scope, list[tuple[StoreLocation, str]]] = {}
        for scope in DURABLE_SCOPES:
            store = self.store_for(scope)
            items = [
                (store.key_for(type(model), model.id, scope), model.to_json(scope))
                for model in models
                if model.has_scoped_fields(scope)
            ]
            if items:
                batches[scope] = items

        for scope in batches:
            self.store_for(scope).ensure_ready(scope)

        for key, document in documents:
            self._session_store.put(self._session_store.location(key), document)
        for scope, items in batches.items():
            _logger.debug("Writing %d %s records to %s", len(items), scope, self.store_for(scope).name)
            self.store_for(scope).put_many(items)

    def remove_models(self, models: Iterable[StateModel]) -> None:
        """Remove *models* from the session and from both durable scopes.

        Durable records are deleted even if the model declares no fields in
        their scope.  User records are skipped when there is no user to
        address and none of the models has user-scoped fields.
        """
        models = list(models)
        super().remove_models(models)
        for scope in DURABLE_SCOPES:
            if not models:
                break
            if not self._addressable(scope) and not any(model.has_scoped_fields(scope) for model in models):
                _logger.debug("Skipping %s removal without identity %s", scope, redact_identity(self.user_id))
                continue
            store = self.store_for(scope)
            store.delete_many([store.key_for(type(model), model.id, scope) for model in models])

    def exists(self, model_type: type[StateModel], model_id: str | None = None, *, scope: Scope = Scope.SESSION) -> bool:
        """Check presence in the store of *scope* without reading any model."""
        if scope is Scope.SESSION:
            return super().exists(model_type, model_id, scope=scope)
        store = self.store_for(scope)
        return store.exists(store.key_for(model_type, model_id, scope))

    # ------------------------------------------------------------------
    # Values
    # ------------------------------------------------------------------

    def write_values(self, states: Iterable[StateObject]) -> None:
        states = list(states)
        batches: dict[Scope, list[tuple[StoreLocation, str]]] = defaultdict(list)
        for state in states:
            if state.scope in DURABLE_SCOPES:
                store = self.store_for(state.scope)
                batches[state.scope].append((store.location(state.id, state.scope), _encode_value(state.value, state.id)))

        for scope in batches:
            self.store_for(scope).ensure_ready(scope)
        super().write_values(states)
        for scope, items in batches.items():
            self.store_for(scope).put_many(items)

    def remove_values(self, value_ids: Iterable[str]) -> None:
        value_ids = list(value_ids)
        super().remove_values(value_ids)
        for scope in DURABLE_SCOPES:
            if not value_ids or not self._addressable(scope):
                continue
            store = self.store_for(scope)
            store.delete_many([store.location(value_id, scope) for value_id in value_ids])

    def read_values(
        self,
        value_ids: Iterable[str] | Mapping[str, Scope],
        scope: Scope = Scope.SESSION,
    ) -> dict[str, StateObject]:
        requests = value_requests(value_ids, scope)
        found = super().read_values(requests)

        missing: dict[Scope, list[str]] = defaultdict(list)
        for value_id, value_scope in requests.items():
            if value_id not in found and value_scope in DURABLE_SCOPES:
                missing[value_scope].append(value_id)

        for value_scope, ids in missing.items():
            store = self.store_for(value_scope)
            store.ensure_ready(value_scope)
            locations = {value_id: store.location(value_id, value_scope) for value_id in ids}
            payloads = store.get_many(list(locations.values()))
            for value_id, location in locations.items():
                if location not in payloads:
                    continue
                value = _decode_value(payloads[location], value_id)
                self._session_store.put(self._session_store.location(value_id), value)
                found[value_id] = make_state_object(value_id, value, value_scope)

        return {value_id: found[value_id] for value_id in requests if value_id in found}

    def value_exists(self, value_id: str, *, scope: Scope = Scope.SESSION) -> bool:
        if scope is Scope.SESSION:
            return super().value_exists(value_id, scope=scope)
        store = self.store_for(scope)
        return store.exists(store.location(value_id, scope))

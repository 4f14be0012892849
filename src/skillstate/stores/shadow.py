"""AWS IoT device shadow adapter.

Every owner gets a thing: the application thing is named after the
application id, each user thing after the application thing plus a SHA-1 of
the user id (user ids are too long for thing names).  A record is one node
of the shadow document, keyed by its attribute key::

    {"state": {"desired": {"Profile:abc": {...}}, "reported": {"Profile:abc": {...}}}}

Two clients are injected: ``iot_client`` manages things (``describe_thing``,
``create_thing``) and ``data_client`` reads and updates shadows
(``get_thing_shadow``, ``update_thing_shadow``).  The latter can be an HTTP
client or :class:`skillstate.stores.mqtt.MqttShadowClient`.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections import defaultdict
from collections.abc import Sequence
from typing import Any

from skillstate.config import StateConfig
from skillstate.exceptions import StateConfigError, StateProvisioningError, StateSerializationError
from skillstate.scope import Scope
from skillstate.stores._base import DurableStore, ReadinessGuard, StoreLocation, client_error_code

_logger = logging.getLogger(__name__)

THING_ATTRIBUTE_NAME = "name"
THING_ATTRIBUTE_USER = "amzn-user-id"
THING_ATTRIBUTE_APP = "amzn-app-id"

_NOT_FOUND = "ResourceNotFoundException"
_ALREADY_EXISTS = "ResourceAlreadyExistsException"


def application_thing_name(application_id: str) -> str:
    """Thing holding application state.  Thing names may not contain dots."""
    return application_id.replace(".", "-")


def user_thing_name(application_id: str, user_id: str) -> str:
    """Thing holding the state of one user."""
    digest = hashlib.sha1(user_id.encode("utf-8")).hexdigest()
    return f"{application_thing_name(application_id)}-{digest}"


def _read_payload(response: dict[str, Any]) -> bytes | str:
    payload = response.get("payload", b"")
    if hasattr(payload, "read"):
        payload = payload.read()
    return payload


class ShadowStore(DurableStore):
    """User and application state in AWS IoT device shadows."""

    name = "shadow"
    supports_batch = True

    def __init__(
        self,
        iot_client: Any,
        data_client: Any,
        *,
        user_id: str | None,
        application_id: str,
        config: StateConfig | None = None,
    ) -> None:
        self._config = config or StateConfig()
        super().__init__(
            user_id=user_id,
            application_id=application_id,
            application_container=self._config.application_container,
        )
        if not application_id:
            raise StateConfigError("Device shadow storage needs an application id to name things")
        self._iot = iot_client
        self._data = data_client
        self._guard = ReadinessGuard()

    def container_for(self, scope: Scope) -> str:
        if scope is Scope.USER:
            if not self._user_id:
                raise StateConfigError("shadow needs a user id to address user-scoped state")
            return user_thing_name(self._application_id, self._user_id)
        if scope is Scope.APPLICATION:
            return application_thing_name(self._application_id)
        raise StateConfigError(f"shadow only holds user- or application-scoped state, not {scope}")

    # ------------------------------------------------------------------
    # Shadow document access
    # ------------------------------------------------------------------

    def _fetch_state(self, thing_name: str) -> dict[str, Any] | None:
        """Return the ``state`` object of the shadow, or ``None`` when there is no shadow."""
        try:
            response = self._data.get_thing_shadow(thingName=thing_name)
        except Exception as exc:
            if client_error_code(exc) == _NOT_FOUND:
                _logger.debug("No shadow for thing %s", thing_name)
                return None
            raise self._failure("get_thing_shadow", exc, target=thing_name) from exc

        raw = _read_payload(response)
        if not raw:
            return {}
        try:
            document = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise StateSerializationError(f"Shadow of thing '{thing_name}' is not JSON") from exc
        state = document.get("state") if isinstance(document, dict) else None
        return state if isinstance(state, dict) else {}

    @staticmethod
    def _node(state: dict[str, Any], key: str) -> Any:
        for section in ("reported", "desired"):
            tree = state.get(section)
            if isinstance(tree, dict) and tree.get(key) is not None:
                return tree[key]
        return None

    def _update(self, thing_name: str, nodes: dict[str, Any], *, tolerate_missing: bool = False) -> None:
        payload = json.dumps(
            {"state": {"desired": nodes, "reported": nodes}},
            separators=(",", ":"),
            ensure_ascii=False,
        ).encode("utf-8")
        try:
            self._data.update_thing_shadow(thingName=thing_name, payload=payload)
        except Exception as exc:
            if tolerate_missing and client_error_code(exc) == _NOT_FOUND:
                return
            raise self._failure("update_thing_shadow", exc, target=thing_name) from exc

    @staticmethod
    def _by_thing(locations: Sequence[StoreLocation]) -> dict[str, list[StoreLocation]]:
        grouped: dict[str, list[StoreLocation]] = defaultdict(list)
        for location in locations:
            grouped[location.container].append(location)
        return grouped

    # ------------------------------------------------------------------
    # Store contract
    # ------------------------------------------------------------------

    def get(self, location: StoreLocation) -> str | None:
        return self.get_many([location]).get(location)

    def get_many(self, locations: Sequence[StoreLocation]) -> dict[StoreLocation, str]:
        found: dict[StoreLocation, str] = {}
        for thing_name, group in self._by_thing(locations).items():
            state = self._fetch_state(thing_name)
            if not state:
                continue
            for location in group:
                node = self._node(state, location.key)
                if node is not None:
                    found[location] = json.dumps(node, separators=(",", ":"), ensure_ascii=False)
        return found

    def put(self, location: StoreLocation, payload: str) -> None:
        self.put_many([(location, payload)])

    def put_many(self, items: Sequence[tuple[StoreLocation, str]]) -> None:
        nodes_by_thing: dict[str, dict[str, Any]] = defaultdict(dict)
        for location, payload in items:
            try:
                nodes_by_thing[location.container][location.key] = json.loads(payload)
            except ValueError as exc:
                raise StateSerializationError(f"Payload for '{location.key}' is not JSON") from exc
        for thing_name, nodes in nodes_by_thing.items():
            _logger.debug("Shadow update thing=%s nodes=%s", thing_name, sorted(nodes))
            self._update(thing_name, nodes)

    def delete(self, location: StoreLocation) -> None:
        self.delete_many([location])

    def delete_many(self, locations: Sequence[StoreLocation]) -> None:
        for thing_name, group in self._by_thing(locations).items():
            self._update(thing_name, {loc.key: None for loc in group}, tolerate_missing=True)

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def ensure_ready(self, scope: Scope) -> None:
        thing_name = self.container_for(scope)
        self._guard.ensure(thing_name, lambda: self._provision_thing(thing_name, scope))

    def _thing_exists(self, thing_name: str) -> bool:
        try:
            self._iot.describe_thing(thingName=thing_name)
        except Exception as exc:
            if client_error_code(exc) == _NOT_FOUND:
                return False
            raise StateProvisioningError(
                f"Could not describe thing '{thing_name}': {exc}",
                store=self.name,
                operation="describe_thing",
                code=client_error_code(exc),
            ) from exc
        return True

    def _provision_thing(self, thing_name: str, scope: Scope) -> None:
        if self._thing_exists(thing_name):
            return
        attributes = {THING_ATTRIBUTE_NAME: thing_name, THING_ATTRIBUTE_APP: self._application_id}
        if scope is Scope.USER and self._user_id:
            attributes[THING_ATTRIBUTE_USER] = self._user_id
        try:
            self._iot.create_thing(thingName=thing_name, attributePayload={"attributes": attributes})
        except Exception as exc:
            if client_error_code(exc) == _ALREADY_EXISTS:
                return
            raise StateProvisioningError(
                f"Could not create thing '{thing_name}': {exc}",
                store=self.name,
                operation="create_thing",
                code=client_error_code(exc),
            ) from exc
        _logger.info("Thing %s created for %s state", thing_name, scope)

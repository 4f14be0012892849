"""Session-map adapter: records live in the attributes of the current interaction."""

from __future__ import annotations

import logging
from typing import Any

from skillstate.scope import Scope
from skillstate.session import AttributeBag
from skillstate.stores._base import StateStore, StoreLocation

_logger = logging.getLogger(__name__)

SESSION_CONTAINER = "session"


class SessionStore(StateStore):
    """Reads and writes records straight into an :class:`AttributeBag`.

    The attribute key is the session key.  Records of every scope share the
    same map, as session attributes include all scopes.
    """

    name = "session"

    def __init__(self, session: AttributeBag) -> None:
        self._session = session

    @property
    def session(self) -> AttributeBag:
        return self._session

    def location(self, key: str, scope: Scope = Scope.SESSION) -> StoreLocation:
        return StoreLocation(scope=scope, container=SESSION_CONTAINER, key=key)

    def get(self, location: StoreLocation) -> Any:
        return self._session.get_attribute(location.key)

    def put(self, location: StoreLocation, payload: Any) -> None:
        _logger.debug("Session attribute set key=%s", location.key)
        self._session.set_attribute(location.key, payload)

    def delete(self, location: StoreLocation) -> None:
        if self._session.has_attribute(location.key):
            _logger.debug("Session attribute removed key=%s", location.key)
        self._session.remove_attribute(location.key)

    def exists(self, location: StoreLocation) -> bool:
        return self._session.has_attribute(location.key)

    def keys(self) -> list[str]:
        return list(self._session.attribute_keys())

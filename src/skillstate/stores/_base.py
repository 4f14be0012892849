"""Store adapter contract shared by the session map and the durable stores."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, ClassVar

from skillstate.exceptions import SkillStateError, StateConfigError, StateStoreError
from skillstate.models._base import attribute_key
from skillstate.scope import Scope

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreLocation:
    """Where one scoped record lives.

    ``container`` partitions records by identity (a user id, or a fixed
    application sentinel) and ``key`` is the attribute key of the record.
    """

    scope: Scope
    container: str
    key: str


def client_error_code(exc: BaseException) -> str | None:
    """Return the service error code of an AWS SDK style client error, if any."""
    response = getattr(exc, "response", None)
    if not isinstance(response, Mapping):
        return None
    error = response.get("Error")
    if not isinstance(error, Mapping):
        return None
    code = error.get("Code")
    return str(code) if code is not None else None


def chunked(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class ReadinessGuard:
    """Once-only provisioning per resource name, safe to share between threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ready: set[str] = set()

    def is_ready(self, name: str) -> bool:
        return name in self._ready

    def mark_ready(self, name: str) -> None:
        with self._lock:
            self._ready.add(name)

    def ensure(self, name: str, provision: Callable[[], None]) -> None:
        """Run *provision* unless *name* is already known to be ready.

        A failing *provision* leaves *name* unapproved so the next call
        tries again.
        """
        if name in self._ready:
            return
        with self._lock:
            if name in self._ready:
                return
            _logger.debug("Provisioning %s", name)
            provision()
            self._ready.add(name)


class StateStore(ABC):
    """A place where scoped records are read, written and deleted.

    Subclasses translate a :class:`StoreLocation` into the addressing
    scheme of their backing technology.  A missing record is never an
    error: :meth:`get` returns ``None`` and :meth:`delete` does nothing.
    """

    name: ClassVar[str] = "store"
    supports_batch: ClassVar[bool] = False

    @abstractmethod
    def location(self, key: str, scope: Scope) -> StoreLocation:
        """Location of the record with attribute key *key* in *scope*."""

    def key_for(self, model_type: type, model_id: str | None, scope: Scope) -> StoreLocation:
        return self.location(attribute_key(model_type, model_id), scope)

    @abstractmethod
    def get(self, location: StoreLocation) -> Any:
        """Return the stored payload or ``None`` when nothing is stored."""

    @abstractmethod
    def put(self, location: StoreLocation, payload: Any) -> None: ...

    @abstractmethod
    def delete(self, location: StoreLocation) -> None: ...

    def ensure_ready(self, scope: Scope) -> None:
        """Provision whatever backs *scope* the first time it is needed."""

    def exists(self, location: StoreLocation) -> bool:
        return self.get(location) is not None

    def get_many(self, locations: Sequence[StoreLocation]) -> dict[StoreLocation, Any]:
        """Fetch several records.  Absent records are left out of the result."""
        found: dict[StoreLocation, Any] = {}
        for location in locations:
            payload = self.get(location)
            if payload is not None:
                found[location] = payload
        return found

    def put_many(self, items: Sequence[tuple[StoreLocation, Any]]) -> None:
        for location, payload in items:
            self.put(location, payload)

    def delete_many(self, locations: Sequence[StoreLocation]) -> None:
        for location in locations:
            self.delete(location)

    def _failure(self, operation: str, exc: BaseException, *, target: str = "") -> SkillStateError:
        """Wrap a client exception raised during *operation*."""
        if isinstance(exc, SkillStateError):
            return exc
        code = client_error_code(exc)
        message = f"{self.name} {operation} failed"
        if target:
            message = f"{message} for '{target}'"
        return StateStoreError(f"{message}: {exc}", store=self.name, operation=operation, code=code)


class DurableStore(StateStore):
    """Base for stores that outlive an interaction.

    USER records are partitioned by the user id, APPLICATION records by a
    fixed container name, so the two never collide for the same key.
    """

    def __init__(self, *, user_id: str | None, application_id: str, application_container: str) -> None:
        self._user_id = user_id
        self._application_id = application_id
        self._application_container = application_container

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @user_id.setter
    def user_id(self, value: str | None) -> None:
        self._user_id = value

    @property
    def application_id(self) -> str:
        return self._application_id

    def can_address(self, scope: Scope) -> bool:
        """Whether records of *scope* can be located with the identity at hand."""
        if scope is Scope.USER:
            return bool(self._user_id)
        return scope is Scope.APPLICATION

    def container_for(self, scope: Scope) -> str:
        if scope is Scope.USER:
            if not self._user_id:
                raise StateConfigError(f"{self.name} needs a user id to address user-scoped state")
            return self._user_id
        if scope is Scope.APPLICATION:
            return self._application_container
        raise StateConfigError(f"{self.name} only holds user- or application-scoped state, not {scope}")

    def location(self, key: str, scope: Scope) -> StoreLocation:
        return StoreLocation(scope=scope, container=self.container_for(scope), key=key)

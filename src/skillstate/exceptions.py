"""Custom exception hierarchy for skillstate."""

from __future__ import annotations

from typing import Any


class SkillStateError(Exception):
    """Base exception for all skillstate errors.

    Carries the model and handler involved, when known.  If only a model is
    given, the handler bound to that model is used.
    """

    def __init__(
        self,
        message: str,
        *,
        model: Any = None,
        handler: Any = None,
    ) -> None:
        self.model = model
        if handler is None and model is not None:
            handler = getattr(model, "handler", None)
        self.handler = handler
        super().__init__(message)


class StateConfigError(SkillStateError):
    """Invalid or missing configuration (ids, handler binding, field declarations)."""


class StateSerializationError(SkillStateError):
    """A model could not be converted to or from its stored representation."""


class StateStoreError(SkillStateError):
    """A backing store call failed for a reason other than not-found."""

    def __init__(
        self,
        message: str,
        *,
        store: str = "",
        operation: str = "",
        code: str | None = None,
        model: Any = None,
        handler: Any = None,
    ) -> None:
        self.store = store
        self.operation = operation
        self.code = code
        super().__init__(message, model=model, handler=handler)


class StateProvisioningError(StateStoreError):
    """A table, bucket or thing could not be created or did not become ready in time."""


class ShadowRequestError(StateStoreError):
    """A device shadow request was rejected.

    Exposes ``response`` in the same shape as AWS SDK client errors so that
    store adapters can treat MQTT and HTTP shadow clients alike.
    """

    def __init__(
        self,
        message: str,
        *,
        code: str,
        thing_name: str = "",
        operation: str = "",
    ) -> None:
        self.thing_name = thing_name
        self.response: dict[str, Any] = {"Error": {"Code": code, "Message": message}}
        super().__init__(message, store="shadow", operation=operation, code=code)

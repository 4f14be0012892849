"""Base model for scoped state.

Every persisted model inherits from :class:`StateModel` which provides:

* an optional id (``[A-Za-z0-9_-]+``) distinguishing several instances of
  the same model type; models without id are singletons of their type
* a non-owning reference to the handler that reads and writes it
* the per-class field metadata table (see :mod:`skillstate.fields`)
* generic field access that prefers declared accessors and mutators
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, ClassVar, TypeVar

from pydantic import BaseModel, ConfigDict, PrivateAttr

from skillstate.exceptions import SkillStateError, StateConfigError, StateSerializationError
from skillstate.fields import FieldSpec, build_field_table, has_any_field
from skillstate.scope import Scope
from skillstate.serialization import deserialize_onto, serialize, to_document

if TYPE_CHECKING:
    from skillstate.handlers.base import StateHandler

M = TypeVar("M", bound="StateModel")

ATTRIBUTE_KEY_SEPARATOR = ":"
_VALID_ID = re.compile(r"[A-Za-z0-9_\-]+")


def validate_model_id(model_id: str | None) -> str | None:
    """Return *model_id* normalised (empty means singleton) or raise :class:`StateConfigError`."""
    if model_id is None or model_id == "":
        return None
    if not isinstance(model_id, str) or _VALID_ID.fullmatch(model_id) is None:
        raise StateConfigError(
            f"Model id {model_id!r} contains illegal characters. Ensure it matches {_VALID_ID.pattern}"
        )
    return model_id


def type_name(model_type: type) -> str:
    return getattr(model_type, "_STATE_TYPE_NAME", None) or model_type.__name__


def attribute_key(model_type: type, model_id: str | None = None) -> str:
    """Key of a model instance in the session and in durable stores.

    ``TypeName`` for singletons, ``TypeName:id`` otherwise.
    """
    name = type_name(model_type)
    if model_id:
        return f"{name}{ATTRIBUTE_KEY_SEPARATOR}{model_id}"
    return name


def split_attribute_key(model_type: type, key: str) -> str | None:
    """Recover the model id from an attribute key produced by :func:`attribute_key`."""
    name = type_name(model_type)
    prefix = f"{name}{ATTRIBUTE_KEY_SEPARATOR}"
    if key.startswith(prefix):
        return key[len(prefix) :] or None
    return None


class StateModel(BaseModel):
    """Base for models whose fields are persisted by a state handler."""

    model_config = ConfigDict(
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    _STATE_SCOPE: ClassVar[Scope | None] = None
    """Default scope for fields without their own ``Save`` marker."""

    _STATE_TYPE_NAME: ClassVar[str | None] = None
    """Type name used in attribute keys (defaults to the class name)."""

    __state_fields__: ClassVar[tuple[FieldSpec, ...]] = ()

    _id: str | None = PrivateAttr(default=None)
    _handler: Any = PrivateAttr(default=None)

    @classmethod
    def __pydantic_init_subclass__(cls, **kwargs: Any) -> None:
        super().__pydantic_init_subclass__(**kwargs)
        cls.__state_fields__ = build_field_table(cls)

    # ------------------------------------------------------------------
    # Identity and handler binding
    # ------------------------------------------------------------------

    @property
    def id(self) -> str | None:
        return self._id

    def assign_id(self: M, model_id: str | None) -> M:
        """Set the id of this instance.  An empty id turns it into the singleton."""
        self._id = validate_model_id(model_id)
        return self

    @property
    def handler(self) -> StateHandler | None:
        return self._handler

    def bind(self: M, handler: StateHandler | None) -> M:
        """Associate the handler used by :meth:`save_state` and :meth:`remove_state`."""
        self._handler = handler
        return self

    @property
    def attribute_key(self) -> str:
        return attribute_key(type(self), self._id)

    # ------------------------------------------------------------------
    # Persistence shortcuts
    # ------------------------------------------------------------------

    def _require_handler(self, action: str) -> StateHandler:
        if self._handler is None:
            raise StateConfigError(
                f"{action} is not allowed for '{self}' as it has no handler. "
                "Bind a handler or create the model through a handler.",
                model=self,
            )
        return self._handler

    def save_state(self) -> None:
        """Write all persisted fields through the bound handler."""
        self._require_handler("Saving state").write_model(self)

    def remove_state(self) -> None:
        """Remove this model from every store.  Field values of this instance are kept."""
        self._require_handler("Removing state").remove_model(self)

    # ------------------------------------------------------------------
    # Field access
    # ------------------------------------------------------------------

    def _spec(self, name: str) -> FieldSpec:
        for spec in type(self).__state_fields__:
            if spec.name == name:
                return spec
        raise StateSerializationError(f"Model '{self}' has no field '{name}'", model=self)

    def get_field(self, name: str) -> Any:
        """Read a field, preferring its declared getter over direct attribute access."""
        spec = self._spec(name)
        try:
            if spec.getter is not None:
                return spec.getter(self)
            return getattr(self, name)
        except SkillStateError:
            raise
        except Exception as exc:
            raise StateSerializationError(
                f"Could not read field '{name}' of model '{self}'",
                model=self,
            ) from exc

    def set_field(self, name: str, value: Any) -> None:
        """Write a field, preferring its declared setter over validated assignment."""
        spec = self._spec(name)
        try:
            if spec.setter is not None:
                spec.setter(self, value)
            else:
                setattr(self, name, value)
        except SkillStateError:
            raise
        except Exception as exc:
            raise StateSerializationError(
                f"Could not write field '{name}' of model '{self}'",
                model=self,
            ) from exc

    # ------------------------------------------------------------------
    # Scoped representation
    # ------------------------------------------------------------------

    def has_scoped_fields(self, scope: Scope) -> bool:
        return has_any_field(type(self), scope)

    def to_map(self, scope: Scope = Scope.SESSION) -> dict[str, Any]:
        return to_document(self, scope)

    def to_json(self, scope: Scope = Scope.SESSION) -> str:
        return serialize(self, scope)

    def from_json(self, payload: str | bytes | dict[str, Any], scope: Scope = Scope.SESSION) -> bool:
        """Apply the fields of *payload* that take part in *scope*.  Returns ``True`` if any was set."""
        return deserialize_onto(self, payload, scope)

    def __str__(self) -> str:
        return self.attribute_key


def create_model(model_type: type[M], handler: StateHandler | None, model_id: str | None = None) -> M:
    """Instantiate *model_type* bound to *handler* with the given id.

    The id is validated before anything is instantiated.
    """
    if handler is None:
        raise StateConfigError(f"Model '{type_name(model_type)}' needs a handler for its initialization.")
    valid_id = validate_model_id(model_id)
    try:
        model = model_type()
    except Exception as exc:
        raise StateConfigError(
            f"Could not create model of '{type_name(model_type)}'. Ensure every field has a default.",
            handler=handler,
        ) from exc
    return model.assign_id(valid_id).bind(handler)

"""Field metadata and scope classification.

Fields opt into persistence with ``typing.Annotated`` markers::

    class Profile(StateModel):
        nickname: Annotated[str | None, Save(Scope.USER)] = None
        highscore: Annotated[int, Save(Scope.APPLICATION)] = 0
        last_intent: Annotated[str | None, Save()] = None
        scratch: Annotated[str | None, Ignore()] = None

A class may declare ``_STATE_SCOPE: ClassVar[Scope | None]`` as default
scope for every field that has no ``Save`` marker of its own.  It must be
annotated as ``ClassVar``, otherwise pydantic turns it into a private
attribute.  The resulting metadata table is built once per model class and
is plain data from then on.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable, Iterable
from typing import Any

from skillstate.exceptions import StateConfigError
from skillstate.scope import Scope

_ALL_SCOPES: frozenset[Scope] = frozenset(Scope)


@dataclasses.dataclass(frozen=True)
class Save:
    """Marks a field as persisted in *scope* (SESSION when omitted).

    ``getter`` and ``setter`` optionally name methods of the model that are
    used instead of plain attribute access.
    """

    scope: Scope = Scope.SESSION
    getter: str | None = None
    setter: str | None = None


class Ignore:
    """Excludes a field from persistence in the given scopes (all scopes when none given)."""

    __slots__ = ("scopes",)

    def __init__(self, *scopes: Scope) -> None:
        self.scopes: frozenset[Scope] = frozenset(scopes) if scopes else _ALL_SCOPES

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Ignore) and other.scopes == self.scopes

    def __hash__(self) -> int:
        return hash(self.scopes)

    def __repr__(self) -> str:
        names = ", ".join(sorted(scope.name for scope in self.scopes))
        return f"Ignore({names})"


@dataclasses.dataclass(frozen=True)
class FieldSpec:
    """Persistence metadata of one declared model field."""

    name: str
    participates: bool
    scope: Scope
    ignored_in: frozenset[Scope] = frozenset()
    getter: Callable[[Any], Any] | None = None
    setter: Callable[[Any, Any], Any] | None = None

    def participates_in(self, scope: Scope) -> bool:
        """A field takes part in *scope* if it is saved, covered by *scope* and not ignored there."""
        return self.participates and scope.includes(self.scope) and scope not in self.ignored_in


def _marker(metadata: Iterable[Any], marker_type: type) -> Any:
    for item in metadata:
        if isinstance(item, marker_type):
            return item
    return None


def _resolve_accessor(model_type: type, field_name: str, method_name: str | None, kind: str) -> Callable[..., Any] | None:
    if method_name is None:
        return None
    method = getattr(model_type, method_name, None)
    if not callable(method):
        raise StateConfigError(
            f"{kind} '{method_name}' declared for field '{field_name}' of '{model_type.__name__}' is not a method"
        )
    return method


def build_field_table(model_type: type) -> tuple[FieldSpec, ...]:
    """Compute the metadata table of a pydantic model class.

    Raises :class:`StateConfigError` when a declared accessor or mutator
    does not exist on the class.
    """
    class_scope: Scope | None = getattr(model_type, "_STATE_SCOPE", None)
    model_fields: dict[str, Any] = getattr(model_type, "model_fields", {})

    specs: list[FieldSpec] = []
    for name, info in model_fields.items():
        metadata = getattr(info, "metadata", ())
        save: Save | None = _marker(metadata, Save)
        ignore: Ignore | None = _marker(metadata, Ignore)

        if save is not None:
            participates, scope = True, save.scope
        elif class_scope is not None:
            participates, scope = True, class_scope
        else:
            participates, scope = False, Scope.SESSION

        specs.append(
            FieldSpec(
                name=name,
                participates=participates,
                scope=scope,
                ignored_in=ignore.scopes if ignore is not None else frozenset(),
                getter=_resolve_accessor(model_type, name, save.getter if save else None, "Getter"),
                setter=_resolve_accessor(model_type, name, save.setter if save else None, "Setter"),
            )
        )
    return tuple(specs)


def describe(model_type: type) -> tuple[FieldSpec, ...]:
    """Return the metadata table of *model_type* (empty for types without one)."""
    table = getattr(model_type, "__state_fields__", None)
    if table is None:
        return ()
    return tuple(table)


def fields_for(model_type: type, scope: Scope) -> tuple[FieldSpec, ...]:
    """Return the fields of *model_type* that take part in *scope*, in declaration order."""
    return tuple(spec for spec in describe(model_type) if spec.participates_in(scope))


def has_any_field(model_type: type, scope: Scope) -> bool:
    return any(spec.participates_in(scope) for spec in describe(model_type))


def field_names_for(model_type: type, scope: Scope) -> frozenset[str]:
    return frozenset(spec.name for spec in fields_for(model_type, scope))

"""Scoped conversion between models and their stored documents.

A document is a flat JSON object holding the model id plus every field that
takes part in the requested scope.  Reading a document back only touches
fields of that scope, even when the document carries more keys.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from pydantic_core import PydanticSerializationError, to_jsonable_python

from skillstate.exceptions import StateSerializationError
from skillstate.fields import fields_for
from skillstate.scope import Scope

if TYPE_CHECKING:
    from skillstate.models._base import StateModel

ID_KEY = "id"


def to_document(model: StateModel, scope: Scope) -> dict[str, Any]:
    """Return the JSON-ready document of *model* restricted to *scope*."""
    document: dict[str, Any] = {ID_KEY: model.id}
    for spec in fields_for(type(model), scope):
        value = model.get_field(spec.name)
        try:
            document[spec.name] = to_jsonable_python(value)
        except PydanticSerializationError as exc:
            raise StateSerializationError(
                f"Value of field '{spec.name}' of model '{model}' is not serializable",
                model=model,
            ) from exc
    return document


def serialize(model: StateModel, scope: Scope) -> str:
    """Serialize *model* restricted to *scope* as compact JSON."""
    return json.dumps(to_document(model, scope), separators=(",", ":"), ensure_ascii=False)


def parse_document(payload: str | bytes | Mapping[str, Any], *, model: Any = None) -> dict[str, Any]:
    """Parse a stored payload into a document.

    Empty payloads read as an empty document.  Anything that is not a JSON
    object raises :class:`StateSerializationError`.
    """
    if isinstance(payload, Mapping):
        return dict(payload)

    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = bytes(payload).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise StateSerializationError("Stored state is not valid UTF-8", model=model) from exc

    if not isinstance(payload, str):
        raise StateSerializationError(f"Unsupported stored state type {type(payload).__name__}", model=model)

    text = payload.strip()
    if not text:
        return {}
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise StateSerializationError(f"Stored state is not JSON: {text[:64]}", model=model) from exc
    if not isinstance(parsed, dict):
        raise StateSerializationError("Stored state is not a JSON object", model=model)
    return parsed


def deserialize_onto(model: StateModel, payload: str | bytes | Mapping[str, Any], scope: Scope) -> bool:
    """Write the fields of *payload* that take part in *scope* onto *model*.

    Returns ``True`` when at least one field was written.  On failure the
    fields written so far are restored and the error is raised.
    """
    document = parse_document(payload, model=model)
    updates = [(spec.name, document[spec.name]) for spec in fields_for(type(model), scope) if spec.name in document]
    if not updates:
        return False

    snapshot = {name: model.__dict__[name] for name, _ in updates if name in model.__dict__}
    try:
        for name, value in updates:
            model.set_field(name, value)
    except StateSerializationError:
        model.__dict__.update(snapshot)
        raise
    return True

"""Model types persisted by state handlers."""

from skillstate.models._base import (
    ATTRIBUTE_KEY_SEPARATOR,
    StateModel,
    attribute_key,
    create_model,
    split_attribute_key,
    type_name,
    validate_model_id,
)
from skillstate.models.state_object import StateObject

__all__ = [
    "ATTRIBUTE_KEY_SEPARATOR",
    "StateModel",
    "StateObject",
    "attribute_key",
    "create_model",
    "split_attribute_key",
    "type_name",
    "validate_model_id",
]

"""skillstate - Scoped state persistence for voice skills."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pyskillstate")
except PackageNotFoundError:
    __version__ = "0+local"
from skillstate.config import MqttShadowConfig, StateConfig
from skillstate.exceptions import (
    ShadowRequestError,
    SkillStateError,
    StateConfigError,
    StateProvisioningError,
    StateSerializationError,
    StateStoreError,
)
from skillstate.fields import FieldSpec, Ignore, Save, describe, fields_for, has_any_field
from skillstate.handlers import (
    DynamoStateHandler,
    ReconcilingStateHandler,
    S3StateHandler,
    SessionStateHandler,
    ShadowStateHandler,
    StateHandler,
)
from skillstate.models import StateModel, StateObject, attribute_key, create_model
from skillstate.scope import DURABLE_SCOPES, Scope
from skillstate.session import AttributeBag, SkillSession
from skillstate.stores import (
    DynamoStore,
    MqttShadowClient,
    S3Store,
    SessionStore,
    ShadowStore,
    StateStore,
    StoreLocation,
)

__all__ = [
    "__version__",
    "AttributeBag",
    "DURABLE_SCOPES",
    "DynamoStateHandler",
    "DynamoStore",
    "FieldSpec",
    "Ignore",
    "MqttShadowClient",
    "MqttShadowConfig",
    "ReconcilingStateHandler",
    "S3StateHandler",
    "S3Store",
    "Save",
    "Scope",
    "SessionStateHandler",
    "SessionStore",
    "ShadowRequestError",
    "ShadowStateHandler",
    "ShadowStore",
    "SkillSession",
    "SkillStateError",
    "StateConfig",
    "StateConfigError",
    "StateHandler",
    "StateModel",
    "StateObject",
    "StateProvisioningError",
    "StateSerializationError",
    "StateStore",
    "StateStoreError",
    "StoreLocation",
    "attribute_key",
    "create_model",
    "describe",
    "fields_for",
    "has_any_field",
]

"""Store adapters."""

from skillstate.stores._base import (
    DurableStore,
    ReadinessGuard,
    StateStore,
    StoreLocation,
    client_error_code,
)
from skillstate.stores.dynamo import DynamoStore
from skillstate.stores.mqtt import MqttShadowClient
from skillstate.stores.s3 import S3Store
from skillstate.stores.session import SessionStore
from skillstate.stores.shadow import ShadowStore, application_thing_name, user_thing_name

__all__ = [
    "DurableStore",
    "DynamoStore",
    "MqttShadowClient",
    "ReadinessGuard",
    "S3Store",
    "SessionStore",
    "ShadowStore",
    "StateStore",
    "StoreLocation",
    "application_thing_name",
    "client_error_code",
    "user_thing_name",
]

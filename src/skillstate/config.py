"""Store configuration for skillstate."""

from __future__ import annotations

import dataclasses
import os
from typing import Any


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class MqttShadowConfig:
    """Connection settings for the MQTT device shadow transport.

    AWS IoT authenticates MQTT clients with X.509 certificates, so
    ``ca_certs``, ``certfile`` and ``keyfile`` are usually all required.
    """

    endpoint: str = ""
    port: int = 8883
    client_id: str = "skillstate"
    ca_certs: str | None = None
    certfile: str | None = None
    keyfile: str | None = None
    keepalive: int = 60
    request_timeout: float = 10.0


@dataclasses.dataclass(frozen=True)
class StateConfig:
    """Store configuration.

    Parameters
    ----------
    table_name : str or None
        DynamoDB table holding user and application state.  An explicitly
        named table is assumed to exist and is never created.
    table_prefix : str
        Prefix for the derived table name (``prefix + application id``)
        used when ``table_name`` is not set.
    read_capacity : int
        Provisioned read capacity units for a table created on first use.
    write_capacity : int
        Provisioned write capacity units for a table created on first use.
    table_wait_timeout : float
        Seconds to wait for a created table to become ``ACTIVE``.
    table_poll_interval : float
        Seconds between table status checks while waiting.
    consistent_reads : bool
        Use strongly consistent reads against the table.
    bucket_name : str or None
        S3 bucket holding user and application state.
    bucket_region : str or None
        Region passed as location constraint when the bucket is created.
    file_extension : str
        Extension of state objects in the bucket.
    application_container : str
        Partition name used for application-scoped records in place of a
        user id.
    batch_retry_attempts : int
        How often unprocessed batch items are re-submitted before failing.
    mqtt : MqttShadowConfig
        Settings of the MQTT shadow transport.
    """

    table_name: str | None = None
    table_prefix: str = "alexa-"
    read_capacity: int = 10
    write_capacity: int = 5
    table_wait_timeout: float = 600.0
    table_poll_interval: float = 5.0
    consistent_reads: bool = True
    bucket_name: str | None = None
    bucket_region: str | None = None
    file_extension: str = "json"
    application_container: str = "__application"
    batch_retry_attempts: int = 3
    mqtt: MqttShadowConfig = dataclasses.field(default_factory=MqttShadowConfig)

    @classmethod
    def from_env(cls, **overrides: Any) -> StateConfig:
        """Create configuration from environment variables.

        Reads optional ``SKILLSTATE_*`` variables.  Explicit keyword
        arguments override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        StateConfig
            Populated configuration.
        """
        env = os.environ

        mqtt_kwargs: dict[str, Any] = {}
        _ENV_MQTT_MAP = {
            "SKILLSTATE_MQTT_ENDPOINT": "endpoint",
            "SKILLSTATE_MQTT_CLIENT_ID": "client_id",
            "SKILLSTATE_MQTT_CA_CERTS": "ca_certs",
            "SKILLSTATE_MQTT_CERTFILE": "certfile",
            "SKILLSTATE_MQTT_KEYFILE": "keyfile",
        }
        for env_key, field_name in _ENV_MQTT_MAP.items():
            val = env.get(env_key)
            if val is not None:
                mqtt_kwargs[field_name] = val

        port_env = env.get("SKILLSTATE_MQTT_PORT")
        if port_env is not None:
            mqtt_kwargs["port"] = int(port_env)
        keepalive_env = env.get("SKILLSTATE_MQTT_KEEPALIVE")
        if keepalive_env is not None:
            mqtt_kwargs["keepalive"] = int(keepalive_env)
        timeout_env = env.get("SKILLSTATE_MQTT_REQUEST_TIMEOUT")
        if timeout_env is not None:
            mqtt_kwargs["request_timeout"] = float(timeout_env)

        # Allow overriding MQTT fields via a nested dict
        mqtt_overrides = overrides.pop("mqtt", None)
        if isinstance(mqtt_overrides, dict):
            mqtt_kwargs.update(mqtt_overrides)
        elif isinstance(mqtt_overrides, MqttShadowConfig):
            mqtt_kwargs = dataclasses.asdict(mqtt_overrides)

        mqtt = MqttShadowConfig(**mqtt_kwargs) if mqtt_kwargs else MqttShadowConfig()

        _ENV_CONFIG_MAP = {
            "SKILLSTATE_TABLE_NAME": "table_name",
            "SKILLSTATE_TABLE_PREFIX": "table_prefix",
            "SKILLSTATE_BUCKET_NAME": "bucket_name",
            "SKILLSTATE_BUCKET_REGION": "bucket_region",
            "SKILLSTATE_FILE_EXTENSION": "file_extension",
            "SKILLSTATE_APPLICATION_CONTAINER": "application_container",
        }
        config_kwargs: dict[str, Any] = {"mqtt": mqtt}
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        _ENV_INT_MAP = {
            "SKILLSTATE_READ_CAPACITY": "read_capacity",
            "SKILLSTATE_WRITE_CAPACITY": "write_capacity",
            "SKILLSTATE_BATCH_RETRY_ATTEMPTS": "batch_retry_attempts",
        }
        for env_key, field_name in _ENV_INT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = int(val)

        _ENV_FLOAT_MAP = {
            "SKILLSTATE_TABLE_WAIT_TIMEOUT": "table_wait_timeout",
            "SKILLSTATE_TABLE_POLL_INTERVAL": "table_poll_interval",
        }
        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = float(val)

        if "consistent_reads" not in overrides:
            config_kwargs["consistent_reads"] = _env_bool(env.get("SKILLSTATE_CONSISTENT_READS"), True)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)

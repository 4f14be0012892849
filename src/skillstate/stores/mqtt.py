"""Device shadow transport over MQTT.

Offers ``get_thing_shadow`` and ``update_thing_shadow`` with the same call
and response shape as the AWS SDK ``iot-data`` client, so it can be handed
to :class:`skillstate.stores.shadow.ShadowStore` as its data client.

Requests are published to ``$aws/things/{thing}/shadow/{get,update}`` and
answered on the ``/accepted`` or ``/rejected`` sub-topic.  Replies are
matched to requests by ``clientToken``.
"""

from __future__ import annotations

import json
import logging
import secrets
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, cast

import paho.mqtt.client as mqtt

from skillstate.config import MqttShadowConfig
from skillstate.exceptions import ShadowRequestError, StateConfigError, StateStoreError

_SHADOW_TOPIC_ROOT = "$aws/things"
_REPLY_TOPICS = (
    f"{_SHADOW_TOPIC_ROOT}/+/shadow/get/+",
    f"{_SHADOW_TOPIC_ROOT}/+/shadow/update/+",
)


def shadow_topic(thing_name: str, action: str) -> str:
    return f"{_SHADOW_TOPIC_ROOT}/{thing_name}/shadow/{action}"


def parse_reply_topic(topic: str) -> tuple[str, str, str] | None:
    """Split a reply topic into ``(thing, action, outcome)``."""
    parts = topic.split("/")
    if len(parts) != 6 or parts[0] != "$aws" or parts[1] != "things" or parts[3] != "shadow":
        return None
    return parts[2], parts[4], parts[5]


def _rejection_code(body: dict[str, Any]) -> str:
    code = body.get("code")
    if code == 404 or str(code) == "404":
        return "ResourceNotFoundException"
    return str(code) if code is not None else "Rejected"


@dataclass
class _PendingRequest:
    thing_name: str
    action: str
    done: threading.Event = field(default_factory=threading.Event)
    payload: bytes | None = None
    rejection: dict[str, Any] | None = None


def _default_client_factory(client_id: str) -> mqtt.Client:
    return mqtt.Client(
        callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
        client_id=client_id,
        protocol=mqtt.MQTTv311,
    )


class MqttShadowClient:
    """Threaded paho-mqtt client answering shadow requests synchronously."""

    def __init__(
        self,
        config: MqttShadowConfig,
        *,
        client_factory: Callable[[str], Any] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._client_factory = client_factory or _default_client_factory
        self._logger = logger or logging.getLogger(__name__)
        self._client: Any = None
        self._connected = threading.Event()
        self._subscribed = threading.Event()
        self._connect_error: str | None = None
        self._lock = threading.Lock()
        self._pending: dict[str, _PendingRequest] = {}

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._connected.is_set()

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Connect, subscribe to shadow replies and wait until both are confirmed."""
        if self._client is not None:
            return
        if not self._config.endpoint:
            raise StateConfigError("MQTT shadow transport needs an endpoint")

        self._logger.debug(
            "MQTT shadow connect host=%s port=%s client_id=%s",
            self._config.endpoint,
            self._config.port,
            self._config.client_id,
        )
        client = self._client_factory(self._config.client_id)
        client.enable_logger(self._logger)
        if self._config.ca_certs or self._config.certfile:
            client.tls_set(
                ca_certs=self._config.ca_certs,
                certfile=self._config.certfile,
                keyfile=self._config.keyfile,
            )

        self._connected.clear()
        self._subscribed.clear()
        self._connect_error = None

        def on_connect(
            c: Any,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT shadow connect failed: %s", reason_code)
                self._connect_error = str(reason_code)
                self._connected.set()
                return
            self._logger.debug("MQTT shadow connected reason=%s", reason_code)
            self._connected.set()
            c.subscribe([(topic, 1) for topic in _REPLY_TOPICS])

        def on_subscribe(
            _c: Any,
            _userdata: Any,
            _mid: Any,
            reason_codes: Any,
            _properties: Any,
        ) -> None:
            if any(getattr(rc, "is_failure", False) for rc in reason_codes):
                self._logger.warning("MQTT shadow subscription refused: %s", reason_codes)
                self._connect_error = "subscription refused"
            self._subscribed.set()

        def on_message(_c: Any, _userdata: Any, msg: Any) -> None:
            self._on_message(msg.topic, msg.payload)

        def on_disconnect(
            _client: Any,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            self._logger.debug("MQTT shadow disconnected: %s", reason_code)
            self._connected.clear()

        client.on_connect = on_connect
        client.on_subscribe = on_subscribe
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        try:
            client.connect(self._config.endpoint, self._config.port, keepalive=self._config.keepalive)
        except Exception as exc:
            raise StateStoreError(
                f"Could not connect to {self._config.endpoint}: {exc}",
                store="shadow",
                operation="connect",
            ) from exc
        client.loop_start()
        self._client = client

        timeout = self._config.request_timeout
        if not self._connected.wait(timeout) or (self._connect_error is None and not self._subscribed.wait(timeout)):
            self.close()
            raise StateStoreError("MQTT shadow connection timed out", store="shadow", operation="connect")
        if self._connect_error is not None:
            error = self._connect_error
            self.close()
            raise StateStoreError(f"MQTT shadow connection failed: {error}", store="shadow", operation="connect")

    def close(self) -> None:
        """Disconnect and stop the network loop."""
        client = self._client
        self._client = None
        self._connected.clear()
        self._subscribed.clear()
        if client is None:
            return
        try:
            client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT shadow network loop stopped")

    def __enter__(self) -> MqttShadowClient:
        self.connect()
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # iot-data compatible calls
    # ------------------------------------------------------------------

    def get_thing_shadow(self, *, thingName: str) -> dict[str, Any]:  # noqa: N803
        return {"payload": self._request(thingName, "get", {})}

    def update_thing_shadow(self, *, thingName: str, payload: bytes | str) -> dict[str, Any]:  # noqa: N803
        try:
            body = json.loads(payload)
        except ValueError as exc:
            raise StateStoreError("Shadow update payload is not JSON", store="shadow", operation="update") from exc
        return {"payload": self._request(thingName, "update", body)}

    def _request(self, thing_name: str, action: str, body: dict[str, Any]) -> bytes:
        if self._client is None:
            self.connect()

        token = secrets.token_hex(8)
        pending = _PendingRequest(thing_name=thing_name, action=action)
        with self._lock:
            self._pending[token] = pending

        message = dict(body)
        message["clientToken"] = token
        topic = shadow_topic(thing_name, action)
        self._logger.debug("MQTT shadow request topic=%s token=%s", topic, token)
        try:
            self._client.publish(topic, json.dumps(message, separators=(",", ":")), qos=1)
            if not pending.done.wait(self._config.request_timeout):
                raise StateStoreError(
                    f"No reply to shadow {action} of '{thing_name}' within {self._config.request_timeout:.1f}s",
                    store="shadow",
                    operation=action,
                    code="Timeout",
                )
        finally:
            with self._lock:
                self._pending.pop(token, None)

        if pending.rejection is not None:
            raise ShadowRequestError(
                str(pending.rejection.get("message") or f"Shadow {action} rejected"),
                code=_rejection_code(pending.rejection),
                thing_name=thing_name,
                operation=action,
            )
        return pending.payload or b""

    def _on_message(self, topic: str, payload: bytes) -> None:
        parsed = parse_reply_topic(topic)
        if parsed is None or parsed[2] not in ("accepted", "rejected"):
            return
        try:
            body = json.loads(payload)
        except ValueError:
            self._logger.debug("MQTT shadow reply is not JSON topic=%s", topic, exc_info=True)
            return
        if not isinstance(body, dict):
            return
        token = body.get("clientToken")
        with self._lock:
            pending = self._pending.get(token) if isinstance(token, str) else None
        if pending is None or (pending.thing_name, pending.action) != parsed[:2]:
            return

        if parsed[2] == "rejected":
            pending.rejection = body
        else:
            pending.payload = payload if isinstance(payload, bytes) else str(payload).encode("utf-8")
        pending.done.set()

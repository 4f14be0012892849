"""DynamoDB adapter.

One table holds user and application state.  Items are addressed by a hash
key identifying the owner (user id or the application container) and a range
key holding the attribute key of the record::

    {"amzn-user-id": {"S": "<user id>"}, "model-class": {"S": "Profile:abc"}, "state": {"S": "{...}"}}

The client is any object offering the low-level DynamoDB calls
(``get_item``, ``put_item``, ``delete_item``, ``batch_get_item``,
``batch_write_item``, ``describe_table`` and ``create_table``).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from typing import Any

from skillstate._redact import redact_identity
from skillstate.config import StateConfig
from skillstate.exceptions import StateConfigError, StateProvisioningError, StateStoreError
from skillstate.scope import Scope
from skillstate.stores._base import DurableStore, ReadinessGuard, StoreLocation, chunked, client_error_code

_logger = logging.getLogger(__name__)

OWNER_KEY = "amzn-user-id"
RECORD_KEY = "model-class"
STATE_ATTRIBUTE = "state"

BATCH_GET_LIMIT = 100
BATCH_WRITE_LIMIT = 25

_NOT_FOUND = "ResourceNotFoundException"
_IN_USE = "ResourceInUseException"


def table_name_for(config: StateConfig, application_id: str) -> str:
    if config.table_name:
        return config.table_name
    if not application_id:
        raise StateConfigError("An application id is needed to derive the DynamoDB table name")
    return f"{config.table_prefix}{application_id}"


class DynamoStore(DurableStore):
    """User and application state in a DynamoDB table."""

    name = "dynamodb"
    supports_batch = True

    def __init__(
        self,
        client: Any,
        *,
        user_id: str | None,
        application_id: str,
        config: StateConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or StateConfig()
        super().__init__(
            user_id=user_id,
            application_id=application_id,
            application_container=self._config.application_container,
        )
        self._client = client
        self._table = table_name_for(self._config, application_id)
        self._sleep = sleep
        self._clock = clock
        self._guard = ReadinessGuard()
        if self._config.table_name:
            self._guard.mark_ready(self._table)

    @property
    def table_name(self) -> str:
        return self._table

    # ------------------------------------------------------------------
    # Item helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _key(location: StoreLocation) -> dict[str, dict[str, str]]:
        return {OWNER_KEY: {"S": location.container}, RECORD_KEY: {"S": location.key}}

    def _item(self, location: StoreLocation, payload: str) -> dict[str, dict[str, str]]:
        item = self._key(location)
        item[STATE_ATTRIBUTE] = {"S": payload}
        return item

    @staticmethod
    def _state_of(item: dict[str, Any] | None) -> str | None:
        if not item:
            return None
        attribute = item.get(STATE_ATTRIBUTE) or {}
        return attribute.get("S", "{}")

    # ------------------------------------------------------------------
    # Single record calls
    # ------------------------------------------------------------------

    def get(self, location: StoreLocation) -> str | None:
        try:
            response = self._client.get_item(
                TableName=self._table,
                Key=self._key(location),
                ConsistentRead=self._config.consistent_reads,
            )
        except Exception as exc:
            if client_error_code(exc) == _NOT_FOUND:
                _logger.debug("Table %s not found while reading %s", self._table, location.key)
                return None
            raise self._failure("get_item", exc, target=location.key) from exc
        return self._state_of(response.get("Item"))

    def put(self, location: StoreLocation, payload: str) -> None:
        _logger.debug(
            "DynamoDB put table=%s owner=%s key=%s",
            self._table,
            redact_identity(location.container),
            location.key,
        )
        try:
            self._client.put_item(TableName=self._table, Item=self._item(location, payload))
        except Exception as exc:
            raise self._failure("put_item", exc, target=location.key) from exc

    def delete(self, location: StoreLocation) -> None:
        try:
            self._client.delete_item(TableName=self._table, Key=self._key(location))
        except Exception as exc:
            if client_error_code(exc) == _NOT_FOUND:
                return
            raise self._failure("delete_item", exc, target=location.key) from exc

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def get_many(self, locations: Sequence[StoreLocation]) -> dict[StoreLocation, str]:
        unique = list(dict.fromkeys(locations))
        by_key = {(loc.container, loc.key): loc for loc in unique}
        found: dict[StoreLocation, str] = {}

        for chunk in chunked(unique, BATCH_GET_LIMIT):
            pending: list[dict[str, Any]] = [self._key(loc) for loc in chunk]
            attempts = 0
            while pending:
                request = {self._table: {"Keys": pending, "ConsistentRead": self._config.consistent_reads}}
                try:
                    response = self._client.batch_get_item(RequestItems=request)
                except Exception as exc:
                    if client_error_code(exc) == _NOT_FOUND:
                        return found
                    raise self._failure("batch_get_item", exc) from exc

                for item in response.get("Responses", {}).get(self._table, []):
                    owner = item.get(OWNER_KEY, {}).get("S")
                    record = item.get(RECORD_KEY, {}).get("S")
                    location = by_key.get((owner, record))
                    state = self._state_of(item)
                    if location is not None and state is not None:
                        found[location] = state

                pending = response.get("UnprocessedKeys", {}).get(self._table, {}).get("Keys", [])
                attempts = self._next_attempt(attempts, pending, "batch_get_item")
        return found

    def put_many(self, items: Sequence[tuple[StoreLocation, str]]) -> None:
        requests = [{"PutRequest": {"Item": self._item(loc, payload)}} for loc, payload in items]
        _logger.debug("DynamoDB batch put table=%s items=%d", self._table, len(requests))
        self._write_batches(requests, tolerate_missing_table=False)

    def delete_many(self, locations: Sequence[StoreLocation]) -> None:
        unique = list(dict.fromkeys(locations))
        requests = [{"DeleteRequest": {"Key": self._key(loc)}} for loc in unique]
        self._write_batches(requests, tolerate_missing_table=True)

    def _write_batches(self, requests: list[dict[str, Any]], *, tolerate_missing_table: bool) -> None:
        for chunk in chunked(requests, BATCH_WRITE_LIMIT):
            pending = list(chunk)
            attempts = 0
            while pending:
                try:
                    response = self._client.batch_write_item(RequestItems={self._table: pending})
                except Exception as exc:
                    if tolerate_missing_table and client_error_code(exc) == _NOT_FOUND:
                        return
                    raise self._failure("batch_write_item", exc) from exc
                pending = response.get("UnprocessedItems", {}).get(self._table, [])
                attempts = self._next_attempt(attempts, pending, "batch_write_item")

    def _next_attempt(self, attempts: int, pending: Sequence[Any], operation: str) -> int:
        if not pending:
            return attempts
        attempts += 1
        if attempts > self._config.batch_retry_attempts:
            raise StateStoreError(
                f"{len(pending)} items still unprocessed after {attempts - 1} retries",
                store=self.name,
                operation=operation,
            )
        _logger.debug("Retrying %d unprocessed items of %s (attempt %d)", len(pending), operation, attempts)
        return attempts

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def ensure_ready(self, scope: Scope) -> None:
        self._guard.ensure(self._table, self._provision_table)

    def _table_status(self) -> str | None:
        try:
            response = self._client.describe_table(TableName=self._table)
        except Exception as exc:
            if client_error_code(exc) == _NOT_FOUND:
                return None
            raise StateProvisioningError(
                f"Could not describe table '{self._table}': {exc}",
                store=self.name,
                operation="describe_table",
                code=client_error_code(exc),
            ) from exc
        return str(response.get("Table", {}).get("TableStatus", ""))

    def _provision_table(self) -> None:
        status = self._table_status()
        if status == "ACTIVE":
            return
        if status is None:
            _logger.warning("Table %s does not exist yet", self._table)
            self._create_table()
        self._wait_until_active()

    def _create_table(self) -> None:
        try:
            self._client.create_table(
                TableName=self._table,
                AttributeDefinitions=[
                    {"AttributeName": OWNER_KEY, "AttributeType": "S"},
                    {"AttributeName": RECORD_KEY, "AttributeType": "S"},
                ],
                KeySchema=[
                    {"AttributeName": OWNER_KEY, "KeyType": "HASH"},
                    {"AttributeName": RECORD_KEY, "KeyType": "RANGE"},
                ],
                ProvisionedThroughput={
                    "ReadCapacityUnits": self._config.read_capacity,
                    "WriteCapacityUnits": self._config.write_capacity,
                },
            )
        except Exception as exc:
            if client_error_code(exc) == _IN_USE:
                return
            raise StateProvisioningError(
                f"Could not create table '{self._table}': {exc}",
                store=self.name,
                operation="create_table",
                code=client_error_code(exc),
            ) from exc
        _logger.info(
            "Table %s created. Waiting up to %.0f seconds for it to become active",
            self._table,
            self._config.table_wait_timeout,
        )

    def _wait_until_active(self) -> None:
        deadline = self._clock() + self._config.table_wait_timeout
        while True:
            if self._table_status() == "ACTIVE":
                _logger.info("Table %s is active", self._table)
                return
            if self._clock() >= deadline:
                raise StateProvisioningError(
                    f"Table '{self._table}' did not become active within {self._config.table_wait_timeout:.0f} seconds",
                    store=self.name,
                    operation="describe_table",
                )
            self._sleep(self._config.table_poll_interval)

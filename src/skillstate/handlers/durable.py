"""Ready-made handlers wiring a session to one durable store."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from skillstate.config import StateConfig
from skillstate.handlers.reconciling import ReconcilingStateHandler
from skillstate.scope import Scope
from skillstate.session import AttributeBag
from skillstate.stores.dynamo import DynamoStore
from skillstate.stores.s3 import S3Store
from skillstate.stores.shadow import ShadowStore


def _identity(session: AttributeBag, user_id: str | None) -> tuple[str | None, str]:
    return user_id or getattr(session, "user_id", None) or None, getattr(session, "application_id", "") or ""


class DynamoStateHandler(ReconcilingStateHandler):
    """Session state backed by a DynamoDB table.

    The table is created on first use unless ``config.table_name`` names an
    existing one.
    """

    def __init__(
        self,
        session: AttributeBag,
        client: Any,
        *,
        config: StateConfig | None = None,
        user_id: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        user, application = _identity(session, user_id)
        store = DynamoStore(client, user_id=user, application_id=application, config=config, sleep=sleep, clock=clock)
        super().__init__(session, store, user_id=user_id)

    @property
    def table_name(self) -> str:
        return self._store.table_name


class S3StateHandler(ReconcilingStateHandler):
    """Session state backed by JSON objects in an S3 bucket."""

    def __init__(
        self,
        session: AttributeBag,
        client: Any,
        *,
        config: StateConfig | None = None,
        bucket_name: str | None = None,
        user_id: str | None = None,
    ) -> None:
        user, application = _identity(session, user_id)
        store = S3Store(client, user_id=user, application_id=application, config=config, bucket_name=bucket_name)
        super().__init__(session, store, user_id=user_id)

    @property
    def bucket_name(self) -> str:
        return self._store.bucket_name


class ShadowStateHandler(ReconcilingStateHandler):
    """Session state backed by AWS IoT device shadows."""

    def __init__(
        self,
        session: AttributeBag,
        iot_client: Any,
        data_client: Any,
        *,
        config: StateConfig | None = None,
        user_id: str | None = None,
    ) -> None:
        user, application = _identity(session, user_id)
        store = ShadowStore(iot_client, data_client, user_id=user, application_id=application, config=config)
        super().__init__(session, store, user_id=user_id)

    def thing_name(self, scope: Scope) -> str:
        return self._store.container_for(scope)

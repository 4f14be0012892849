"""S3 adapter.

Each record is one JSON object at ``{container}/{attribute key}.{extension}``
where the container is the user id or the application container name.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from skillstate._redact import redact_identity
from skillstate.config import StateConfig
from skillstate.exceptions import StateConfigError, StateProvisioningError, StateStoreError
from skillstate.scope import Scope
from skillstate.stores._base import DurableStore, ReadinessGuard, StoreLocation, chunked, client_error_code

_logger = logging.getLogger(__name__)

DELETE_OBJECTS_LIMIT = 1000

_MISSING_OBJECT = frozenset({"NoSuchKey", "404", "NotFound"})
_MISSING_BUCKET = frozenset({"NoSuchBucket", "404", "NotFound"})
_OWNED_BUCKET = frozenset({"BucketAlreadyOwnedByYou"})


class S3Store(DurableStore):
    """User and application state as JSON objects in an S3 bucket."""

    name = "s3"

    def __init__(
        self,
        client: Any,
        *,
        user_id: str | None,
        application_id: str,
        config: StateConfig | None = None,
        bucket_name: str | None = None,
    ) -> None:
        self._config = config or StateConfig()
        super().__init__(
            user_id=user_id,
            application_id=application_id,
            application_container=self._config.application_container,
        )
        bucket = bucket_name or self._config.bucket_name
        if not bucket:
            raise StateConfigError("S3 state storage needs a bucket name")
        self._client = client
        self._bucket = bucket
        self._guard = ReadinessGuard()

    @property
    def bucket_name(self) -> str:
        return self._bucket

    def object_key(self, location: StoreLocation) -> str:
        return f"{location.container}/{location.key}.{self._config.file_extension}"

    def get(self, location: StoreLocation) -> str | None:
        key = self.object_key(location)
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
        except Exception as exc:
            if client_error_code(exc) in _MISSING_OBJECT | _MISSING_BUCKET:
                return None
            raise self._failure("get_object", exc, target=key) from exc
        body = response["Body"].read()
        if isinstance(body, bytes):
            body = body.decode("utf-8")
        return body or "{}"

    def put(self, location: StoreLocation, payload: str) -> None:
        key = self.object_key(location)
        _logger.debug(
            "S3 put bucket=%s owner=%s key=%s",
            self._bucket,
            redact_identity(location.container),
            location.key,
        )
        try:
            self._client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=payload.encode("utf-8"),
                ContentType="application/json",
            )
        except Exception as exc:
            raise self._failure("put_object", exc, target=key) from exc

    def delete(self, location: StoreLocation) -> None:
        key = self.object_key(location)
        try:
            self._client.delete_object(Bucket=self._bucket, Key=key)
        except Exception as exc:
            if client_error_code(exc) in _MISSING_OBJECT | _MISSING_BUCKET:
                return
            raise self._failure("delete_object", exc, target=key) from exc

    def exists(self, location: StoreLocation) -> bool:
        key = self.object_key(location)
        try:
            self._client.head_object(Bucket=self._bucket, Key=key)
        except Exception as exc:
            if client_error_code(exc) in _MISSING_OBJECT | _MISSING_BUCKET:
                return False
            raise self._failure("head_object", exc, target=key) from exc
        return True

    def delete_many(self, locations: Sequence[StoreLocation]) -> None:
        keys = list(dict.fromkeys(self.object_key(loc) for loc in locations))
        for chunk in chunked(keys, DELETE_OBJECTS_LIMIT):
            try:
                response = self._client.delete_objects(
                    Bucket=self._bucket,
                    Delete={"Objects": [{"Key": key} for key in chunk], "Quiet": True},
                )
            except Exception as exc:
                if client_error_code(exc) in _MISSING_BUCKET:
                    return
                raise self._failure("delete_objects", exc) from exc
            errors = [err for err in response.get("Errors", []) if err.get("Code") not in _MISSING_OBJECT]
            if errors:
                first = errors[0]
                raise StateStoreError(
                    f"Could not delete {len(errors)} objects, first '{first.get('Key')}': {first.get('Message')}",
                    store=self.name,
                    operation="delete_objects",
                    code=first.get("Code"),
                )

    def ensure_ready(self, scope: Scope) -> None:
        self._guard.ensure(self._bucket, self._provision_bucket)

    def _provision_bucket(self) -> None:
        try:
            self._client.head_bucket(Bucket=self._bucket)
            return
        except Exception as exc:
            if client_error_code(exc) not in _MISSING_BUCKET:
                raise StateProvisioningError(
                    f"Could not access bucket '{self._bucket}': {exc}",
                    store=self.name,
                    operation="head_bucket",
                    code=client_error_code(exc),
                ) from exc

        _logger.warning("Bucket %s does not exist yet", self._bucket)
        kwargs: dict[str, Any] = {"Bucket": self._bucket}
        region = self._config.bucket_region
        if region and region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": region}
        try:
            self._client.create_bucket(**kwargs)
        except Exception as exc:
            if client_error_code(exc) in _OWNED_BUCKET:
                return
            raise StateProvisioningError(
                f"Could not create bucket '{self._bucket}': {exc}",
                store=self.name,
                operation="create_bucket",
                code=client_error_code(exc),
            ) from exc
        _logger.info("Bucket %s created", self._bucket)

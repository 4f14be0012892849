from __future__ import annotations

import pytest
from _fakes import APP_ID, USER_ID, FakeClientError, FakeS3Client, Scenario, make_session

from skillstate.config import StateConfig
from skillstate.exceptions import StateConfigError, StateProvisioningError, StateStoreError
from skillstate.handlers import S3StateHandler
from skillstate.scope import Scope
from skillstate.stores.s3 import S3Store

BUCKET = "skill-state"


def _store(client: FakeS3Client, **config: object) -> S3Store:
    return S3Store(
        client,
        user_id=USER_ID,
        application_id=APP_ID,
        config=StateConfig(bucket_name=BUCKET, **config),  # type: ignore[arg-type]
    )


def test_object_keys_partition_user_and_application() -> None:
    store = _store(FakeS3Client())
    assert store.object_key(store.key_for(Scenario, "u1", Scope.USER)) == f"{USER_ID}/Scenario:u1.json"
    assert store.object_key(store.key_for(Scenario, "u1", Scope.APPLICATION)) == "__application/Scenario:u1.json"


def test_bucket_name_is_required() -> None:
    with pytest.raises(StateConfigError):
        S3Store(FakeS3Client(), user_id=USER_ID, application_id=APP_ID)


def test_put_get_exists_delete() -> None:
    client = FakeS3Client(buckets={BUCKET: {}})
    store = _store(client)
    location = store.key_for(Scenario, "u1", Scope.USER)

    assert store.get(location) is None
    assert not store.exists(location)

    store.put(location, '{"id":"u1","user_field":"y"}')
    assert client.buckets[BUCKET][f"{USER_ID}/Scenario:u1.json"] == b'{"id":"u1","user_field":"y"}'
    assert store.get(location) == '{"id":"u1","user_field":"y"}'
    assert store.exists(location)

    store.delete(location)
    store.delete(location)
    assert client.buckets[BUCKET] == {}


def test_empty_object_reads_as_empty_document() -> None:
    client = FakeS3Client(buckets={BUCKET: {f"{USER_ID}/Scenario.json": b""}})
    store = _store(client)
    assert store.get(store.key_for(Scenario, None, Scope.USER)) == "{}"


def test_missing_bucket_reads_as_empty() -> None:
    store = _store(FakeS3Client())
    location = store.key_for(Scenario, "u1", Scope.APPLICATION)
    assert store.get(location) is None
    assert not store.exists(location)
    store.delete_many([location])


@pytest.mark.parametrize(
    ("region", "expected"),
    [(None, None), ("us-east-1", None), ("eu-west-1", {"LocationConstraint": "eu-west-1"})],
)
def test_bucket_is_created_once(region: str | None, expected: dict | None) -> None:
    client = FakeS3Client()
    store = _store(client, bucket_region=region)
    store.ensure_ready(Scope.USER)
    store.ensure_ready(Scope.APPLICATION)

    assert client.call_names() == ["head_bucket", "create_bucket"]
    assert client.calls[1][1].get("CreateBucketConfiguration") == expected
    assert BUCKET in client.buckets


def test_existing_bucket_is_not_created() -> None:
    client = FakeS3Client(buckets={BUCKET: {}})
    _store(client).ensure_ready(Scope.USER)
    assert client.call_names() == ["head_bucket"]


def test_bucket_creation_failure() -> None:
    class Forbidden(FakeS3Client):
        def create_bucket(self, **kwargs: object) -> dict:
            raise FakeClientError("AccessDenied", "Access Denied", "CreateBucket")

    with pytest.raises(StateProvisioningError) as excinfo:
        _store(Forbidden()).ensure_ready(Scope.USER)
    assert excinfo.value.operation == "create_bucket"


def test_delete_many_reports_failed_objects() -> None:
    class Partial(FakeS3Client):
        def delete_objects(self, **kwargs: object) -> dict:
            return {"Errors": [{"Key": "x", "Code": "AccessDenied", "Message": "Access Denied"}]}

    store = _store(Partial(buckets={BUCKET: {}}))
    with pytest.raises(StateStoreError, match="Access Denied"):
        store.delete_many([store.key_for(Scenario, "u1", Scope.USER)])


def test_delete_many_uses_one_call_per_thousand_keys() -> None:
    client = FakeS3Client(buckets={BUCKET: {}})
    store = _store(client)
    store.delete_many([store.key_for(Scenario, f"m{i}", Scope.USER) for i in range(1500)])
    sizes = [len(kwargs["Delete"]["Objects"]) for name, kwargs in client.calls if name == "delete_objects"]
    assert sizes == [1000, 500]


def test_handler_round_trip_and_exists() -> None:
    client = FakeS3Client()
    handler = S3StateHandler(make_session(), client, bucket_name=BUCKET)
    model = handler.create_model(Scenario, "u1")
    model.session_field = "x"
    model.user_field = "y"
    model.app_field = True
    handler.write_model(model)
    assert handler.bucket_name == BUCKET
    assert sorted(client.buckets[BUCKET]) == ["__application/Scenario:u1.json", f"{USER_ID}/Scenario:u1.json"]

    handler.session.clear_attributes()
    client.calls.clear()
    assert handler.exists(Scenario, "u1", scope=Scope.APPLICATION)
    assert client.call_names() == ["head_object"]

    read = handler.read_model(Scenario, "u1")
    assert read is not None
    assert (read.session_field, read.user_field, read.app_field) == (None, "y", True)

from __future__ import annotations

import hashlib
import json

import pytest
from _fakes import APP_ID, USER_ID, FakeClientError, FakeIotClient, FakeIotDataClient, Scenario, make_session

from skillstate.exceptions import StateConfigError, StateProvisioningError
from skillstate.handlers import ShadowStateHandler
from skillstate.scope import Scope
from skillstate.stores.shadow import ShadowStore, application_thing_name, user_thing_name

APP_THING = "amzn1-ask-skill-0a1b2c3d"
USER_THING = f"{APP_THING}-{hashlib.sha1(USER_ID.encode()).hexdigest()}"


def _store(iot: FakeIotClient | None = None, data: FakeIotDataClient | None = None) -> ShadowStore:
    return ShadowStore(iot or FakeIotClient(), data or FakeIotDataClient(), user_id=USER_ID, application_id=APP_ID)


def test_thing_names() -> None:
    assert application_thing_name(APP_ID) == APP_THING
    assert user_thing_name(APP_ID, USER_ID) == USER_THING
    assert len(user_thing_name(APP_ID, USER_ID)) == len(APP_THING) + 41

    store = _store()
    assert store.key_for(Scenario, "u1", Scope.USER).container == USER_THING
    assert store.key_for(Scenario, "u1", Scope.APPLICATION).container == APP_THING


def test_application_id_is_required() -> None:
    with pytest.raises(StateConfigError):
        ShadowStore(FakeIotClient(), FakeIotDataClient(), user_id=USER_ID, application_id="")


def test_write_publishes_desired_and_reported() -> None:
    data = FakeIotDataClient()
    store = _store(data=data)
    location = store.key_for(Scenario, "u1", Scope.USER)
    store.put(location, '{"id":"u1","user_field":"y"}')

    sent = json.loads(data.calls[0][1]["payload"])
    node = {"id": "u1", "user_field": "y"}
    assert sent == {"state": {"desired": {"Scenario:u1": node}, "reported": {"Scenario:u1": node}}}
    assert json.loads(store.get(location)) == node


def test_read_falls_back_to_desired() -> None:
    data = FakeIotDataClient(shadows={APP_THING: {"desired": {"Scenario:u1": {"id": "u1", "app_field": True}}}})
    store = _store(data=data)
    assert json.loads(store.get(store.key_for(Scenario, "u1", Scope.APPLICATION))) == {"id": "u1", "app_field": True}


def test_reported_wins_over_desired() -> None:
    data = FakeIotDataClient(
        shadows={
            APP_THING: {
                "desired": {"Scenario:u1": {"app_field": False}},
                "reported": {"Scenario:u1": {"app_field": True}},
            }
        }
    )
    store = _store(data=data)
    assert json.loads(store.get(store.key_for(Scenario, "u1", Scope.APPLICATION))) == {"app_field": True}


def test_missing_shadow_or_node_reads_as_none() -> None:
    data = FakeIotDataClient()
    store = _store(data=data)
    location = store.key_for(Scenario, "u1", Scope.USER)
    assert store.get(location) is None

    data.shadows[USER_THING] = {"reported": {"Other": {"x": 1}}}
    assert store.get(location) is None


def test_delete_publishes_null_node() -> None:
    data = FakeIotDataClient()
    store = _store(data=data)
    first = store.key_for(Scenario, "a", Scope.USER)
    second = store.key_for(Scenario, "b", Scope.USER)
    store.put_many([(first, '{"id":"a"}'), (second, '{"id":"b"}')])

    store.delete(first)
    assert store.get(first) is None
    assert store.get(second) is not None
    sent = json.loads(data.calls[1][1]["payload"])
    assert sent["state"]["desired"] == {"Scenario:a": None}


def test_batches_make_one_call_per_thing() -> None:
    data = FakeIotDataClient()
    store = _store(data=data)
    items = [(store.key_for(Scenario, f"m{i}", scope), json.dumps({"id": f"m{i}"})) for i in range(4) for scope in (Scope.USER, Scope.APPLICATION)]

    store.put_many(items)
    assert data.call_names() == ["update_thing_shadow", "update_thing_shadow"]

    data.calls.clear()
    found = store.get_many([loc for loc, _ in items])
    assert len(found) == 8
    assert data.call_names() == ["get_thing_shadow", "get_thing_shadow"]


def test_things_are_created_once_per_name() -> None:
    iot = FakeIotClient()
    store = _store(iot=iot)
    store.ensure_ready(Scope.USER)
    store.ensure_ready(Scope.USER)
    store.ensure_ready(Scope.APPLICATION)

    assert [name for name, _ in iot.calls] == ["describe_thing", "create_thing", "describe_thing", "create_thing"]
    assert iot.things[USER_THING] == {"name": USER_THING, "amzn-app-id": APP_ID, "amzn-user-id": USER_ID}
    assert iot.things[APP_THING] == {"name": APP_THING, "amzn-app-id": APP_ID}


def test_existing_thing_is_not_recreated() -> None:
    iot = FakeIotClient(things={APP_THING: {}})
    _store(iot=iot).ensure_ready(Scope.APPLICATION)
    assert [name for name, _ in iot.calls] == ["describe_thing"]


def test_thing_creation_failure() -> None:
    class Limited(FakeIotClient):
        def create_thing(self, **kwargs: object) -> dict:
            raise FakeClientError("LimitExceededException", "too many things", "CreateThing")

    with pytest.raises(StateProvisioningError, match="too many things"):
        _store(iot=Limited()).ensure_ready(Scope.USER)


def test_handler_round_trip_with_remove() -> None:
    iot = FakeIotClient()
    data = FakeIotDataClient()
    handler = ShadowStateHandler(make_session(), iot, data)
    model = handler.create_model(Scenario, "u1")
    model.user_field = "y"
    model.app_field = True
    handler.write_model(model)
    assert handler.thing_name(Scope.USER) == USER_THING
    assert handler.thing_name(Scope.APPLICATION) == APP_THING
    assert set(iot.things) == {USER_THING, APP_THING}

    handler.session.clear_attributes()
    read = handler.read_model(Scenario, "u1")
    assert read is not None and (read.user_field, read.app_field) == ("y", True)

    handler.remove_model(read)
    assert data.shadows[USER_THING]["reported"] == {}
    assert data.shadows[APP_THING]["desired"] == {}

from __future__ import annotations

import json

import pytest
from _fakes import USER_ID, AppStats, LinkedAccount, MemoryStore, Scenario, SessionOnly, UserProfile, make_session

from skillstate.exceptions import StateConfigError, StateProvisioningError, StateSerializationError
from skillstate.handlers import ReconcilingStateHandler
from skillstate.scope import Scope
from skillstate.stores._base import StoreLocation


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def handler(store: MemoryStore) -> ReconcilingStateHandler:
    return ReconcilingStateHandler(make_session(), store)


def _user(key: str) -> StoreLocation:
    return StoreLocation(scope=Scope.USER, container=USER_ID, key=key)


def _app(key: str) -> StoreLocation:
    return StoreLocation(scope=Scope.APPLICATION, container="__application", key=key)


def _write_scenario(handler: ReconcilingStateHandler) -> Scenario:
    model = handler.create_model(Scenario, "u1")
    model.session_field = "x"
    model.user_field = "y"
    model.app_field = True
    handler.write_model(model)
    return model


# ---------------------------------------------------------------------------
# End-to-end
# ---------------------------------------------------------------------------


def test_durable_state_survives_a_new_session(handler: ReconcilingStateHandler, store: MemoryStore) -> None:
    _write_scenario(handler)
    handler.session.clear_attributes()

    read = handler.read_model(Scenario, "u1")
    assert read is not None
    assert read.user_field == "y"
    assert read.app_field is True
    assert read.session_field is None


def test_unknown_id_is_not_found(handler: ReconcilingStateHandler) -> None:
    assert handler.read_model(Scenario, "ghost") is None
    assert handler.session.attribute_keys() == []


def test_write_fans_out_per_scope(handler: ReconcilingStateHandler, store: MemoryStore) -> None:
    _write_scenario(handler)
    assert json.loads(store.records[_user("Scenario:u1")]) == {"id": "u1", "user_field": "y"}
    assert json.loads(store.records[_app("Scenario:u1")]) == {"id": "u1", "app_field": True}
    assert handler.session.get_attribute("Scenario:u1") == {
        "id": "u1",
        "session_field": "x",
        "user_field": "y",
        "app_field": True,
    }


def test_session_only_model_never_touches_durable_store(
    handler: ReconcilingStateHandler, store: MemoryStore
) -> None:
    model = handler.create_model(SessionOnly)
    model.step = 3
    handler.write_model(model)
    assert handler.read_model(SessionOnly).step == 3
    handler.session.clear_attributes()
    assert handler.read_model(SessionOnly) is None
    assert store.calls == []
    assert store.ready_scopes == []


# ---------------------------------------------------------------------------
# Session fast path and write-back
# ---------------------------------------------------------------------------


def test_complete_session_record_is_the_fast_path(handler: ReconcilingStateHandler, store: MemoryStore) -> None:
    _write_scenario(handler)
    store.calls.clear()

    read = handler.read_model(Scenario, "u1")
    assert read is not None and read.user_field == "y"
    assert store.calls == []


def test_fields_kept_out_of_session_do_not_defeat_the_fast_path(
    handler: ReconcilingStateHandler, store: MemoryStore
) -> None:
    model = handler.create_model(LinkedAccount, "a1")
    model.nickname = "n"
    model.token = "secret-token"
    handler.write_model(model)
    assert json.loads(store.records[_user("LinkedAccount:a1")])["token"] == "secret-token"
    assert "token" not in handler.session.get_attribute("LinkedAccount:a1")
    store.calls.clear()

    for _ in range(3):
        read = handler.read_model(LinkedAccount, "a1")
        assert read is not None and read.nickname == "n"
    assert store.calls == []


def test_session_hidden_field_is_read_from_durable_store(handler: ReconcilingStateHandler, store: MemoryStore) -> None:
    store.records[_user("LinkedAccount:a1")] = json.dumps({"id": "a1", "nickname": "n", "token": "t"})

    read = handler.read_model(LinkedAccount, "a1")
    assert read is not None and (read.nickname, read.token) == ("n", "t")
    assert ReconcilingStateHandler.is_scope_complete(LinkedAccount, handler.session.get_attribute("LinkedAccount:a1"))


def test_durable_read_is_cached_in_session(handler: ReconcilingStateHandler, store: MemoryStore) -> None:
    _write_scenario(handler)
    handler.session.clear_attributes()

    handler.read_model(Scenario, "u1")
    assert handler.session.has_attribute("Scenario:u1")
    store.calls.clear()
    handler.read_model(Scenario, "u1")
    assert store.calls == []


def test_incomplete_session_record_is_merged(handler: ReconcilingStateHandler, store: MemoryStore) -> None:
    store.records[_user("Scenario:u1")] = json.dumps({"id": "u1", "user_field": "durable"})
    handler.session.set_attribute("Scenario:u1", {"id": "u1", "session_field": "s"})

    read = handler.read_model(Scenario, "u1")
    assert read is not None
    assert (read.session_field, read.user_field, read.app_field) == ("s", "durable", False)


def test_session_record_without_durable_data_is_returned(handler: ReconcilingStateHandler) -> None:
    handler.session.set_attribute("Scenario:u1", {"id": "u1", "session_field": "s"})
    read = handler.read_model(Scenario, "u1")
    assert read is not None and read.session_field == "s"


def test_refresh_bypasses_complete_session_record(handler: ReconcilingStateHandler, store: MemoryStore) -> None:
    _write_scenario(handler)
    store.records[_user("Scenario:u1")] = json.dumps({"id": "u1", "user_field": "changed elsewhere"})

    assert handler.read_model(Scenario, "u1").user_field == "y"
    assert handler.read_model(Scenario, "u1", refresh=True).user_field == "changed elsewhere"
    assert handler.session.get_attribute("Scenario:u1")["user_field"] == "changed elsewhere"


def test_merge_leaves_other_scopes_untouched(handler: ReconcilingStateHandler, store: MemoryStore) -> None:
    store.records[_user("Scenario:u1")] = json.dumps({"id": "u1", "user_field": "y", "app_field": False})
    handler.session.set_attribute("Scenario:u1", {"id": "u1", "app_field": True})

    read = handler.read_model(Scenario, "u1")
    assert read is not None
    assert read.user_field == "y"
    assert read.app_field is True


def test_superset_document_only_updates_requested_scope(
    handler: ReconcilingStateHandler, store: MemoryStore
) -> None:
    store.records[_app("Scenario:u1")] = json.dumps(
        {"id": "u1", "app_field": True, "user_field": "leaked", "session_field": "leaked"}
    )
    read = handler.read_model(Scenario, "u1")
    assert read is not None
    assert read.app_field is True
    assert read.user_field is None
    assert read.session_field is None


def test_malformed_durable_record_propagates(handler: ReconcilingStateHandler, store: MemoryStore) -> None:
    store.records[_user("Scenario:u1")] = "{broken"
    with pytest.raises(StateSerializationError):
        handler.read_model(Scenario, "u1")
    assert not handler.session.has_attribute("Scenario:u1")


def test_only_scopes_with_fields_are_queried(handler: ReconcilingStateHandler, store: MemoryStore) -> None:
    handler.read_model(UserProfile)
    handler.read_model(AppStats)
    assert store.ready_scopes == [Scope.USER, Scope.APPLICATION]
    fetched = [loc for name, locs in store.calls if name == "get_many" for loc in locs]
    assert fetched == [_user("UserProfile"), _app("Stats")]


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------


def test_batched_write_and_read_use_one_call_per_scope(
    handler: ReconcilingStateHandler, store: MemoryStore
) -> None:
    models = []
    for index in range(5):
        model = handler.create_model(Scenario, f"m{index}")
        model.user_field = f"user-{index}"
        model.app_field = index % 2 == 0
        models.append(model)

    handler.write_models(models)
    assert store.call_names() == ["put_many", "put_many"]

    handler.session.clear_attributes()
    store.calls.clear()
    found = handler.read_models(Scenario, [f"m{index}" for index in range(5)] + ["missing"])
    assert store.call_names() == ["get_many", "get_many"]
    assert list(found) == [f"m{index}" for index in range(5)]
    assert found["m3"].user_field == "user-3"
    assert found["m4"].app_field is True


def test_read_models_mixes_session_hits_and_durable_reads(
    handler: ReconcilingStateHandler, store: MemoryStore
) -> None:
    _write_scenario(handler)
    store.records[_user("Scenario:u2")] = json.dumps({"id": "u2", "user_field": "z"})
    store.calls.clear()

    found = handler.read_models(Scenario, ["u1", "u2"])
    assert set(found) == {"u1", "u2"}
    fetched = [loc for name, locs in store.calls if name == "get_many" for loc in locs]
    assert _user("Scenario:u1") not in fetched
    assert _user("Scenario:u2") in fetched


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


def test_provisioning_failure_writes_nothing(handler: ReconcilingStateHandler, store: MemoryStore) -> None:
    store.fail_ready = True
    model = handler.create_model(Scenario, "u1")
    model.user_field = "y"
    with pytest.raises(StateProvisioningError):
        handler.write_model(model)
    assert store.records == {}
    assert handler.session.attribute_keys() == []


def test_serialization_failure_writes_nothing(handler: ReconcilingStateHandler, store: MemoryStore) -> None:
    good = handler.create_model(Scenario, "good")
    bad = handler.create_model(Scenario, "bad")
    # bypass validation so the value cannot be serialized
    bad.__dict__["user_field"] = object()
    with pytest.raises(StateSerializationError):
        handler.write_models([good, bad])
    assert store.records == {}
    assert handler.session.attribute_keys() == []


def test_user_scope_without_user_id_is_a_configuration_error(store: MemoryStore) -> None:
    store.user_id = None
    handler = ReconcilingStateHandler(make_session(user_id=""), store)
    with pytest.raises(StateConfigError):
        handler.read_model(UserProfile)


# ---------------------------------------------------------------------------
# Removal and existence
# ---------------------------------------------------------------------------


def test_remove_deletes_every_copy(handler: ReconcilingStateHandler, store: MemoryStore) -> None:
    model = _write_scenario(handler)
    handler.remove_model(model)
    assert store.records == {}
    assert handler.session.attribute_keys() == []
    assert model.user_field == "y"
    assert handler.read_model(Scenario, "u1") is None


def test_remove_is_defensive_and_idempotent(handler: ReconcilingStateHandler, store: MemoryStore) -> None:
    store.records[_user("Stats")] = "{}"
    handler.remove_model(handler.create_model(AppStats))
    assert store.records == {}

    handler.remove_model(handler.create_model(Scenario, "never-written"))
    deleted = [loc for name, locs in store.calls if name == "delete_many" for loc in locs]
    assert _user("Scenario:never-written") in deleted
    assert _app("Scenario:never-written") in deleted
    assert store.ready_scopes == []


def test_remove_without_user_skips_user_records_of_app_only_models(store: MemoryStore) -> None:
    store.user_id = None
    handler = ReconcilingStateHandler(make_session(user_id=""), store)
    handler.remove_model(handler.create_model(AppStats))
    assert store.call_names() == ["delete_many"]


def test_exists_per_scope_without_reading_models(handler: ReconcilingStateHandler, store: MemoryStore) -> None:
    store.records[_app("Scenario:u1")] = json.dumps({"id": "u1", "app_field": True})

    assert handler.exists(Scenario, "u1", scope=Scope.APPLICATION)
    assert not handler.exists(Scenario, "u1", scope=Scope.USER)
    assert not handler.exists(Scenario, "u1", scope=Scope.SESSION)
    assert store.call_names() == ["get", "get"]
    assert store.calls[0][1] == _app("Scenario:u1")
    assert store.ready_scopes == []
    assert handler.session.attribute_keys() == []


# ---------------------------------------------------------------------------
# Values
# ---------------------------------------------------------------------------


def test_values_are_cached_and_persisted(handler: ReconcilingStateHandler, store: MemoryStore) -> None:
    handler.write_value("volume", 7, Scope.USER)
    handler.write_value("motd", {"text": "hi"}, Scope.APPLICATION)
    handler.write_value("step", 1)

    assert store.records[_user("volume")] == "7"
    assert json.loads(store.records[_app("motd")]) == {"text": "hi"}
    assert _user("step") not in store.records
    assert handler.session.get_attribute("volume") == 7


def test_value_read_falls_back_to_durable_store(handler: ReconcilingStateHandler, store: MemoryStore) -> None:
    store.records[_app("motd")] = json.dumps("hello")
    found = handler.read_values({"motd": Scope.APPLICATION, "step": Scope.SESSION})
    assert list(found) == ["motd"]
    assert found["motd"].value == "hello"
    assert found["motd"].scope is Scope.APPLICATION
    assert handler.session.get_attribute("motd") == "hello"

    store.calls.clear()
    assert handler.read_value("motd", Scope.APPLICATION).value == "hello"
    assert store.calls == []


def test_value_exists_and_removal(handler: ReconcilingStateHandler, store: MemoryStore) -> None:
    handler.write_value("volume", 7, Scope.USER)
    handler.session.clear_attributes()

    assert handler.value_exists("volume", scope=Scope.USER)
    assert not handler.value_exists("volume", scope=Scope.SESSION)
    assert not handler.value_exists("volume", scope=Scope.APPLICATION)

    handler.remove_value("volume")
    assert store.records == {}
    assert handler.read_value("volume", Scope.USER) is None


def test_separate_application_store(store: MemoryStore) -> None:
    app_store = MemoryStore()
    handler = ReconcilingStateHandler(make_session(), store, application_store=app_store)
    _write_scenario(handler)
    assert list(store.records) == [_user("Scenario:u1")]
    assert list(app_store.records) == [_app("Scenario:u1")]


def test_with_user_id_readdresses_user_records(handler: ReconcilingStateHandler, store: MemoryStore) -> None:
    handler.with_user_id("other-user")
    assert store.user_id == "other-user"
    model = handler.create_model(UserProfile)
    model.nickname = "kim"
    handler.write_model(model)
    assert StoreLocation(scope=Scope.USER, container="other-user", key="UserProfile") in store.records

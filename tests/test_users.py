from datetime import datetime, timezone

import pytest

from meshcontrol.models import Machine
from meshcontrol.preauthkeys import PreAuthKeyNotFoundError, PreAuthKeyStore
from meshcontrol.store import InvalidNameError
from meshcontrol.users import (
    UserExistsError,
    UserNotFoundError,
    UserStillHasNodesError,
)


@pytest.fixture
def db(tmp_path):
    store = PreAuthKeyStore(tmp_path / "users.db", ip_prefixes=["10.27.0.0/23"])
    yield store
    store.close()


def _save_machine(db, user, machine_id, hostname, node_key, address, auth_key_id=None):
    machine = Machine(
        id=machine_id,
        machine_key=node_key,
        node_key=node_key,
        disco_key=node_key,
        hostname=hostname,
        user_id=user.id,
        user=user,
        register_method="authkey",
        ip_addresses=[],
        auth_key_id=auth_key_id,
    )
    if address:
        import ipaddress

        machine.ip_addresses = [ipaddress.ip_address(address)]
    return db.save_machine(machine)


def test_create_and_destroy_user(db):
    user = db.create_user("test")
    assert user.name == "test"
    assert len(db.list_users()) == 1

    db.destroy_user("test")

    with pytest.raises(UserNotFoundError):
        db.get_user("test")


def test_create_duplicate_user(db):
    db.create_user("test")
    with pytest.raises(UserExistsError):
        db.create_user("test")


def test_create_user_invalid_name(db):
    with pytest.raises(InvalidNameError):
        db.create_user("Test")


def test_destroy_user_errors(db):
    with pytest.raises(UserNotFoundError):
        db.destroy_user("test")

    user = db.create_user("test")
    pak = db.create_pre_auth_key(user.name, False, False, None, None)
    db.destroy_user("test")

    # destroying a user also deletes all associated preauthkeys
    with pytest.raises(PreAuthKeyNotFoundError):
        db.validate_pre_auth_key(pak.key)

    user = db.create_user("test")
    pak = db.create_pre_auth_key(user.name, False, False, None, None)
    _save_machine(db, user, 0, "testmachine", "bar", None, auth_key_id=pak.id)

    with pytest.raises(UserStillHasNodesError):
        db.destroy_user("test")


def test_rename_user(db):
    user_test = db.create_user("test")
    assert user_test.name == "test"
    assert len(db.list_users()) == 1

    db.rename_user("test", "test-renamed")

    with pytest.raises(UserNotFoundError):
        db.get_user("test")
    assert db.get_user("test-renamed").id == user_test.id

    with pytest.raises(UserNotFoundError):
        db.rename_user("test-does-not-exit", "test")

    user_test2 = db.create_user("test2")
    assert user_test2.name == "test2"

    with pytest.raises(UserExistsError):
        db.rename_user("test2", "test-renamed")


def test_rename_user_invalid_new_name(db):
    db.create_user("test")
    with pytest.raises(InvalidNameError):
        db.rename_user("test", "Bad Name")


def test_get_map_response_user_profiles(db):
    shared1 = db.create_user("shared1")
    shared2 = db.create_user("shared2")
    shared3 = db.create_user("shared3")

    key_a = "686824e749f3b7f2a5927ee6c1e422aee5292592d9179a271ed7b3e659b44a66"
    key_b = "dec46ef9dc45c7d2f03bfcd5a640d9e24e3cc68ce3d9da223867c9bc6d5e9863"
    machine1 = _save_machine(db, shared1, 1, "test_get_shared_nodes_1", key_a, "100.64.0.1")
    machine2 = _save_machine(db, shared2, 2, "test_get_shared_nodes_2", key_b, "100.64.0.2")
    machine3 = _save_machine(db, shared3, 3, "test_get_shared_nodes_3", key_b, "100.64.0.3")
    machine4 = _save_machine(db, shared1, 4, "test_get_shared_nodes_4", key_b, "100.64.0.4")

    profiles = db.get_map_response_user_profiles(machine1, [machine2, machine3, machine4])

    assert len(profiles) == 3
    names = {profile["display_name"] for profile in profiles}
    assert names == {"shared1", "shared2", "shared3"}
    ids = {profile["login_name"]: profile["id"] for profile in profiles}
    assert ids["shared2"] == shared2.id


def test_user_profiles_with_base_domain(tmp_path):
    store = PreAuthKeyStore(
        tmp_path / "domain.db", ip_prefixes=["10.27.0.0/23"], base_domain="example.com"
    )
    try:
        user = store.create_user("alice")
        machine = _save_machine(store, user, 1, "host", "key", "100.64.0.1")
        profiles = store.get_map_response_user_profiles(machine, [])
        assert profiles == [
            {"id": user.id, "login_name": "alice", "display_name": "alice@example.com"}
        ]
    finally:
        store.close()


def test_list_machines_by_user(db):
    user = db.create_user("owner")
    other = db.create_user("other")
    _save_machine(db, user, 1, "one", "k1", None)
    _save_machine(db, other, 2, "two", "k2", None)
    _save_machine(db, user, 3, "three", "k3", None)

    machines = db.list_machines_by_user("owner")
    assert [machine.hostname for machine in machines] == ["one", "three"]

    with pytest.raises(InvalidNameError):
        db.list_machines_by_user("Not Valid")


def test_set_machine_user(db):
    old_user = db.create_user("old")
    new_user = db.create_user("new")
    pak = db.create_pre_auth_key(old_user.name, False, False, None, None)

    machine = _save_machine(db, old_user, 0, "testmachine", "bar", None, auth_key_id=pak.id)
    assert machine.user_id == old_user.id

    db.set_machine_user(machine, new_user.name)
    assert machine.user_id == new_user.id
    assert machine.user.name == new_user.name
    assert db.get_machine_by_id(machine.id).user_id == new_user.id

    with pytest.raises(UserNotFoundError):
        db.set_machine_user(machine, "non-existing-user")

    db.set_machine_user(machine, new_user.name)
    assert machine.user_id == new_user.id
    assert machine.user.name == new_user.name


def test_created_user_has_timestamp(db):
    user = db.create_user("stamped")
    fetched = db.get_user("stamped")
    assert fetched.created_at == user.created_at
    assert fetched.created_at <= datetime.now(timezone.utc)
import ipaddress
from datetime import datetime, timedelta, timezone

import pytest

from meshcontrol.models import HostInfo, Machine
from meshcontrol.store import (
    APIKeyParseError,
    CouldNotAllocateIPError,
    InvalidNameError,
    RecordNotFoundError,
    Store,
    StoreError,
    ValueNotFoundError,
    check_for_fqdn_rules,
    normalize_to_fqdn_rules,
)


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def store(tmp_path, notifications):
    db = Store(
        tmp_path / "test.db",
        [ipaddress.ip_network("10.27.0.0/23")],
        "",
        False,
        on_state_change=lambda: notifications.append("state"),
        on_policy_change=lambda: notifications.append("policy"),
    )
    yield db
    db.close()


def _machine(**overrides):
    values = dict(
        machine_key="foo",
        node_key="bar",
        disco_key="faa",
        hostname="testmachine",
        register_method="authkey",
    )
    values.update(overrides)
    return Machine(**values)


def test_get_available_ip(store, notifications):
    ips = store.get_available_ips()
    assert [str(ip) for ip in ips] == ["10.27.0.1"]
    assert notifications == []


def test_get_used_ips(store, notifications):
    ips = store.get_available_ips()
    machine = store.save_machine(_machine(ip_addresses=ips))

    expected = ipaddress.ip_address("10.27.0.1")
    used = store.get_used_ips()
    assert used == frozenset({expected})
    assert expected in used

    loaded = store.get_machine_by_id(machine.id)
    assert loaded.ip_addresses == [expected]
    assert notifications == []


def test_get_multi_ip(store, notifications):
    for index in range(1, 351):
        ips = store.get_available_ips()
        store.save_machine(_machine(id=index, ip_addresses=ips))

    used = store.get_used_ips()
    expected0 = ipaddress.ip_address("10.27.0.1")
    expected9 = ipaddress.ip_address("10.27.0.10")
    expected300 = ipaddress.ip_address("10.27.0.45")
    assert used != frozenset({expected0, expected9, expected300})
    assert len(used) == 350
    assert {expected0, expected9, expected300} <= used

    assert store.get_machine_by_id(1).ip_addresses == [expected0]
    assert store.get_machine_by_id(50).ip_addresses == [
        ipaddress.ip_address("10.27.0.50")
    ]

    next_ips = store.get_available_ips()
    assert [str(ip) for ip in next_ips] == ["10.27.1.95"]
    again = store.get_available_ips()
    assert [str(ip) for ip in again] == ["10.27.1.95"]
    assert notifications == []


def test_get_available_ip_machine_without_ip(store, notifications):
    ips = store.get_available_ips()
    assert [str(ip) for ip in ips] == ["10.27.0.1"]

    store.save_machine(_machine())

    ips2 = store.get_available_ips()
    assert [str(ip) for ip in ips2] == ["10.27.0.1"]
    assert notifications == []


def test_prefix_exhaustion_raises(tmp_path):
    with Store(tmp_path / "small.db", ["10.0.0.0/30"]) as db:
        first = db.get_available_ips()
        assert [str(ip) for ip in first] == ["10.0.0.1"]
        db.save_machine(_machine(ip_addresses=first))
        second = db.get_available_ips()
        assert [str(ip) for ip in second] == ["10.0.0.2"]
        db.save_machine(_machine(ip_addresses=second, node_key="other"))
        with pytest.raises(CouldNotAllocateIPError):
            db.get_available_ips()


def test_loopback_prefix_has_nothing_to_allocate(tmp_path):
    with Store(tmp_path / "lo.db", ["127.0.0.0/30"]) as db:
        with pytest.raises(CouldNotAllocateIPError):
            db.get_available_ip("127.0.0.0/30")


def test_ipv6_prefix_allocation(tmp_path):
    with Store(tmp_path / "v6.db", ["fd7a:115c:a1e0::/48", "100.64.0.0/10"]) as db:
        ips = db.get_available_ips()
        assert [str(ip) for ip in ips] == ["fd7a:115c:a1e0::1", "100.64.0.1"]


def test_deleted_machines_release_addresses(store):
    machine = store.save_machine(_machine(ip_addresses=store.get_available_ips()))
    with store._write() as conn:
        conn.execute(
            "UPDATE machines SET deleted_at = ? WHERE id = ?",
            ("2020-01-01T00:00:00+00:00", machine.id),
        )
    assert store.get_used_ips() == frozenset()
    with pytest.raises(RecordNotFoundError):
        store.get_machine_by_id(machine.id)


def test_machine_round_trip(store):
    expiry = datetime(2030, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    machine = _machine(
        ip_addresses=[
            ipaddress.ip_address("192.0.2.1"),
            ipaddress.ip_address("2001:db8::1"),
        ],
        forced_tags=["tag:test"],
        expiry=expiry,
        host_info=HostInfo(
            os="linux",
            hostname="testmachine",
            request_tags=["tag:exit"],
            routable_ips=[ipaddress.ip_network("10.0.0.0/24")],
        ),
    )
    store.save_machine(machine)
    assert machine.id > 0

    loaded = store.get_machine_by_id(machine.id)
    assert loaded.ip_addresses == machine.ip_addresses
    assert loaded.forced_tags == ["tag:test"]
    assert loaded.expiry == expiry
    assert loaded.host_info.routable_ips == [ipaddress.ip_network("10.0.0.0/24")]
    assert loaded.host_info.request_tags == ["tag:exit"]

    machine.hostname = "renamed"
    store.save_machine(machine)
    assert store.get_machine_by_id(machine.id).hostname == "renamed"


def test_missing_machine_raises(store):
    with pytest.raises(RecordNotFoundError):
        store.get_machine_by_id(12345)


def test_key_value(store):
    assert store.get_value("db_version") == "1"
    with pytest.raises(ValueNotFoundError):
        store.get_value("missing")
    store.set_value("color", "blue")
    store.set_value("color", "green")
    assert store.get_value("color") == "green"


def test_ping_after_close_raises(tmp_path):
    db = Store(tmp_path / "closed.db")
    db.close()
    with pytest.raises(StoreError):
        db.ping()


def test_create_api_key(store, notifications):
    key_str, api_key = store.create_api_key(None)
    prefix, _, secret_part = key_str.partition(".")
    assert prefix == api_key.prefix
    assert len(prefix) == 10
    assert secret_part != ""
    assert api_key.hash.startswith(b"$2")

    store.list_api_keys()
    keys = store.list_api_keys()
    assert len(keys) == 1
    assert keys[0].prefix == api_key.prefix
    assert notifications == []


def test_api_key_does_not_exist(store):
    with pytest.raises(RecordNotFoundError):
        store.get_api_key("does-not-exist")


def test_validate_api_key_ok(store, notifications):
    expiration = datetime.now(timezone.utc) + timedelta(hours=2)
    key_str, api_key = store.create_api_key(expiration)
    assert api_key.expiration == expiration
    assert store.validate_api_key(key_str) is True
    assert notifications == []


def test_validate_api_key_not_ok(store, notifications):
    past = datetime.now(timezone.utc) - timedelta(hours=2)
    key_str, _ = store.create_api_key(past)
    assert store.validate_api_key(key_str) is False

    now_key, _ = store.create_api_key(datetime.now(timezone.utc))
    assert store.validate_api_key(now_key) is False

    with pytest.raises(RecordNotFoundError):
        store.validate_api_key("nota.validkey")

    with pytest.raises(APIKeyParseError):
        store.validate_api_key("produceerrorkey")
    assert notifications == []


def test_validate_api_key_wrong_secret(store):
    key_str, api_key = store.create_api_key(None)
    with pytest.raises(StoreError):
        store.validate_api_key(api_key.prefix + ".wrong")
    assert store.validate_api_key(key_str) is True


def test_expire_api_key(store, notifications):
    expiration = datetime.now(timezone.utc) + timedelta(hours=2)
    key_str, api_key = store.create_api_key(expiration)
    assert store.validate_api_key(key_str) is True

    store.expire_api_key(api_key)
    assert api_key.expiration <= datetime.now(timezone.utc)
    assert store.validate_api_key(key_str) is False
    assert notifications == []


def test_api_key_by_id_and_destroy(store):
    _, api_key = store.create_api_key(None)
    fetched = store.get_api_key_by_id(api_key.id)
    assert fetched.prefix == api_key.prefix
    assert fetched.hash == api_key.hash

    store.destroy_api_key(fetched)
    assert store.list_api_keys() == []
    with pytest.raises(RecordNotFoundError):
        store.get_api_key_by_id(api_key.id)


@pytest.mark.parametrize(
    "name", ["Test", "a" * 64, "foo_bar", "with space"]
)
def test_check_for_fqdn_rules_rejects(name):
    with pytest.raises(InvalidNameError):
        check_for_fqdn_rules(name)


def test_check_for_fqdn_rules_accepts_and_normalize():
    assert check_for_fqdn_rules("test-ip.multi") is None
    assert normalize_to_fqdn_rules("Hello_World", False) == "hello-world"
    assert normalize_to_fqdn_rules("user@example.com", True) == "user"
    assert normalize_to_fqdn_rules("user@example.com", False) == "user.example.com"
    assert normalize_to_fqdn_rules("o'neil", False) == "oneil"


def test_normalize_rejects_long_label():
    with pytest.raises(InvalidNameError):
        normalize_to_fqdn_rules("a" * 64, False)
    assert normalize_to_fqdn_rules("a" * 63, False) == "a" * 63


def test_given_names_normalized_on_open(tmp_path):
    path = tmp_path / "migrate.db"
    with Store(path) as db:
        machine = db.save_machine(_machine(hostname="My_Host", given_name=""))
        machine_id = machine.id
    with Store(path) as db:
        assert db.get_machine_by_id(machine_id).given_name == "my-host"
"""SQLite-backed storage: schema, key/value settings, IP allocation and API keys."""

from __future__ import annotations

import ipaddress
import json
import logging
import re
import secrets
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional, Union

import bcrypt

from .models import (
    APIKey,
    HostInfo,
    Machine,
    PreAuthKey,
    Route,
    User,
    parse_addresses,
    serialize_addresses,
)

logger = logging.getLogger(__name__)

DB_VERSION = "1"
LABEL_HOSTNAME_LENGTH = 63
API_PREFIX_LENGTH = 7
API_KEY_LENGTH = 32
BCRYPT_DEFAULT_COST = 10

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

_INVALID_NAME_CHARS = re.compile(r"[^a-z0-9\-.]+")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT UNIQUE,
    created_at TEXT,
    updated_at TEXT
);
CREATE TABLE IF NOT EXISTS machines (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    machine_key TEXT,
    node_key TEXT,
    disco_key TEXT,
    ip_addresses TEXT,
    hostname TEXT,
    given_name TEXT,
    user_id INTEGER,
    register_method TEXT,
    forced_tags TEXT,
    auth_key_id INTEGER,
    last_seen TEXT,
    last_successful_update TEXT,
    expiry TEXT,
    host_info TEXT,
    endpoints TEXT,
    created_at TEXT,
    updated_at TEXT,
    deleted_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_machines_node_key ON machines (node_key);
CREATE INDEX IF NOT EXISTS idx_machines_machine_key ON machines (machine_key);
CREATE INDEX IF NOT EXISTS idx_machines_user_id ON machines (user_id);
CREATE TABLE IF NOT EXISTS routes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    machine_id INTEGER,
    prefix TEXT,
    advertised INTEGER NOT NULL DEFAULT 0,
    enabled INTEGER NOT NULL DEFAULT 0,
    is_primary INTEGER NOT NULL DEFAULT 0,
    created_at TEXT,
    updated_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_routes_machine_id ON routes (machine_id);
CREATE TABLE IF NOT EXISTS kvs (
    key TEXT PRIMARY KEY,
    value TEXT
);
CREATE TABLE IF NOT EXISTS pre_auth_keys (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    key TEXT,
    user_id INTEGER,
    reusable INTEGER NOT NULL DEFAULT 0,
    ephemeral INTEGER NOT NULL DEFAULT 0,
    used INTEGER NOT NULL DEFAULT 0,
    created_at TEXT,
    expiration TEXT
);
CREATE TABLE IF NOT EXISTS pre_auth_key_acl_tags (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pre_auth_key_id INTEGER,
    tag TEXT
);
CREATE TABLE IF NOT EXISTS api_keys (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    prefix TEXT UNIQUE,
    hash BLOB,
    created_at TEXT,
    expiration TEXT,
    last_seen TEXT
);
"""

_MACHINE_COLUMNS = (
    "machine_key",
    "node_key",
    "disco_key",
    "ip_addresses",
    "hostname",
    "given_name",
    "user_id",
    "register_method",
    "forced_tags",
    "auth_key_id",
    "last_seen",
    "last_successful_update",
    "expiry",
    "host_info",
    "endpoints",
    "created_at",
    "updated_at",
)


class StoreError(Exception):
    """Base class for storage failures."""


class RecordNotFoundError(StoreError, LookupError):
    """A requested record does not exist."""


class ValueNotFoundError(StoreError, LookupError):
    """A key is missing from the key/value table."""


class InvalidNameError(StoreError, ValueError):
    """A name does not follow the DNS label rules."""


class CouldNotAllocateIPError(StoreError):
    """No free address is left in a prefix."""


class APIKeyParseError(StoreError, ValueError):
    """An API key string is not of the form prefix.secret."""


def check_for_fqdn_rules(name: str) -> None:
    """Raise InvalidNameError unless ``name`` is a valid lower-case DNS label."""
    if len(name) > LABEL_HOSTNAME_LENGTH:
        raise InvalidNameError(
            f"DNS segment must not be over {LABEL_HOSTNAME_LENGTH} chars. "
            f"{name} doesn't comply with this rule"
        )
    if name.lower() != name:
        raise InvalidNameError(
            f"DNS segment should be lowercase. {name} doesn't comply with this rule"
        )
    if _INVALID_NAME_CHARS.search(name):
        raise InvalidNameError(
            f"DNS segment should only be composed of lowercase ASCII letters "
            f"numbers, hyphen and dots. {name} doesn't comply with these rules"
        )


def normalize_to_fqdn_rules(name: str, strip_email_domain: bool) -> str:
    """Turn an arbitrary name into DNS-safe labels; raise InvalidNameError if too long."""
    name = name.lower().replace("'", "")
    at_index = name.find("@")
    if strip_email_domain and at_index > 0:
        name = name[:at_index]
    else:
        name = name.replace("@", ".")
    name = _INVALID_NAME_CHARS.sub("-", name)
    for label in name.split("."):
        if len(label) > LABEL_HOSTNAME_LENGTH:
            raise InvalidNameError(
                f"label {label} is more than {LABEL_HOSTNAME_LENGTH} chars"
            )
    return name


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _to_db(moment: Optional[datetime]) -> Optional[str]:
    return None if moment is None else _utc(moment).isoformat()


def _from_db(text: Optional[str]) -> Optional[datetime]:
    return None if not text else _utc(datetime.fromisoformat(text))


def _as_network(prefix) -> IPNetwork:
    if isinstance(prefix, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
        return prefix
    return ipaddress.ip_network(prefix, strict=False)


def _dump_host_info(info: HostInfo) -> str:
    return json.dumps(
        {
            "os": info.os,
            "hostname": info.hostname,
            "request_tags": list(info.request_tags),
            "routable_ips": [str(prefix) for prefix in info.routable_ips],
            "preferred_derp": info.preferred_derp,
        }
    )


def _load_host_info(text: Optional[str]) -> HostInfo:
    if not text:
        return HostInfo()
    data = json.loads(text)
    return HostInfo(
        os=data.get("os", ""),
        hostname=data.get("hostname", ""),
        request_tags=list(data.get("request_tags") or []),
        routable_ips=[
            ipaddress.ip_network(prefix, strict=False)
            for prefix in data.get("routable_ips") or []
        ],
        preferred_derp=data.get("preferred_derp"),
    )


def _random_url_safe(length: int) -> str:
    return secrets.token_urlsafe(length)


class Store:
    """Owns the SQLite connection and the operations shared by all record types."""

    def __init__(
        self,
        path,
        ip_prefixes: Iterable = (),
        base_domain: str = "",
        strip_email_domain: bool = False,
        on_state_change: Optional[Callable[[], None]] = None,
        on_policy_change: Optional[Callable[[], None]] = None,
    ) -> None:
        self.ip_prefixes: list[IPNetwork] = [_as_network(p) for p in ip_prefixes]
        self.base_domain = base_domain
        self.strip_email_domain = strip_email_domain
        self._on_state_change = on_state_change
        self._on_policy_change = on_policy_change
        self._lock = threading.RLock()
        self._ip_allocation_lock = threading.Lock()

        target = str(path) if isinstance(path, Path) else path
        logger.debug("opening database %s", target)
        try:
            self._conn = sqlite3.connect(target, check_same_thread=False)
        except sqlite3.Error as err:
            raise StoreError(f"could not open database {target}: {err}") from err
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            if target != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
                self._conn.execute("PRAGMA synchronous=1")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.executescript(_SCHEMA)
        self._normalize_given_names()
        self.set_value("db_version", DB_VERSION)

    # -- plumbing -----------------------------------------------------------

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.Error as err:
                raise StoreError(f"database write failed: {err}") from err

    def _query(self, sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, tuple(params)).fetchall()
            except sqlite3.Error as err:
                raise StoreError(f"database query failed: {err}") from err

    def _query_one(self, sql: str, params: Iterable = ()) -> Optional[sqlite3.Row]:
        rows = self._query(sql, params)
        return rows[0] if rows else None

    def _notify_state_change(self) -> None:
        if self._on_state_change is not None:
            self._on_state_change()

    def _notify_policy_change(self) -> None:
        if self._on_policy_change is not None:
            self._on_policy_change()

    def _normalize_given_names(self) -> None:
        rows = self._query(
            "SELECT id, hostname FROM machines "
            "WHERE deleted_at IS NULL AND (given_name IS NULL OR given_name = '')"
        )
        for row in rows:
            hostname = row["hostname"] or ""
            try:
                normalized = normalize_to_fqdn_rules(hostname, self.strip_email_domain)
                check_for_fqdn_rules(normalized)
            except InvalidNameError as err:
                logger.error(
                    "Failed to normalize machine hostname %s in DB migration: %s",
                    hostname,
                    err,
                )
                continue
            with self._write() as conn:
                conn.execute(
                    "UPDATE machines SET given_name = ? WHERE id = ?",
                    (normalized, row["id"]),
                )

    # -- row conversion -----------------------------------------------------

    def _user_from_row(self, row: sqlite3.Row) -> User:
        return User(
            id=row["id"], name=row["name"] or "", created_at=_from_db(row["created_at"])
        )

    def _user_by_id(self, user_id: Optional[int]) -> Optional[User]:
        if user_id is None:
            return None
        row = self._query_one("SELECT * FROM users WHERE id = ?", (user_id,))
        return self._user_from_row(row) if row else None

    def _pre_auth_key_from_row(self, row: sqlite3.Row) -> PreAuthKey:
        tags = [
            tag_row["tag"]
            for tag_row in self._query(
                "SELECT tag FROM pre_auth_key_acl_tags "
                "WHERE pre_auth_key_id = ? ORDER BY id",
                (row["id"],),
            )
        ]
        return PreAuthKey(
            id=row["id"],
            key=row["key"] or "",
            user_id=row["user_id"] or 0,
            user=self._user_by_id(row["user_id"]) or User(),
            reusable=bool(row["reusable"]),
            ephemeral=bool(row["ephemeral"]),
            used=bool(row["used"]),
            acl_tags=tags,
            created_at=_from_db(row["created_at"]),
            expiration=_from_db(row["expiration"]),
        )

    def _pre_auth_key_by_id(self, key_id: Optional[int]) -> Optional[PreAuthKey]:
        if key_id is None:
            return None
        row = self._query_one("SELECT * FROM pre_auth_keys WHERE id = ?", (key_id,))
        return self._pre_auth_key_from_row(row) if row else None

    def _machine_from_row(self, row: sqlite3.Row) -> Machine:
        return Machine(
            id=row["id"],
            machine_key=row["machine_key"] or "",
            node_key=row["node_key"] or "",
            disco_key=row["disco_key"] or "",
            ip_addresses=parse_addresses(row["ip_addresses"]),
            hostname=row["hostname"] or "",
            given_name=row["given_name"] or "",
            user_id=row["user_id"] or 0,
            user=self._user_by_id(row["user_id"]) or User(),
            register_method=row["register_method"] or "",
            forced_tags=json.loads(row["forced_tags"] or "[]"),
            auth_key_id=row["auth_key_id"],
            auth_key=self._pre_auth_key_by_id(row["auth_key_id"]),
            last_seen=_from_db(row["last_seen"]),
            last_successful_update=_from_db(row["last_successful_update"]),
            expiry=_from_db(row["expiry"]),
            host_info=_load_host_info(row["host_info"]),
            endpoints=json.loads(row["endpoints"] or "[]"),
            created_at=_from_db(row["created_at"]),
        )

    def _select_machines(self, where: str = "", params: Iterable = ()) -> list[Machine]:
        sql = "SELECT * FROM machines WHERE deleted_at IS NULL"
        if where:
            sql += f" AND ({where})"
        sql += " ORDER BY id"
        return [self._machine_from_row(row) for row in self._query(sql, params)]

    def _route_from_row(
        self, row: sqlite3.Row, machine: Optional[Machine] = None
    ) -> Route:
        if machine is None:
            machines = self._select_machines("id = ?", (row["machine_id"],))
            machine = machines[0] if machines else Machine()
        return Route(
            id=row["id"],
            machine_id=row["machine_id"] or 0,
            machine=machine,
            prefix=ipaddress.ip_network(row["prefix"], strict=False),
            advertised=bool(row["advertised"]),
            enabled=bool(row["enabled"]),
            is_primary=bool(row["is_primary"]),
        )

    def _api_key_from_row(self, row: sqlite3.Row) -> APIKey:
        return APIKey(
            id=row["id"],
            prefix=row["prefix"],
            hash=bytes(row["hash"] or b""),
            created_at=_from_db(row["created_at"]),
            expiration=_from_db(row["expiration"]),
            last_seen=_from_db(row["last_seen"]),
        )

    # -- connection ---------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def ping(self) -> None:
        """Raise StoreError if the database cannot answer a trivial query."""
        self._query("SELECT 1")

    # -- key/value ----------------------------------------------------------

    def get_value(self, key: str) -> str:
        row = self._query_one("SELECT value FROM kvs WHERE key = ?", (key,))
        if row is None:
            raise ValueNotFoundError(f"{key}: not found")
        return row["value"]

    def set_value(self, key: str, value: str) -> None:
        with self._write() as conn:
            conn.execute(
                "INSERT INTO kvs (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

    # -- machines -----------------------------------------------------------

    def save_machine(self, machine: Machine) -> Machine:
        """Insert or update ``machine``; a zero id gets a newly assigned one."""
        if machine.user.id:
            machine.user_id = machine.user.id
        now = _now()
        if machine.created_at is None:
            machine.created_at = now
        values = {
            "machine_key": machine.machine_key,
            "node_key": machine.node_key,
            "disco_key": machine.disco_key,
            "ip_addresses": serialize_addresses(machine.ip_addresses),
            "hostname": machine.hostname,
            "given_name": machine.given_name,
            "user_id": machine.user_id,
            "register_method": machine.register_method,
            "forced_tags": json.dumps(list(machine.forced_tags)),
            "auth_key_id": machine.auth_key_id,
            "last_seen": _to_db(machine.last_seen),
            "last_successful_update": _to_db(machine.last_successful_update),
            "expiry": _to_db(machine.expiry),
            "host_info": _dump_host_info(machine.host_info),
            "endpoints": json.dumps(list(machine.endpoints)),
            "created_at": _to_db(machine.created_at),
            "updated_at": _to_db(now),
        }
        columns = list(_MACHINE_COLUMNS)
        params = [values[column] for column in columns]
        with self._write() as conn:
            if machine.id:
                updates = ", ".join(f"{c} = excluded.{c}" for c in columns)
                conn.execute(
                    f"INSERT INTO machines (id, {', '.join(columns)}) "
                    f"VALUES (?, {', '.join('?' for _ in columns)}) "
                    f"ON CONFLICT(id) DO UPDATE SET {updates}",
                    [machine.id, *params],
                )
            else:
                cursor = conn.execute(
                    f"INSERT INTO machines ({', '.join(columns)}) "
                    f"VALUES ({', '.join('?' for _ in columns)})",
                    params,
                )
                machine.id = cursor.lastrowid
        return machine

    def get_machine_by_id(self, machine_id: int) -> Machine:
        machines = self._select_machines("id = ?", (machine_id,))
        if not machines:
            raise RecordNotFoundError(f"machine {machine_id} not found")
        return machines[0]

    # -- address allocation -------------------------------------------------

    def get_available_ips(self) -> list[IPAddress]:
        """One free address from every configured prefix."""
        return [self.get_available_ip(prefix) for prefix in self.ip_prefixes]

    def get_available_ip(self, ip_prefix) -> IPAddress:
        """First address in the prefix that is not the network, last, used or loopback."""
        network = _as_network(ip_prefix)
        used = self.get_used_ips()
        last = network.broadcast_address
        try:
            candidate = network.network_address + 1
        except ipaddress.AddressValueError:
            raise CouldNotAllocateIPError("could not find any suitable IP") from None
        while candidate in network:
            if candidate != last and candidate not in used and not candidate.is_loopback:
                return candidate
            try:
                candidate += 1
            except ipaddress.AddressValueError:
                break
        raise CouldNotAllocateIPError("could not find any suitable IP")

    def get_used_ips(self) -> frozenset:
        """All addresses held by machines that are not deleted."""
        used: set = set()
        for row in self._query(
            "SELECT ip_addresses FROM machines WHERE deleted_at IS NULL"
        ):
            try:
                used.update(parse_addresses(row["ip_addresses"]))
            except ValueError as err:
                raise StoreError(f"failed to read ip from database: {err}") from err
        return frozenset(used)

    # -- API keys -----------------------------------------------------------

    def create_api_key(
        self, expiration: Optional[datetime] = None
    ) -> tuple[str, APIKey]:
        """Create a key; the returned string is the only time the secret is visible."""
        prefix = _random_url_safe(API_PREFIX_LENGTH)
        to_be_hashed = _random_url_safe(API_KEY_LENGTH)
        key_str = f"{prefix}.{to_be_hashed}"
        hashed = bcrypt.hashpw(
            to_be_hashed.encode(), bcrypt.gensalt(rounds=BCRYPT_DEFAULT_COST)
        )
        key = APIKey(prefix=prefix, hash=hashed, created_at=_now(), expiration=expiration)
        try:
            with self._write() as conn:
                cursor = conn.execute(
                    "INSERT INTO api_keys (prefix, hash, created_at, expiration) "
                    "VALUES (?, ?, ?, ?)",
                    (key.prefix, key.hash, _to_db(key.created_at), _to_db(expiration)),
                )
                key.id = cursor.lastrowid
        except StoreError as err:
            raise StoreError(f"failed to save API key to database: {err}") from err
        return key_str, key

    def list_api_keys(self) -> list[APIKey]:
        return [
            self._api_key_from_row(row)
            for row in self._query("SELECT * FROM api_keys ORDER BY id")
        ]

    def get_api_key(self, prefix: str) -> APIKey:
        row = self._query_one("SELECT * FROM api_keys WHERE prefix = ?", (prefix,))
        if row is None:
            raise RecordNotFoundError(f"api key {prefix!r} not found")
        return self._api_key_from_row(row)

    def get_api_key_by_id(self, key_id: int) -> APIKey:
        row = self._query_one("SELECT * FROM api_keys WHERE id = ?", (key_id,))
        if row is None:
            raise RecordNotFoundError(f"api key {key_id} not found")
        return self._api_key_from_row(row)

    def destroy_api_key(self, key: APIKey) -> None:
        with self._write() as conn:
            conn.execute("DELETE FROM api_keys WHERE id = ?", (key.id,))

    def expire_api_key(self, key: APIKey) -> None:
        now = _now()
        with self._write() as conn:
            conn.execute(
                "UPDATE api_keys SET expiration = ? WHERE id = ?", (_to_db(now), key.id)
            )
        key.expiration = now

    def validate_api_key(self, key_str: str) -> bool:
        """False for an expired key; raises for unparsable, unknown or wrong keys."""
        prefix, sep, secret_part = key_str.partition(".")
        if not sep:
            raise APIKeyParseError("failed to parse ApiKey")
        try:
            key = self.get_api_key(prefix)
        except RecordNotFoundError as err:
            raise RecordNotFoundError(f"failed to validate api key: {err}") from err
        if key.expiration is not None and _utc(key.expiration) < _now():
            return False
        if not bcrypt.checkpw(secret_part.encode(), key.hash):
            raise StoreError("api key does not match its stored hash")
        return True
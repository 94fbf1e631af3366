"""Core records shared by the control server: users, machines, routes and keys."""

from __future__ import annotations

import copy
import ipaddress
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

NODE_KEY_PREFIX = "nodekey:"
MACHINE_KEY_PREFIX = "mkey:"
DISCO_KEY_PREFIX = "discokey:"
_KEY_PREFIXES = (NODE_KEY_PREFIX, MACHINE_KEY_PREFIX, DISCO_KEY_PREFIX)

REGISTER_METHOD_AUTH_KEY = "authkey"
REGISTER_METHOD_OIDC = "oidc"
REGISTER_METHOD_CLI = "cli"

KEEP_ALIVE_INTERVAL = timedelta(seconds=60)

EXIT_ROUTE_V4 = ipaddress.ip_network("0.0.0.0/0")
EXIT_ROUTE_V6 = ipaddress.ip_network("::/0")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare with aware ones."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def strip_key_prefix(value: str) -> str:
    """Remove a node, machine or disco key prefix from a key string."""
    for prefix in _KEY_PREFIXES:
        if value.startswith(prefix):
            return value[len(prefix):]
    return value


def ensure_key_prefix(value: str, prefix: str) -> str:
    """Return the key string with ``prefix`` in front, adding it if missing."""
    if value.startswith(prefix):
        return value
    return prefix + value


def serialize_addresses(addresses) -> str:
    """Join addresses into the comma separated form stored in the database."""
    return ",".join(str(address) for address in addresses)


def parse_addresses(value) -> list[IPAddress]:
    """Parse the comma separated address form; raises ValueError on bad input."""
    if value is None:
        return []
    if isinstance(value, (bytes, bytearray)):
        value = value.decode()
    if not isinstance(value, str):
        raise ValueError(f"cannot parse addresses from {type(value).__name__}")
    if not value:
        return []
    return [ipaddress.ip_address(part) for part in value.split(",")]


@dataclass
class User:
    id: int = 0
    name: str = ""
    created_at: Optional[datetime] = None


@dataclass
class HostInfo:
    os: str = ""
    hostname: str = ""
    request_tags: list[str] = field(default_factory=list)
    routable_ips: list[IPNetwork] = field(default_factory=list)
    preferred_derp: Optional[int] = None


@dataclass
class PreAuthKey:
    id: int = 0
    key: str = ""
    user_id: int = 0
    user: User = field(default_factory=User)
    reusable: bool = False
    ephemeral: bool = False
    used: bool = False
    acl_tags: list[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    expiration: Optional[datetime] = None


@dataclass
class Machine:
    id: int = 0
    machine_key: str = ""
    node_key: str = ""
    disco_key: str = ""
    ip_addresses: list[IPAddress] = field(default_factory=list)
    hostname: str = ""
    given_name: str = ""
    user_id: int = 0
    user: User = field(default_factory=User)
    register_method: str = ""
    forced_tags: list[str] = field(default_factory=list)
    auth_key_id: Optional[int] = None
    auth_key: Optional[PreAuthKey] = None
    last_seen: Optional[datetime] = None
    last_successful_update: Optional[datetime] = None
    expiry: Optional[datetime] = None
    host_info: HostInfo = field(default_factory=HostInfo)
    endpoints: list[str] = field(default_factory=list)
    created_at: Optional[datetime] = None

    def is_expired(self) -> bool:
        """A machine without an expiry never expires."""
        if self.expiry is None:
            return False
        return _utcnow() > _as_utc(self.expiry)

    def is_online(self) -> bool:
        """Seen within the keep-alive interval and not expired."""
        if self.last_seen is None:
            return False
        if self.is_expired():
            return False
        return _as_utc(self.last_seen) > _utcnow() - KEEP_ALIVE_INTERVAL

    def is_ephemeral(self) -> bool:
        return self.auth_key is not None and self.auth_key.ephemeral


@dataclass
class Route:
    id: int = 0
    machine_id: int = 0
    machine: Machine = field(default_factory=Machine)
    prefix: IPNetwork = EXIT_ROUTE_V4
    advertised: bool = False
    enabled: bool = False
    is_primary: bool = False

    def is_exit_route(self) -> bool:
        return self.prefix in (EXIT_ROUTE_V4, EXIT_ROUTE_V6)

    def __str__(self) -> str:
        return f"{self.machine.given_name}:{self.prefix}"


@dataclass
class APIKey:
    id: int = 0
    prefix: str = ""
    hash: bytes = b""
    created_at: Optional[datetime] = None
    expiration: Optional[datetime] = None
    last_seen: Optional[datetime] = None


@dataclass
class Resolver:
    addr: str = ""


@dataclass
class DNSConfig:
    resolvers: list[Resolver] = field(default_factory=list)
    routes: dict[str, Optional[list[Resolver]]] = field(default_factory=dict)
    domains: list[str] = field(default_factory=list)
    proxied: bool = False
    nameservers: list[IPAddress] = field(default_factory=list)
    extra_records: list[dict] = field(default_factory=list)

    def clone(self) -> "DNSConfig":
        """Return a deep copy that shares no mutable state with this one."""
        return copy.deepcopy(self)
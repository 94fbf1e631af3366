"""Conversion of stored machines into the node records sent to clients."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Union

from .models import (
    DISCO_KEY_PREFIX,
    MACHINE_KEY_PREFIX,
    NODE_KEY_PREFIX,
    DNSConfig,
    HostInfo,
    Machine,
    ensure_key_prefix,
)
from .store import StoreError

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

MAX_HOSTNAME_LENGTH = 255
DERP_MAGIC_IP = "127.3.3.40"

CAPABILITY_FILE_SHARING = "cap/file-sharing"
CAPABILITY_ADMIN = "cap/is-admin"
CAPABILITY_SSH = "cap/ssh"

_HEX_KEY = re.compile(r"[0-9a-f]{64}")


class HostnameTooLongError(StoreError, ValueError):
    """The MagicDNS name of a machine is longer than a DNS name may be."""


def _parse_public_key(text: str, prefix: str, kind: str) -> str:
    """Check that ``text`` is ``prefix`` followed by 64 hex digits and return it."""
    if not text.startswith(prefix) or not _HEX_KEY.fullmatch(text[len(prefix):]):
        raise ValueError(f"failed to parse {kind} public key: {text!r}")
    return text


@dataclass
class TailNode:
    """A machine as it is described to its peers."""

    id: int
    stable_id: str
    name: str
    user: int
    key: str
    key_expiry: Optional[datetime]
    machine: str
    disco_key: str
    addresses: list[IPNetwork]
    allowed_ips: list[IPNetwork]
    endpoints: list[str]
    derp: str
    hostinfo: HostInfo
    created: Optional[datetime]
    tags: list[str] = field(default_factory=list)
    primary_routes: list[IPNetwork] = field(default_factory=list)
    last_seen: Optional[datetime] = None
    online: bool = False
    keep_alive: bool = True
    machine_authorized: bool = False
    capabilities: list[str] = field(default_factory=list)


def tail_node(db, machine: Machine, dns_config: Optional[DNSConfig] = None) -> TailNode:
    """Describe ``machine`` as a node, with its addresses, routes and DNS name."""
    node_key = _parse_public_key(
        ensure_key_prefix(machine.node_key, NODE_KEY_PREFIX), NODE_KEY_PREFIX, "node"
    )

    machine_key = ""
    if machine.machine_key:
        machine_key = _parse_public_key(
            ensure_key_prefix(machine.machine_key, MACHINE_KEY_PREFIX),
            MACHINE_KEY_PREFIX,
            "machine",
        )

    disco_key = ""
    if machine.disco_key:
        disco_key = _parse_public_key(
            ensure_key_prefix(machine.disco_key, DISCO_KEY_PREFIX),
            DISCO_KEY_PREFIX,
            "disco",
        )

    addresses = [
        ipaddress.ip_network(f"{address}/{address.max_prefixlen}")
        for address in machine.ip_addresses
    ]
    allowed_ips = list(addresses)

    primary_prefixes = [
        route.prefix for route in db.get_machine_primary_routes(machine)
    ]
    allowed_ips.extend(
        route.prefix
        for route in db.get_machine_routes(machine)
        if route.enabled and (route.is_primary or route.is_exit_route())
    )

    preferred = machine.host_info.preferred_derp
    derp = f"{DERP_MAGIC_IP}:{preferred if preferred is not None else 0}"

    if dns_config is not None and dns_config.proxied:
        hostname = f"{machine.given_name}.{machine.user.name}.{db.base_domain}"
        if len(hostname) > MAX_HOSTNAME_LENGTH:
            raise HostnameTooLongError(
                f"hostname {hostname!r} is too long it cannot except 255 ASCII chars: "
                "hostname too long"
            )
    else:
        hostname = machine.given_name

    tags = list(dict.fromkeys(machine.forced_tags))

    return TailNode(
        id=machine.id,
        stable_id=str(machine.id),
        name=hostname,
        user=machine.user_id,
        key=node_key,
        key_expiry=machine.expiry,
        machine=machine_key,
        disco_key=disco_key,
        addresses=addresses,
        allowed_ips=allowed_ips,
        endpoints=list(machine.endpoints),
        derp=derp,
        hostinfo=machine.host_info,
        created=machine.created_at,
        tags=tags,
        primary_routes=primary_prefixes,
        last_seen=machine.last_seen,
        online=machine.is_online(),
        keep_alive=True,
        machine_authorized=not machine.is_expired(),
        capabilities=[CAPABILITY_FILE_SHARING, CAPABILITY_ADMIN, CAPABILITY_SSH],
    )


def tail_nodes(
    db, machines: Iterable[Machine], dns_config: Optional[DNSConfig] = None
) -> list[TailNode]:
    """Describe every machine as a node, in the order given."""
    return [tail_node(db, machine, dns_config) for machine in machines]
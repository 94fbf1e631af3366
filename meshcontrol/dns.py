"""MagicDNS root domains and per-machine DNS configuration."""

from __future__ import annotations

import ipaddress
from typing import Iterable, Optional, Union
from urllib.parse import urlencode

from .models import DNSConfig, Machine, Resolver

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

BYTE_SIZE = 8
IPV4_ADDRESS_LENGTH = 32
IPV6_ADDRESS_LENGTH = 128
NEXTDNS_DOH_PREFIX = "https://dns.nextdns.io"

_MAX_LABEL_LENGTH = 63
_MAX_NAME_LENGTH = 253
_NIBBLE_LEN = 4


def _as_network(prefix) -> IPNetwork:
    if isinstance(prefix, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
        return prefix
    return ipaddress.ip_network(prefix, strict=False)


def _to_fqdn(name: str) -> str:
    """Validate a DNS name and return it with a trailing dot."""
    bare = name[:-1] if name.endswith(".") else name
    if not bare:
        raise ValueError(f"{name!r} is not a valid DNS name")
    if len(bare) > _MAX_NAME_LENGTH:
        raise ValueError(f"{name!r} is too long to be a DNS name")
    for label in bare.split("."):
        if not label:
            raise ValueError(f"{name!r} contains an empty label")
        if len(label) > _MAX_LABEL_LENGTH:
            raise ValueError(f"label {label!r} is too long")
    return bare + "."


def generate_ipv4_dns_root_domain(ip_prefix) -> list[str]:
    """Reverse DNS zones covering an IPv4 prefix, one per value of its partial octet."""
    network = _as_network(ip_prefix)
    mask_bits = network.prefixlen
    last_octet = mask_bits // BYTE_SIZE
    octets = network.network_address.packed
    if last_octet >= len(octets):
        raise ValueError(f"prefix {network} leaves no octet to enumerate")

    wildcard_bits = BYTE_SIZE - mask_bits % BYTE_SIZE
    low = octets[last_octet]
    high = low + (1 << wildcard_bits) - 1

    base = ".".join(
        [str(octet) for octet in reversed(octets[:last_octet])] + ["in-addr.arpa."]
    )

    fqdns = []
    for value in range(low, high + 1):
        try:
            fqdns.append(_to_fqdn(f"{value}.{base}"))
        except ValueError:
            continue
    return fqdns


def generate_ipv6_dns_root_domain(ip_prefix) -> list[str]:
    """Reverse DNS zones under ip6.arpa covering an IPv6 prefix."""
    network = _as_network(ip_prefix)
    mask_bits = network.prefixlen
    nibbles = network.network_address.exploded.replace(":", "")
    constant_parts = list(reversed(nibbles[: mask_bits // _NIBBLE_LEN]))

    def make_domain(*variable: str) -> str:
        prefix = ".".join([*variable, *constant_parts])
        return _to_fqdn(f"{prefix}.ip6.arpa")

    if mask_bits % _NIBBLE_LEN == 0:
        try:
            return [make_domain()]
        except ValueError:
            return [""]

    fqdns = []
    for value in range(1 << (mask_bits % _NIBBLE_LEN)):
        try:
            fqdns.append(make_domain(f"{value:x}"))
        except ValueError:
            continue
    return fqdns


def generate_magic_dns_root_domains(ip_prefixes: Iterable) -> list[str]:
    """Reverse DNS zones the embedded resolver should answer for the given prefixes."""
    fqdns: list[str] = []
    for prefix in ip_prefixes:
        network = _as_network(prefix)
        bit_length = network.max_prefixlen
        if bit_length == IPV4_ADDRESS_LENGTH:
            fqdns.extend(generate_ipv4_dns_root_domain(network))
        elif bit_length == IPV6_ADDRESS_LENGTH:
            fqdns.extend(generate_ipv6_dns_root_domain(network))
        else:
            raise ValueError(
                f"unsupported IP version with address length {bit_length}"
            )
    return fqdns


def add_nextdns_metadata(resolvers: Iterable[Resolver], machine: Machine) -> None:
    """Append device metadata to every NextDNS DoH resolver address, in place."""
    for resolver in resolvers:
        if not resolver.addr.startswith(NEXTDNS_DOH_PREFIX):
            continue
        attrs = {
            "device_name": machine.hostname,
            "device_model": machine.host_info.os,
        }
        if machine.ip_addresses:
            attrs["device_ip"] = str(machine.ip_addresses[0])
        query = urlencode(sorted(attrs.items()))
        resolver.addr = f"{resolver.addr}?{query}"


def get_map_response_dns_config(
    dns_config: Optional[DNSConfig],
    base_domain: str,
    machine: Machine,
    peers: Iterable[Machine],
) -> Optional[DNSConfig]:
    """DNS configuration to send to ``machine``; with MagicDNS it gets user routes."""
    if dns_config is None:
        return None

    if dns_config.proxied:
        result = dns_config.clone()
        result.domains.append(f"{machine.user.name}.{base_domain}")
        user_names = {machine.user.name}
        user_names.update(peer.user.name for peer in peers)
        for name in user_names:
            result.routes[f"{name}.{base_domain}"] = None
    else:
        result = dns_config

    add_nextdns_metadata(result.resolvers, machine)
    return result
"""Embedded DERP region description, HTTP helper responses and a STUN server."""

from __future__ import annotations

import ipaddress
import logging
import re
import socket
import struct
import time
import zlib
from typing import Callable, Iterable, Optional, Union
from urllib.parse import urlsplit

from .derp import DERPMap, DERPNode, DERPRegion

logger = logging.getLogger(__name__)

FAST_START_HEADER = "Derp-Fast-Start"

STUN_HEADER_LENGTH = 20
STUN_MAGIC_COOKIE = b"\x21\x12\xa4\x42"
STUN_BINDING_REQUEST = b"\x00\x01"
STUN_BINDING_SUCCESS = 0x0101
STUN_ATTR_XOR_MAPPED_ADDRESS = 0x0020
STUN_ATTR_FINGERPRINT = 0x8028
STUN_FINGERPRINT_XOR = 0x5354554E
STUN_TXID_LENGTH = 12

_MAX_DATAGRAM = 64 << 10
_INTEGER = re.compile(r"[+-]?\d+")


def _split_host_port(hostport: str) -> tuple[str, str]:
    """Split "host:port" or "[v6]:port"; raise ValueError when no port is present."""
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise ValueError(f"address {hostport}: missing ']' in address")
        host = hostport[1:end]
        rest = hostport[end + 1:]
        if not rest.startswith(":"):
            raise ValueError(f"address {hostport}: missing port in address")
        port = rest[1:]
    else:
        host, sep, port = hostport.rpartition(":")
        if not sep:
            raise ValueError(f"address {hostport}: missing port in address")
        if ":" in host:
            raise ValueError(f"address {hostport}: too many colons in address")
    if "[" in port or "]" in port:
        raise ValueError(f"address {hostport}: unexpected bracket in port")
    return host, port


def _atoi(text: str) -> int:
    if not _INTEGER.fullmatch(text):
        raise ValueError(f"invalid port {text!r}")
    return int(text)


def generate_region_local_derp(
    server_url: str,
    stun_addr: str,
    region_id: int,
    region_code: str,
    region_name: str,
) -> DERPRegion:
    """Describe the embedded DERP server as a single-node region."""
    parsed = urlsplit(server_url)
    try:
        host, port_text = _split_host_port(parsed.netloc)
    except ValueError:
        host = parsed.netloc
        port = 443 if parsed.scheme == "https" else 80
    else:
        port = _atoi(port_text)

    _, stun_port_text = _split_host_port(stun_addr)
    stun_port = _atoi(stun_port_text)

    region = DERPRegion(
        region_id=region_id,
        region_code=region_code,
        region_name=region_name,
        avoid=False,
        nodes=[
            DERPNode(
                name=str(region_id),
                region_id=region_id,
                host_name=host,
                derp_port=port,
                stun_port=stun_port,
            )
        ],
    )
    logger.info("DERP region: %r", region)
    return region


def derp_probe_response(method: str) -> tuple[int, dict[str, str], bytes]:
    """Status, headers and body answering a latency probe made with ``method``."""
    if method in ("HEAD", "GET"):
        return 200, {"Access-Control-Allow-Origin": "*"}, b""
    return 405, {}, b"bogus probe method"


def _system_resolve(hostname: str) -> list[str]:
    infos = socket.getaddrinfo(hostname, None)
    return list(dict.fromkeys(info[4][0] for info in infos))


def bootstrap_dns_entries(
    derp_map: DERPMap,
    resolve: Optional[Callable[[str], Iterable[str]]] = None,
) -> dict[str, list[str]]:
    """Resolve every DERP node host name; hosts that fail to resolve are left out."""
    lookup = resolve or _system_resolve
    entries: dict[str, list[str]] = {}
    for region in derp_map.regions.values():
        for node in region.nodes:
            try:
                addresses = [str(address) for address in lookup(node.host_name)]
            except (OSError, ValueError) as err:
                logger.debug("bootstrap DNS lookup failed %r: %s", node.host_name, err)
                continue
            entries[node.host_name] = addresses
    return entries


def is_stun_packet(packet: bytes) -> bool:
    """Whether ``packet`` carries a STUN header with the magic cookie."""
    return (
        len(packet) >= STUN_HEADER_LENGTH
        and packet[0] & 0b11000000 == 0
        and bytes(packet[4:8]) == STUN_MAGIC_COOKIE
    )


def parse_binding_request(packet: bytes) -> bytes:
    """Return the transaction id of a well-formed STUN binding request."""
    packet = bytes(packet)
    if not is_stun_packet(packet):
        raise ValueError("not a STUN packet")
    if packet[:2] != STUN_BINDING_REQUEST:
        raise ValueError("STUN packet is not a binding request")
    transaction_id = packet[8:STUN_HEADER_LENGTH]

    body = packet[STUN_HEADER_LENGTH:]
    offset = 0
    last_attr: Optional[int] = None
    fingerprint: Optional[int] = None
    fingerprint_offset = 0
    while offset < len(body):
        if len(body) - offset < 4:
            raise ValueError("truncated STUN attribute header")
        attr_type, attr_len = struct.unpack_from("!HH", body, offset)
        start = offset + 4
        padded_end = start + ((attr_len + 3) & ~3)
        if padded_end > len(body):
            raise ValueError("truncated STUN attribute")
        if attr_type == STUN_ATTR_FINGERPRINT and attr_len == 4:
            fingerprint = struct.unpack_from("!I", body, start)[0]
            fingerprint_offset = STUN_HEADER_LENGTH + offset
        last_attr = attr_type
        offset = padded_end

    if fingerprint is not None:
        if last_attr != STUN_ATTR_FINGERPRINT:
            raise ValueError("STUN fingerprint is not the last attribute")
        expected = zlib.crc32(packet[:fingerprint_offset]) ^ STUN_FINGERPRINT_XOR
        if fingerprint != expected:
            raise ValueError("STUN fingerprint mismatch")

    return transaction_id


def stun_binding_response(
    transaction_id: bytes,
    host: Union[str, ipaddress.IPv4Address, ipaddress.IPv6Address],
    port: int,
) -> bytes:
    """Binding success response carrying the client's address as XOR-MAPPED-ADDRESS."""
    transaction_id = bytes(transaction_id)
    if len(transaction_id) != STUN_TXID_LENGTH:
        raise ValueError("STUN transaction id must be 12 bytes")
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"port {port} out of range")

    address = ipaddress.ip_address(host)
    if address.version == 4:
        family, key = 1, STUN_MAGIC_COOKIE
    else:
        family, key = 2, STUN_MAGIC_COOKIE + transaction_id
    xored = bytes(a ^ b for a, b in zip(address.packed, key))

    value = struct.pack("!BBH", 0, family, port ^ 0x2112) + xored
    attribute = struct.pack("!HH", STUN_ATTR_XOR_MAPPED_ADDRESS, len(value)) + value
    header = (
        struct.pack("!HH", STUN_BINDING_SUCCESS, len(attribute))
        + STUN_MAGIC_COOKIE
        + transaction_id
    )
    return header + attribute


def _stun_reply(packet: bytes, peer) -> Optional[bytes]:
    if not is_stun_packet(packet):
        logger.debug("UDP packet is not STUN")
        return None
    try:
        transaction_id = parse_binding_request(packet)
    except ValueError as err:
        logger.debug("STUN parse error: %s", err)
        return None
    host = str(peer[0]).split("%", 1)[0]
    return stun_binding_response(transaction_id, host, peer[1])


def serve_stun(address: str) -> None:
    """Answer STUN binding requests on the UDP ``address`` until the socket closes."""
    host, port_text = _split_host_port(address)
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    with socket.socket(family, socket.SOCK_DGRAM) as sock:
        sock.bind((host, _atoi(port_text)))
        logger.info("STUN server started at %s", sock.getsockname())
        while True:
            try:
                packet, peer = sock.recvfrom(_MAX_DATAGRAM)
            except OSError as err:
                if sock.fileno() == -1:
                    return
                logger.error("STUN ReadFrom: %s", err)
                time.sleep(1)
                continue
            logger.debug("STUN request from %s", peer)
            reply = _stun_reply(packet, peer)
            if reply is None:
                continue
            try:
                sock.sendto(reply, peer)
            except OSError as err:
                logger.debug("Issue writing to UDP: %s", err)
"""Coordination-server core for a mesh VPN: SQLite storage of users, machines, keys and routes, MagicDNS, DERP maps and STUN."""

__version__ = "0.1.0"
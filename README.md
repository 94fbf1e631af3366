# meshcontrol

The core of a coordination server for a mesh VPN. It keeps track of the
machines in a tailnet and of the users who own them, and stores this state
in SQLite.

## What it covers

- **Users, machines and keys** (`meshcontrol.database.Database`). You can
  create, rename and destroy users. Machines are registered and get one
  address from each configured IP prefix. Machines can be renamed, tagged,
  refreshed, expired and deleted. Pre-auth keys can be reusable, ephemeral
  or tagged. API keys are stored as bcrypt hashes.
- **Subnet routes** (`meshcontrol.routes.RouteStore`, included in
  `Database`). Routes that machines advertise can be enabled, disabled or
  deleted. `handle_primary_subnet_failover()` moves the primary role for a
  subnet away from an offline machine to an online one that offers the same
  subnet. IPv4 and IPv6 exit routes are always enabled, disabled and
  deleted together.
- **Node records** (`meshcontrol.tailnode`). `tail_node()` and `tail_nodes()`
  describe stored machines as the records sent to peers: addresses, allowed
  IPs, primary routes, DERP hint and MagicDNS name.
- **MagicDNS** (`meshcontrol.dns`). `generate_magic_dns_root_domains()`
  builds the reverse-DNS root domains for the tailnet prefixes.
  `get_map_response_dns_config()` builds the DNS configuration for one
  machine. It adds a route for each user and attaches NextDNS device
  metadata.
- **DERP maps** (`meshcontrol.derp`). Loads maps from YAML files with
  `load_derp_map_from_path()` or from JSON URLs with
  `load_derp_map_from_url()`, and merges them. `get_derp_map()` does both
  steps at once.
- **Embedded DERP region and STUN** (`meshcontrol.derp_server`).
  - `generate_region_local_derp()` describes the local server as a region
    with a single node.
  - `derp_probe_response()` and `bootstrap_dns_entries()` produce the
    answers for the probe and bootstrap-DNS endpoints.
  - `serve_stun()` answers STUN binding requests over UDP.

## Example

```python
import ipaddress

from meshcontrol.database import Database
from meshcontrol.dns import generate_magic_dns_root_domains
from meshcontrol.derp import load_derp_map_from_path, merge_derp_maps

# Reverse-DNS roots for a tailnet prefix
domains = generate_magic_dns_root_domains([ipaddress.ip_network("100.64.0.0/10")])
assert "64.100.in-addr.arpa." in domains

# Open a database; each prefix provides one address per machine
db = Database(
    path="meshcontrol.db",
    ip_prefixes=[ipaddress.ip_network("100.64.0.0/10")],
    base_domain="example.com",
    strip_email_domain=True,
    on_state_change=lambda: None,
    on_policy_change=lambda: None,
)

user = db.create_user("alice")
pak = db.create_pre_auth_key(user.name, False, False, None, ["tag:server"])

issued, record = db.create_api_key(None)
assert db.validate_api_key(issued)

db.close()

# Combine DERP maps; where a region id appears twice, the later map wins
derp_map = merge_derp_maps([load_derp_map_from_path("derp.yaml")])
```

The callbacks `on_state_change` and `on_policy_change` are called whenever
stored state or tags change. Use them to push updates to clients.

## Errors

Failures are raised as exceptions. `meshcontrol.store.StoreError` is the
base class for storage errors. Some of the others:

- `UserNotFoundError`, `UserExistsError` and `UserStillHasNodesError` come
  from `meshcontrol.users`.
- `PreAuthKeyNotFoundError`, `PreAuthKeyExpiredError` and
  `SingleUseAuthKeyUsedError` come from `meshcontrol.preauthkeys`.
- `MachineNotFoundError` comes from `meshcontrol.machines`.
- `CouldNotAllocateIPError` is raised when a prefix has no free address
  left.
- `RouteNotAvailableError` is raised when you enable a route that the
  machine does not advertise.
- `InvalidNameError` is raised for names that break the DNS label rules.

## What it does not do

This package is a library only. It has:

- no command-line program;
- no HTTP or gRPC server;
- no DERP relay protocol. Only the probe and bootstrap-DNS answers and the
  STUN server are provided.

It does not evaluate ACL policies. `get_valid_peers()` returns every peer
of a machine that has not expired, and tag ownership is not checked when
node records are built.

## Tests

The test suite uses pytest. Install it with the `test` extra and run
`pytest`.
"""Subnet and exit routes advertised by machines, and primary-route failover."""

from __future__ import annotations

import ipaddress
import logging
from typing import Iterable, Optional, Union

from .machines import MachineStore
from .models import EXIT_ROUTE_V4, EXIT_ROUTE_V6, Machine, Route
from .store import RecordNotFoundError, StoreError, _as_network, _now, _to_db

logger = logging.getLogger(__name__)

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class RouteNotAvailableError(StoreError):
    """The route is not advertised by the machine."""


class RouteStore(MachineStore):
    """Store with the operations on routes."""

    # -- helpers ------------------------------------------------------------

    def _select_routes(self, where: str = "", params: Iterable = ()) -> list[Route]:
        sql = "SELECT * FROM routes"
        if where:
            sql += f" WHERE {where}"
        sql += " ORDER BY id"
        return [self._route_from_row(row) for row in self._query(sql, params)]

    def _save_route(self, route: Route) -> None:
        with self._write() as conn:
            conn.execute(
                "UPDATE routes SET machine_id = ?, prefix = ?, advertised = ?, "
                "enabled = ?, is_primary = ?, updated_at = ? WHERE id = ?",
                (
                    route.machine_id,
                    str(route.prefix),
                    int(route.advertised),
                    int(route.enabled),
                    int(route.is_primary),
                    _to_db(_now()),
                    route.id,
                ),
            )

    def _create_route(self, route: Route) -> None:
        now = _to_db(_now())
        with self._write() as conn:
            cursor = conn.execute(
                "INSERT INTO routes (machine_id, prefix, advertised, enabled, "
                "is_primary, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    route.machine_id,
                    str(route.prefix),
                    int(route.advertised),
                    int(route.enabled),
                    int(route.is_primary),
                    now,
                    now,
                ),
            )
            route.id = cursor.lastrowid

    def _delete_routes(self, routes: Iterable[Route]) -> None:
        ids = [(route.id,) for route in routes]
        if not ids:
            return
        with self._write() as conn:
            conn.executemany("DELETE FROM routes WHERE id = ?", ids)

    # -- queries ------------------------------------------------------------

    def get_routes(self) -> list[Route]:
        return self._select_routes()

    def get_machine_advertised_routes(self, machine: Machine) -> list[Route]:
        return self._select_routes(
            "machine_id = ? AND advertised = 1", (machine.id,)
        )

    def get_machine_routes(self, machine: Machine) -> list[Route]:
        return self._select_routes("machine_id = ?", (machine.id,))

    def get_route(self, route_id: int) -> Route:
        routes = self._select_routes("id = ?", (route_id,))
        if not routes:
            raise RecordNotFoundError(f"route {route_id} not found")
        return routes[0]

    def get_machine_primary_routes(self, machine: Machine) -> list[Route]:
        """Enabled routes of ``machine`` marked primary; exit routes never are."""
        return self._select_routes(
            "machine_id = ? AND advertised = 1 AND enabled = 1 AND is_primary = 1",
            (machine.id,),
        )

    def get_primary_route(self, prefix) -> Route:
        """The primary route for ``prefix``; RecordNotFoundError if there is none."""
        network = _as_network(prefix)
        routes = self._select_routes(
            "prefix = ? AND advertised = 1 AND enabled = 1 AND is_primary = 1",
            (str(network),),
        )
        if not routes:
            raise RecordNotFoundError(f"no primary route for {network}")
        return routes[0]

    def is_unique_prefix(self, route: Route) -> bool:
        """True when no other machine has this prefix advertised and enabled."""
        row = self._query_one(
            "SELECT COUNT(*) AS n FROM routes WHERE prefix = ? AND machine_id != ? "
            "AND advertised = 1 AND enabled = 1",
            (str(route.prefix), route.machine_id),
        )
        return row["n"] == 0

    def get_advertised_routes(self, machine: Machine) -> list[IPNetwork]:
        return [route.prefix for route in self.get_machine_advertised_routes(machine)]

    def get_enabled_routes(self, machine: Machine) -> list[IPNetwork]:
        return [
            route.prefix
            for route in self._select_routes(
                "machine_id = ? AND advertised = 1 AND enabled = 1", (machine.id,)
            )
        ]

    def is_routes_enabled(self, machine: Machine, route_str: str) -> bool:
        try:
            prefix = ipaddress.ip_network(route_str, strict=False)
        except ValueError:
            return False
        try:
            enabled = self.get_enabled_routes(machine)
        except StoreError as err:
            logger.error("Could not get enabled routes: %s", err)
            return False
        return prefix in enabled

    # -- changes ------------------------------------------------------------

    def enable_routes(self, machine: Machine, *args: str) -> None:
        """Enable the given advertised routes of ``machine``, all or none."""
        new_routes = [ipaddress.ip_network(text, strict=False) for text in args]

        advertised = self.get_advertised_routes(machine)
        for prefix in new_routes:
            if prefix not in advertised:
                raise RouteNotAvailableError(
                    f"route ({prefix}) is not available on node {machine.hostname}: "
                    "route is not available on machine"
                )

        for prefix in new_routes:
            found = self._select_routes(
                "machine_id = ? AND prefix = ?", (machine.id, str(prefix))
            )
            if not found:
                raise RecordNotFoundError(f"failed to find route: {prefix}")
            route = found[0]
            route.enabled = True
            if not route.is_exit_route():
                route.is_primary = self.is_unique_prefix(route)
            self._save_route(route)

        self._notify_state_change()

    def enable_route(self, route_id: int) -> None:
        """Enable a route; an exit route enables both the IPv4 and IPv6 exit routes."""
        route = self.get_route(route_id)
        if route.is_exit_route():
            self.enable_routes(route.machine, str(EXIT_ROUTE_V4), str(EXIT_ROUTE_V6))
            return
        self.enable_routes(route.machine, str(route.prefix))

    def disable_route(self, route_id: int) -> None:
        """Disable a route; an exit route disables both exit routes of the machine."""
        route = self.get_route(route_id)
        if not route.is_exit_route():
            route.enabled = False
            route.is_primary = False
            self._save_route(route)
            self.handle_primary_subnet_failover()
            return

        for other in self.get_machine_routes(route.machine):
            if other.is_exit_route():
                other.enabled = False
                other.is_primary = False
                self._save_route(other)
        self.handle_primary_subnet_failover()

    def delete_route(self, route_id: int) -> None:
        """Delete a route; an exit route deletes both exit routes of the machine."""
        route = self.get_route(route_id)
        if not route.is_exit_route():
            self._delete_routes([route])
        else:
            self._delete_routes(
                other
                for other in self.get_machine_routes(route.machine)
                if other.is_exit_route()
            )
        self.handle_primary_subnet_failover()

    def delete_machine_routes(self, machine: Machine) -> None:
        self._delete_routes(self.get_machine_routes(machine))
        self.handle_primary_subnet_failover()

    def process_machine_routes(self, machine: Machine) -> None:
        """Sync stored routes with the prefixes the machine currently advertises."""
        current = self._select_routes("machine_id = ?", (machine.id,))
        advertised: dict[IPNetwork, bool] = {
            _as_network(prefix): False for prefix in machine.host_info.routable_ips
        }

        for route in current:
            if route.prefix in advertised:
                if not route.advertised:
                    route.advertised = True
                    self._save_route(route)
                advertised[route.prefix] = True
            elif route.advertised:
                route.advertised = False
                route.enabled = False
                self._save_route(route)

        for prefix, exists in advertised.items():
            if not exists:
                self._create_route(
                    Route(
                        machine_id=machine.id,
                        prefix=prefix,
                        advertised=True,
                        enabled=False,
                    )
                )

    def handle_primary_subnet_failover(self) -> None:
        """Pick a primary for each enabled subnet and move it off offline machines."""
        try:
            routes = self._select_routes("advertised = 1 AND enabled = 1")
        except StoreError as err:
            logger.error("error getting routes: %s", err)
            routes = []

        changed = False
        for route in routes:
            if route.is_exit_route():
                continue

            if not route.is_primary:
                try:
                    self.get_primary_route(route.prefix)
                    no_primary = False
                except RecordNotFoundError:
                    no_primary = True
                if self.is_unique_prefix(route) or no_primary:
                    logger.info(
                        "Setting primary route %s on %s",
                        route.prefix,
                        route.machine.given_name,
                    )
                    route.is_primary = True
                    self._save_route(route)
                    changed = True
                    continue

            if not route.is_primary:
                continue
            if route.machine.is_online():
                continue

            logger.info(
                "machine %s offline, finding a new primary subnet for %s",
                route.machine.hostname,
                route.prefix,
            )
            candidates = self._select_routes(
                "prefix = ? AND machine_id != ? AND advertised = 1 AND enabled = 1",
                (str(route.prefix), route.machine_id),
            )
            new_primary: Optional[Route] = next(
                (c for c in candidates if c.machine.is_online()), None
            )
            if new_primary is None:
                logger.warning(
                    "no alternative primary route found for %s on %s",
                    route.prefix,
                    route.machine.hostname,
                )
                continue

            logger.info(
                "found new primary route %s: %s -> %s",
                route.prefix,
                route.machine.hostname,
                new_primary.machine.hostname,
            )
            route.is_primary = False
            self._save_route(route)
            new_primary.is_primary = True
            self._save_route(new_primary)
            changed = True

        if changed:
            self._notify_state_change()
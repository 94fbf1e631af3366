"""Machine lookups by user, name and key, and peer listing."""

from __future__ import annotations

import logging
from dataclasses import fields

from .models import Machine, strip_key_prefix
from .store import RecordNotFoundError, _to_db
from .users import UserStore

logger = logging.getLogger(__name__)


class MachineNotFoundError(RecordNotFoundError):
    """No machine matches."""


class MachineStore(UserStore):
    """Store with the read and key-update operations on machines."""

    def list_peers(self, machine: Machine) -> list[Machine]:
        """Every machine with a different node key, ordered by id."""
        logger.debug("Finding direct peers of %s", machine.hostname)
        return self._select_machines("node_key <> ?", (machine.node_key,))

    def get_valid_peers(self, machine: Machine) -> list[Machine]:
        """Peers of ``machine`` that have not expired."""
        return [peer for peer in self.list_peers(machine) if not peer.is_expired()]

    def list_machines(self) -> list[Machine]:
        return self._select_machines()

    def list_machines_by_given_name(self, given_name: str) -> list[Machine]:
        return self._select_machines("given_name = ?", (given_name,))

    def get_machine(self, user: str, name: str) -> Machine:
        """The machine of ``user`` whose host name is ``name``."""
        for machine in self.list_machines_by_user(user):
            if machine.hostname == name:
                return machine
        raise MachineNotFoundError("machine not found")

    def get_machine_by_given_name(self, user: str, given_name: str) -> Machine:
        for machine in self.list_machines_by_user(user):
            if machine.given_name == given_name:
                return machine
        raise MachineNotFoundError("machine not found")

    def _first_machine(self, where: str, params) -> Machine:
        machines = self._select_machines(where, params)
        if not machines:
            raise RecordNotFoundError("record not found")
        return machines[0]

    def get_machine_by_machine_key(self, machine_key: str) -> Machine:
        return self._first_machine("machine_key = ?", (strip_key_prefix(machine_key),))

    def get_machine_by_node_key(self, node_key: str) -> Machine:
        return self._first_machine("node_key = ?", (strip_key_prefix(node_key),))

    def get_machine_by_any_key(
        self, machine_key: str, node_key: str, old_node_key: str
    ) -> Machine:
        """Find a machine by its machine key, its current node key or the old one."""
        return self._first_machine(
            "machine_key = ? OR node_key = ? OR node_key = ?",
            (
                strip_key_prefix(machine_key),
                strip_key_prefix(node_key),
                strip_key_prefix(old_node_key),
            ),
        )

    def update_machine_from_database(self, machine: Machine) -> None:
        """Overwrite ``machine`` in place with what the database holds for its id."""
        fresh = self.get_machine_by_id(machine.id)
        for field_info in fields(Machine):
            setattr(machine, field_info.name, getattr(fresh, field_info.name))

    def touch_machine(self, machine: Machine) -> None:
        """Store the machine's last-seen and last-update times, skipping unset ones."""
        updates = {}
        if machine.last_seen is not None:
            updates["last_seen"] = _to_db(machine.last_seen)
        if machine.last_successful_update is not None:
            updates["last_successful_update"] = _to_db(machine.last_successful_update)
        if not updates:
            return
        assignments = ", ".join(f"{column} = ?" for column in updates)
        with self._write() as conn:
            conn.execute(
                f"UPDATE machines SET {assignments} WHERE id = ?",
                [*updates.values(), machine.id],
            )

    def machine_set_node_key(self, machine: Machine, node_key: str) -> None:
        machine.node_key = strip_key_prefix(node_key)
        self.save_machine(machine)

    def machine_set_machine_key(self, machine: Machine, machine_key: str) -> None:
        machine.machine_key = strip_key_prefix(machine_key)
        self.save_machine(machine)
"""The full database: machine registration, renaming, expiry and removal."""

from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime, timedelta
from typing import MutableMapping, Optional

from .models import NODE_KEY_PREFIX, Machine, strip_key_prefix
from .preauthkeys import PreAuthKeyStore
from .routes import RouteStore
from .store import (
    LABEL_HOSTNAME_LENGTH,
    RecordNotFoundError,
    StoreError,
    _now,
    _to_db,
    _utc,
    check_for_fqdn_rules,
    normalize_to_fqdn_rules,
)
from .tailnode import _parse_public_key

logger = logging.getLogger(__name__)

MACHINE_GIVEN_NAME_HASH_LENGTH = 8
MACHINE_GIVEN_NAME_TRIM_SIZE = 2

_DNS_SAFE_CHARS = string.ascii_lowercase + string.digits


class MachineNotInRegistrationCacheError(RecordNotFoundError):
    """The node key has no pending registration."""


class DifferentRegisteredUserError(StoreError):
    """The machine was previously registered with a different user."""


def _random_dns_safe(length: int) -> str:
    return "".join(secrets.choice(_DNS_SAFE_CHARS) for _ in range(length))


class Database(RouteStore, PreAuthKeyStore):
    """Every storage operation of the control server."""

    def set_tags(self, machine: Machine, tags) -> None:
        """Replace the forced tags of ``machine``, dropping duplicates."""
        machine.forced_tags = list(dict.fromkeys(tags))
        self._notify_policy_change()
        self._notify_state_change()
        try:
            self.save_machine(machine)
        except StoreError as err:
            raise StoreError(
                f"failed to update tags for machine in the database: {err}"
            ) from err

    def expire_machine(self, machine: Machine) -> None:
        machine.expiry = _now()
        self._notify_state_change()
        try:
            self.save_machine(machine)
        except StoreError as err:
            raise StoreError(f"failed to expire machine in the database: {err}") from err

    def rename_machine(self, machine: Machine, new_name: str) -> None:
        """Give ``machine`` a new DNS name; the name must be a valid label."""
        check_for_fqdn_rules(new_name)
        machine.given_name = new_name
        self._notify_state_change()
        try:
            self.save_machine(machine)
        except StoreError as err:
            raise StoreError(f"failed to rename machine in the database: {err}") from err

    def refresh_machine(self, machine: Machine, expiry: datetime) -> None:
        machine.last_successful_update = _now()
        machine.expiry = expiry
        self._notify_state_change()
        try:
            self.save_machine(machine)
        except StoreError as err:
            raise StoreError(
                "failed to refresh machine (update expiration) in the database: "
                f"{err}"
            ) from err

    def delete_machine(self, machine: Machine) -> None:
        """Remove the machine's routes and mark the machine deleted."""
        self.delete_machine_routes(machine)
        with self._write() as conn:
            conn.execute(
                "UPDATE machines SET deleted_at = ? WHERE id = ?",
                (_to_db(_now()), machine.id),
            )

    def hard_delete_machine(self, machine: Machine) -> None:
        """Remove the machine's routes and the machine row itself."""
        self.delete_machine_routes(machine)
        with self._write() as conn:
            conn.execute("DELETE FROM machines WHERE id = ?", (machine.id,))

    def is_outdated(self, machine: Machine, last_change: datetime) -> bool:
        """True if the machine's last update came before ``last_change``."""
        try:
            self.update_machine_from_database(machine)
        except StoreError:
            return True
        last_update = machine.last_successful_update or machine.created_at
        if last_update is None:
            return True
        logger.debug("Checking if %s is missing updates", machine.hostname)
        return _utc(last_update) < _utc(last_change)

    def register_machine_from_auth_callback(
        self,
        cache: MutableMapping,
        node_key: str,
        user_name: str,
        machine_expiry: Optional[datetime],
        registration_method: str,
    ) -> Machine:
        """Register the machine waiting in ``cache`` under ``node_key`` for a user."""
        _parse_public_key(node_key, NODE_KEY_PREFIX, "node")
        logger.debug(
            "Registering machine %s for %s via %s",
            node_key,
            user_name,
            registration_method,
        )

        cache_key = strip_key_prefix(node_key)
        if cache_key not in cache:
            raise MachineNotInRegistrationCacheError(
                "machine not found in registration cache"
            )
        registration = cache[cache_key]
        if not isinstance(registration, Machine):
            raise TypeError("failed to convert machine interface")

        try:
            user = self.get_user(user_name)
        except StoreError as err:
            raise StoreError(
                f"failed to find user in register machine from auth callback, {err}"
            ) from err

        if registration.id != 0 and registration.user_id != user.id:
            raise DifferentRegisteredUserError(
                "machine was previously registered with a different user"
            )

        registration.user_id = user.id
        registration.user = user
        registration.register_method = registration_method
        if machine_expiry is not None:
            registration.expiry = machine_expiry

        machine = self.register_machine(registration)
        cache.pop(node_key, None)
        return machine

    def register_machine(self, machine: Machine) -> Machine:
        """Save a machine, allocating addresses first if it has none."""
        logger.debug("Registering machine %s", machine.hostname)
        if machine.ip_addresses:
            try:
                return self.save_machine(machine)
            except StoreError as err:
                raise StoreError(
                    f"failed register existing machine in the database: {err}"
                ) from err

        with self._ip_allocation_lock:
            try:
                machine.ip_addresses = self.get_available_ips()
            except StoreError as err:
                logger.error(
                    "Could not find IP for the new machine %s: %s", machine.hostname, err
                )
                raise
            try:
                self.save_machine(machine)
            except StoreError as err:
                raise StoreError(
                    f"failed register(save) machine in the database: {err}"
                ) from err
        return machine

    def _generate_given_name(self, supplied_name: str, random_suffix: bool) -> str:
        name = normalize_to_fqdn_rules(supplied_name, self.strip_email_domain)
        if random_suffix:
            trimmed_length = (
                LABEL_HOSTNAME_LENGTH
                - MACHINE_GIVEN_NAME_HASH_LENGTH
                - MACHINE_GIVEN_NAME_TRIM_SIZE
            )
            name = name[:trimmed_length]
            name += "-" + _random_dns_safe(MACHINE_GIVEN_NAME_HASH_LENGTH)
        return name

    def generate_given_name(self, machine_key: str, supplied_name: str) -> str:
        """A DNS name for the machine, suffixed when another machine holds it."""
        given_name = self._generate_given_name(supplied_name, False)
        for machine in self.list_machines_by_given_name(given_name):
            if machine.machine_key != machine_key and machine.given_name == given_name:
                given_name = self._generate_given_name(supplied_name, True)
        return given_name

    def expire_ephemeral_machines(self, inactivity_threshold: timedelta) -> None:
        """Delete ephemeral machines not seen for longer than the threshold."""
        try:
            users = self.list_users()
        except StoreError as err:
            logger.error("Error listing users: %s", err)
            return

        for user in users:
            try:
                machines = self.list_machines_by_user(user.name)
            except StoreError as err:
                logger.error("Error listing machines in user %s: %s", user.name, err)
                return

            expired_found = False
            for machine in machines:
                if (
                    machine.is_ephemeral()
                    and machine.last_seen is not None
                    and _now() > _utc(machine.last_seen) + inactivity_threshold
                ):
                    expired_found = True
                    logger.info(
                        "Ephemeral client %s removed from database", machine.hostname
                    )
                    try:
                        self.hard_delete_machine(machine)
                    except StoreError as err:
                        logger.error(
                            "Cannot delete ephemeral machine %s: %s",
                            machine.hostname,
                            err,
                        )

            if expired_found:
                self._notify_state_change()

    def expire_expired_machines(self, last_change: datetime) -> None:
        """Mark machines whose expiry passed since ``last_change`` as expired now."""
        try:
            users = self.list_users()
        except StoreError as err:
            logger.error("Error listing users: %s", err)
            return

        for user in users:
            try:
                machines = self.list_machines_by_user(user.name)
            except StoreError as err:
                logger.error("Error listing machines in user %s: %s", user.name, err)
                return

            expired_found = False
            for machine in machines:
                if machine.is_expired() and _utc(machine.expiry) > _utc(last_change):
                    expired_found = True
                    try:
                        self.expire_machine(machine)
                    except StoreError as err:
                        logger.error("Cannot expire machine %s: %s", machine.hostname, err)
                    else:
                        logger.info("Machine %s successfully expired", machine.hostname)

            if expired_found:
                self._notify_state_change()
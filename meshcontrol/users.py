"""User records: creation, renaming, removal and the profiles sent to clients."""

from __future__ import annotations

import logging
from typing import Iterable

from .models import Machine, User
from .store import (
    RecordNotFoundError,
    Store,
    StoreError,
    _now,
    _to_db,
    check_for_fqdn_rules,
)

logger = logging.getLogger(__name__)


class UserExistsError(StoreError):
    """A user with the requested name already exists."""


class UserNotFoundError(RecordNotFoundError):
    """No user has the requested name."""


class UserStillHasNodesError(StoreError):
    """The user still owns machines and cannot be removed."""


class UserStore(Store):
    """Store with the operations on users."""

    def create_user(self, name: str) -> User:
        """Create a user; raise UserExistsError if the name is taken."""
        check_for_fqdn_rules(name)
        if self._query_one("SELECT id FROM users WHERE name = ?", (name,)) is not None:
            raise UserExistsError(f"user already exists: {name}")
        now = _now()
        try:
            with self._write() as conn:
                cursor = conn.execute(
                    "INSERT INTO users (name, created_at, updated_at) VALUES (?, ?, ?)",
                    (name, _to_db(now), _to_db(now)),
                )
                user_id = cursor.lastrowid
        except StoreError as err:
            logger.error("Could not create row for user %s: %s", name, err)
            raise
        return User(id=user_id, name=name, created_at=now)

    def destroy_user(self, name: str) -> None:
        """Remove a user and its pre-auth keys; it must own no machines."""
        try:
            user = self.get_user(name)
        except StoreError as err:
            raise UserNotFoundError(f"user not found: {name}") from err

        if self.list_machines_by_user(name):
            raise UserStillHasNodesError(f"user not empty: node(s) found for {name}")

        with self._write() as conn:
            conn.execute(
                "DELETE FROM pre_auth_key_acl_tags WHERE pre_auth_key_id IN "
                "(SELECT id FROM pre_auth_keys WHERE user_id = ?)",
                (user.id,),
            )
            conn.execute("DELETE FROM pre_auth_keys WHERE user_id = ?", (user.id,))
            conn.execute("DELETE FROM users WHERE id = ?", (user.id,))

    def rename_user(self, old_name: str, new_name: str) -> None:
        """Rename a user; the new name must be valid and free."""
        old_user = self.get_user(old_name)
        check_for_fqdn_rules(new_name)
        try:
            self.get_user(new_name)
        except UserNotFoundError:
            pass
        else:
            raise UserExistsError(f"user already exists: {new_name}")

        with self._write() as conn:
            conn.execute(
                "UPDATE users SET name = ?, updated_at = ? WHERE id = ?",
                (new_name, _to_db(_now()), old_user.id),
            )

    def get_user(self, name: str) -> User:
        row = self._query_one("SELECT * FROM users WHERE name = ?", (name,))
        if row is None:
            raise UserNotFoundError(f"user not found: {name}")
        return self._user_from_row(row)

    def list_users(self) -> list[User]:
        return [
            self._user_from_row(row)
            for row in self._query("SELECT * FROM users ORDER BY id")
        ]

    def list_machines_by_user(self, name: str) -> list[Machine]:
        """All machines owned by the named user, ordered by id."""
        check_for_fqdn_rules(name)
        user = self.get_user(name)
        return self._select_machines("user_id = ?", (user.id,))

    def set_machine_user(self, machine: Machine, username: str) -> None:
        """Move ``machine`` to the named user and save it."""
        check_for_fqdn_rules(username)
        user = self.get_user(username)
        machine.user = user
        machine.user_id = user.id
        self.save_machine(machine)

    def get_map_response_user_profiles(
        self, machine: Machine, peers: Iterable[Machine]
    ) -> list[dict]:
        """One profile per distinct user among ``machine`` and its peers."""
        users: dict[str, User] = {machine.user.name: machine.user}
        for peer in peers:
            users[peer.user.name] = peer.user

        profiles = []
        for user in users.values():
            display_name = user.name
            if self.base_domain:
                display_name = f"{user.name}@{self.base_domain}"
            profiles.append(
                {
                    "id": user.id,
                    "login_name": user.name,
                    "display_name": display_name,
                }
            )
        return profiles
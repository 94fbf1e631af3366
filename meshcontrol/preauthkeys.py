"""Pre-authentication keys that let machines join without interactive login."""

from __future__ import annotations

import secrets
from datetime import datetime
from typing import Iterable, Optional

from .models import PreAuthKey
from .store import StoreError, _now, _to_db, _utc
from .users import UserStore

_KEY_SIZE = 24
_TAG_PREFIX = "tag:"


class PreAuthKeyNotFoundError(StoreError, LookupError):
    """No pre-auth key matches."""


class PreAuthKeyExpiredError(StoreError):
    """The pre-auth key has expired."""


class SingleUseAuthKeyUsedError(StoreError):
    """A single-use pre-auth key has already been used."""


class UserMismatchError(StoreError):
    """The pre-auth key belongs to a different user."""


class PreAuthKeyACLTagInvalidError(StoreError, ValueError):
    """An ACL tag on a pre-auth key does not begin with 'tag:'."""


class PreAuthKeyStore(UserStore):
    """Store with the operations on pre-auth keys."""

    def create_pre_auth_key(
        self,
        user_name: str,
        reusable: bool = False,
        ephemeral: bool = False,
        expiration: Optional[datetime] = None,
        acl_tags: Optional[Iterable[str]] = None,
    ) -> PreAuthKey:
        """Create a key for the named user, with its tags de-duplicated."""
        user = self.get_user(user_name)
        tags = list(acl_tags or [])
        for tag in tags:
            if not tag.startswith(_TAG_PREFIX):
                raise PreAuthKeyACLTagInvalidError(
                    f"AuthKey tag is invalid: '{tag}' did not begin with 'tag:'"
                )
        unique_tags = list(dict.fromkeys(tags))

        now = _now()
        key_str = secrets.token_hex(_KEY_SIZE)
        try:
            with self._write() as conn:
                cursor = conn.execute(
                    "INSERT INTO pre_auth_keys "
                    "(key, user_id, reusable, ephemeral, used, created_at, expiration) "
                    "VALUES (?, ?, ?, ?, 0, ?, ?)",
                    (
                        key_str,
                        user.id,
                        int(reusable),
                        int(ephemeral),
                        _to_db(now),
                        _to_db(expiration),
                    ),
                )
                key_id = cursor.lastrowid
                conn.executemany(
                    "INSERT INTO pre_auth_key_acl_tags (pre_auth_key_id, tag) VALUES (?, ?)",
                    [(key_id, tag) for tag in unique_tags],
                )
        except StoreError as err:
            raise StoreError(f"failed to create key in the database: {err}") from err

        return PreAuthKey(
            id=key_id,
            key=key_str,
            user_id=user.id,
            user=user,
            reusable=reusable,
            ephemeral=ephemeral,
            used=False,
            acl_tags=unique_tags,
            created_at=now,
            expiration=expiration,
        )

    def list_pre_auth_keys(self, user_name: str) -> list[PreAuthKey]:
        user = self.get_user(user_name)
        return [
            self._pre_auth_key_from_row(row)
            for row in self._query(
                "SELECT * FROM pre_auth_keys WHERE user_id = ? ORDER BY id", (user.id,)
            )
        ]

    def get_pre_auth_key(self, user: str, key: str) -> PreAuthKey:
        """A usable key that must belong to the named user."""
        pak = self.validate_pre_auth_key(key)
        if pak.user.name != user:
            raise UserMismatchError("user mismatch")
        return pak

    def destroy_pre_auth_key(self, pak: PreAuthKey) -> None:
        with self._write() as conn:
            conn.execute(
                "DELETE FROM pre_auth_key_acl_tags WHERE pre_auth_key_id = ?", (pak.id,)
            )
            conn.execute("DELETE FROM pre_auth_keys WHERE id = ?", (pak.id,))

    def expire_pre_auth_key(self, pak: PreAuthKey) -> None:
        now = _now()
        with self._write() as conn:
            conn.execute(
                "UPDATE pre_auth_keys SET expiration = ? WHERE id = ?",
                (_to_db(now), pak.id),
            )
        pak.expiration = now

    def use_pre_auth_key(self, pak: PreAuthKey) -> None:
        pak.used = True
        try:
            with self._write() as conn:
                conn.execute("UPDATE pre_auth_keys SET used = 1 WHERE id = ?", (pak.id,))
        except StoreError as err:
            raise StoreError(
                f"failed to update key used status in the database: {err}"
            ) from err

    def validate_pre_auth_key(self, key: str) -> PreAuthKey:
        """Return the key if it can be used to register a machine, otherwise raise."""
        row = self._query_one(
            "SELECT * FROM pre_auth_keys WHERE key = ? ORDER BY id LIMIT 1", (key,)
        )
        if row is None:
            raise PreAuthKeyNotFoundError("AuthKey not found")
        pak = self._pre_auth_key_from_row(row)

        if pak.expiration is not None and _utc(pak.expiration) < _now():
            raise PreAuthKeyExpiredError("AuthKey expired")

        if pak.reusable or pak.ephemeral:
            return pak

        if self._select_machines("auth_key_id = ?", (pak.id,)) or pak.used:
            raise SingleUseAuthKeyUsedError("AuthKey has already been used")

        return pak
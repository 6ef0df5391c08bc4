"""Versioned room membership.

A MembershipSet maps usernames to public-key records. Every mutation bumps
the version number, and every room key is derived for exactly one version,
so "key updated" and "message received" can be matched on the transport.
"""

from __future__ import annotations

import logging
from typing import Iterator, Mapping

from .crypto import RoomKey, compute_membership_hash, derive_room_key, load_public_key

logger = logging.getLogger(__name__)


class MembershipError(ValueError):
    """Raised when a membership change would break username/key uniqueness."""


class MembershipSet:
    """Explicit, versioned set of member public keys for one room."""

    def __init__(self, room_code: str, members: Mapping[str, str] | None = None, version: int = 0):
        self.room_code = room_code
        self.version = version
        self._members: dict[str, str] = {}
        for username, public_key in (members or {}).items():
            self._insert(username, public_key)

    def _insert(self, username: str, public_key: str) -> None:
        load_public_key(public_key)
        for other, key in self._members.items():
            if key == public_key and other != username:
                raise MembershipError(f"Public key already registered to {other}")
        self._members[username] = public_key

    def add(self, username: str, public_key: str) -> bool:
        """Add a member. Returns False if already present with the same key."""
        existing = self._members.get(username)
        if existing == public_key:
            return False
        if existing is not None:
            raise MembershipError(f"{username} is already a member with a different key")

        self._insert(username, public_key)
        self.version += 1
        return True

    def remove(self, username: str) -> str | None:
        """Remove a member. Returns the removed key, or None if absent."""
        public_key = self._members.pop(username, None)
        if public_key is not None:
            self.version += 1
        return public_key

    def replace(self, members: Mapping[str, str], version: int) -> bool:
        """
        Adopt an observed membership snapshot.

        Snapshots older than the current version are ignored. A snapshot at
        the current version is adopted only if it differs from local state,
        since the relay is authoritative for membership.

        Returns:
            True if the snapshot was adopted
        """
        if version < self.version:
            logger.debug(f"Ignoring membership v{version} for {self.room_code}, have v{self.version}")
            return False
        if version == self.version:
            if dict(members) == self._members:
                return False
            logger.warning(f"Membership v{version} for {self.room_code} disagrees with local state; adopting snapshot")

        snapshot = MembershipSet(self.room_code, members, version)
        self._members = snapshot._members
        self.version = version
        return True

    def public_keys(self) -> list[str]:
        """Member public keys in sorted order."""
        return sorted(self._members.values())

    def as_dict(self) -> dict[str, str]:
        return dict(self._members)

    def key_for(self, username: str) -> str | None:
        return self._members.get(username)

    def has_key(self, public_key: str) -> bool:
        return public_key in self._members.values()

    @property
    def digest(self) -> str:
        """Order-independent hash of the member keys."""
        return compute_membership_hash(self._members.values())

    def derive_key(self) -> RoomKey:
        """Derive the room key for the current membership and version."""
        return derive_room_key(self.room_code, self._members.values(), self.version)

    def __contains__(self, username: object) -> bool:
        return username in self._members

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._members))

    def __len__(self) -> int:
        return len(self._members)

    def __repr__(self) -> str:
        return f"MembershipSet(room_code={self.room_code!r}, version={self.version}, members={sorted(self._members)})"

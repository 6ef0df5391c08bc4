"""Room session state machine.

One RoomSession per participant per room. It owns the membership set and the
current room key, and serializes every operation on them with an
asyncio.Lock so a key update can never interleave with an encrypt/decrypt.

Owner:  NO_ROOM -> OWNED -> ACTIVE -> CLOSED
Joiner: NO_ROOM -> REQUESTING -> ACTIVE | DENIED
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum

from uuid_extensions import uuid7 as make_uuid7

from .crypto import (
    DecryptFailure,
    DecryptFailureReason,
    EncryptedEnvelope,
    KeyPair,
    RoomKey,
    decrypt_message,
    encrypt_message,
)
from .membership import MembershipSet
from .protocol import (
    DEFAULT_ROOM_CODE_LENGTH,
    JoinRequest,
    MembershipUpdate,
    RoomCreated,
    generate_room_code,
    normalize_room_code,
)

logger = logging.getLogger(__name__)


class RoomState(str, Enum):
    NO_ROOM = "no_room"
    OWNED = "owned"
    REQUESTING = "requesting"
    ACTIVE = "active"
    DENIED = "denied"
    CLOSED = "closed"


# States from which a new room can be created or joined
_IDLE_STATES = (RoomState.NO_ROOM, RoomState.DENIED, RoomState.CLOSED)


class RoomStateError(Exception):
    """Raised when an operation is not valid in the session's current state."""


class RoomSession:
    """Encryption state for one participant in one room."""

    def __init__(
        self,
        keypair: KeyPair,
        username: str,
        bind_metadata: bool = False,
        room_code_length: int = DEFAULT_ROOM_CODE_LENGTH,
    ):
        self.keypair = keypair
        self.username = username
        self.bind_metadata = bind_metadata
        self.room_code_length = room_code_length

        self.state = RoomState.NO_ROOM
        self.room_code: str | None = None
        self.room_id: str | None = None
        self.is_owner = False
        self.membership: MembershipSet | None = None

        self._room_key: RoomKey | None = None
        self._pending: dict[str, JoinRequest] = {}
        self._decided: set[str] = set()
        self._outgoing: JoinRequest | None = None
        self._lock = asyncio.Lock()

    # --- Introspection ---

    @property
    def public_key(self) -> str:
        return self.keypair.public_key_record

    @property
    def fingerprint(self) -> str:
        return self.keypair.fingerprint

    @property
    def has_key(self) -> bool:
        return self._room_key is not None

    @property
    def room_key_id(self) -> str | None:
        return self._room_key.key_id if self._room_key else None

    @property
    def membership_version(self) -> int | None:
        return self.membership.version if self.membership else None

    @property
    def pending_requests(self) -> list[JoinRequest]:
        return list(self._pending.values())

    @property
    def outgoing_request(self) -> JoinRequest | None:
        return self._outgoing

    # --- Internal helpers (call with the lock held) ---

    def _require(self, *states: RoomState) -> None:
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise RoomStateError(f"Operation requires state {allowed}, session is {self.state.value}")

    def _require_owner(self) -> None:
        self._require(RoomState.OWNED, RoomState.ACTIVE)
        if not self.is_owner:
            raise RoomStateError("Only the room owner can do this")

    def _rekey(self) -> None:
        assert self.membership is not None
        self._room_key = self.membership.derive_key()
        logger.info(
            f"Room {self.room_code} rekeyed: v{self.membership.version}, "
            f"{len(self.membership)} members, key {self._room_key.key_id}"
        )

    def _owner_state(self) -> RoomState:
        assert self.membership is not None
        return RoomState.ACTIVE if len(self.membership) > 1 else RoomState.OWNED

    def _snapshot(self) -> MembershipUpdate:
        assert self.membership is not None and self.room_code is not None
        return MembershipUpdate(
            room_code=self.room_code,
            room_id=self.room_id,
            version=self.membership.version,
            member_keys=self.membership.as_dict(),
        )

    def _reset(self, state: RoomState) -> None:
        self.state = state
        self.room_code = None
        self.room_id = None
        self.is_owner = False
        self.membership = None
        self._room_key = None
        self._pending.clear()
        self._decided.clear()
        self._outgoing = None

    # --- Owner operations ---

    async def create(self, room_code: str | None = None, room_id: str | None = None) -> RoomCreated:
        """Create a room with this participant as the sole member."""
        async with self._lock:
            self._require(*_IDLE_STATES)
            self._reset(RoomState.NO_ROOM)

            code = normalize_room_code(room_code or generate_room_code(self.room_code_length))
            self.room_code = code
            self.room_id = room_id
            self.is_owner = True
            self.membership = MembershipSet(code, {self.username: self.public_key})
            self._rekey()
            self.state = RoomState.OWNED

            logger.info(f"{self.username} created room {code}")
            return RoomCreated(room_id=room_id, room_code=code)

    async def receive_join_request(self, request: JoinRequest) -> bool:
        """
        Register a pending join request (owner side).

        Returns:
            False if the request was already seen or decided
        """
        async with self._lock:
            self._require_owner()
            if normalize_room_code(request.room_code) != self.room_code:
                raise RoomStateError(f"Join request is for room {request.room_code}, not {self.room_code}")
            if request.request_id in self._pending or request.request_id in self._decided:
                return False

            self._pending[request.request_id] = request
            logger.info(f"Join request {request.request_id} from {request.username} for {self.room_code}")
            return True

    async def approve(self, request_id: str) -> MembershipUpdate:
        """
        Approve a pending join request.

        The requester's key joins the membership set and the room key is
        recomputed. The returned snapshot is what every member, including the
        joiner, derives the new key from.

        Raises:
            RoomStateError: If the request is unknown or already decided
        """
        async with self._lock:
            self._require_owner()
            if request_id in self._decided:
                raise RoomStateError(f"Join request {request_id} was already decided")
            request = self._pending.get(request_id)
            if request is None:
                raise RoomStateError(f"No pending join request {request_id}")

            assert self.membership is not None
            self.membership.add(request.username, request.public_key)
            del self._pending[request_id]
            self._decided.add(request_id)
            self._rekey()
            self.state = self._owner_state()
            return self._snapshot()

    async def deny(self, request_id: str) -> JoinRequest:
        """Discard a pending join request. The room key does not change."""
        async with self._lock:
            self._require_owner()
            if request_id in self._decided:
                raise RoomStateError(f"Join request {request_id} was already decided")
            request = self._pending.pop(request_id, None)
            if request is None:
                raise RoomStateError(f"No pending join request {request_id}")

            self._decided.add(request_id)
            logger.info(f"Denied join request {request_id} from {request.username}")
            return request

    async def on_join_cancelled(self, request_id: str) -> JoinRequest | None:
        """
        Drop a pending join request the requester withdrew (owner side).

        Returns:
            The dropped request, or None if it was not pending
        """
        async with self._lock:
            self._require_owner()
            request = self._pending.pop(request_id, None)
            if request is None:
                return None

            self._decided.add(request_id)
            logger.info(f"Join request {request_id} from {request.username} was cancelled")
            return request

    async def member_leave(self, username: str) -> MembershipUpdate | None:
        """
        Remove a member and rotate the room key.

        Envelopes encrypted under the previous key no longer decrypt.

        Returns:
            The new snapshot, or None if the user was not a member
        """
        async with self._lock:
            self._require(RoomState.OWNED, RoomState.ACTIVE)
            assert self.membership is not None
            if username == self.username:
                raise RoomStateError("Use leave() or close() to remove yourself")
            if self.membership.remove(username) is None:
                return None

            self._rekey()
            if self.is_owner:
                self.state = self._owner_state()
            return self._snapshot()

    async def close(self) -> None:
        """Close the room (owner only). All room state is discarded."""
        async with self._lock:
            self._require_owner()
            logger.info(f"{self.username} closed room {self.room_code}")
            self._reset(RoomState.CLOSED)

    # --- Joiner operations ---

    async def request_join(self, room_code: str) -> JoinRequest:
        """Ask to join a room. No key material changes until approval."""
        async with self._lock:
            self._require(*_IDLE_STATES)
            self._reset(RoomState.NO_ROOM)

            request = JoinRequest(
                request_id=str(make_uuid7()),
                username=self.username,
                public_key=self.public_key,
                room_code=normalize_room_code(room_code),
            )
            self._outgoing = request
            self.state = RoomState.REQUESTING
            return request

    async def cancel_request(self) -> None:
        """Abandon a pending join request."""
        async with self._lock:
            self._require(RoomState.REQUESTING)
            self._reset(RoomState.NO_ROOM)

    async def on_join_approved(self, update: MembershipUpdate) -> None:
        """Enter the room using the membership snapshot published on approval."""
        async with self._lock:
            self._require(RoomState.REQUESTING)
            assert self._outgoing is not None
            code = normalize_room_code(update.room_code)
            if code != self._outgoing.room_code:
                raise RoomStateError(f"Approval is for room {code}, requested {self._outgoing.room_code}")
            if update.member_keys.get(self.username) != self.public_key:
                raise RoomStateError("Approved membership does not contain our public key")

            self.room_code = code
            self.room_id = update.room_id
            self.membership = MembershipSet(code, update.member_keys, update.version)
            self._outgoing = None
            self._rekey()
            self.state = RoomState.ACTIVE
            logger.info(f"{self.username} joined room {code}")

    async def on_join_denied(self, request_id: str | None = None) -> None:
        async with self._lock:
            self._require(RoomState.REQUESTING)
            if request_id is not None and self._outgoing and request_id != self._outgoing.request_id:
                return
            self._reset(RoomState.DENIED)

    # --- Membership observed from the transport ---

    async def apply_membership(self, update: MembershipUpdate) -> bool:
        """
        Adopt a full membership snapshot and recompute the room key.

        Returns:
            True if the key changed; False for stale or duplicate snapshots
        """
        async with self._lock:
            self._require(RoomState.OWNED, RoomState.ACTIVE)
            assert self.membership is not None
            if normalize_room_code(update.room_code) != self.room_code:
                raise RoomStateError(f"Membership update is for room {update.room_code}")

            if not self.membership.replace(update.member_keys, update.version):
                return False

            if not self.membership.has_key(self.public_key):
                logger.info(f"{self.username} is no longer a member of {self.room_code}")
                self._reset(RoomState.NO_ROOM)
                return True

            if update.room_id:
                self.room_id = update.room_id
            self._rekey()
            if self.is_owner:
                self.state = self._owner_state()
            return True

    async def leave(self) -> None:
        """Leave the room as a non-owner member."""
        async with self._lock:
            self._require(RoomState.ACTIVE)
            if self.is_owner:
                raise RoomStateError("The owner closes the room instead of leaving")
            self._reset(RoomState.NO_ROOM)

    async def on_room_closed(self) -> None:
        """The owner closed the room; discard everything."""
        async with self._lock:
            self._reset(RoomState.NO_ROOM)

    # --- Messages ---

    async def encrypt(self, plaintext: str, timestamp: str | None = None) -> EncryptedEnvelope:
        """
        Encrypt a message under the current room key.

        Raises:
            RoomStateError: If no room key is set
        """
        async with self._lock:
            if self._room_key is None:
                raise RoomStateError("Room key not set")
            return encrypt_message(
                self._room_key,
                plaintext,
                sender_id=self.username,
                timestamp=timestamp or datetime.now(timezone.utc).isoformat(),
                bind_metadata=self.bind_metadata,
            )

    async def decrypt(self, envelope: EncryptedEnvelope) -> str | DecryptFailure:
        """
        Decrypt a message under the current room key.

        Returns:
            Plaintext, or DecryptFailure (never raises for bad ciphertext)

        Raises:
            RoomStateError: If no room key is set
        """
        async with self._lock:
            if self._room_key is None:
                raise RoomStateError("Room key not set")
            if envelope.epoch is not None and envelope.epoch > self._room_key.version:
                return DecryptFailure(
                    DecryptFailureReason.STALE_KEY,
                    f"Message epoch {envelope.epoch} is newer than key v{self._room_key.version}",
                )

            result = decrypt_message(self._room_key, envelope, bind_metadata=self.bind_metadata)
            if isinstance(result, DecryptFailure):
                logger.debug(f"Decrypt failed in {self.room_code}: {result.reason.value}")
            return result

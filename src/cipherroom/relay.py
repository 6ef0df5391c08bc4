"""In-process relay.

The relay is the server side of a room: it enforces username uniqueness,
assigns room codes, routes join requests to room owners, publishes the full
member-key map on every membership change and fans encrypted messages out to
members. It only ever handles public keys and ciphertext.

Every membership change is published before anything else for that room, so
members always rekey before they see a message encrypted under the new key.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from uuid_extensions import uuid7 as make_uuid7

from .crypto import InvalidPublicKeyError, load_public_key
from .events import EventBus, get_event_bus
from .protocol import (
    DEFAULT_ROOM_CODE_LENGTH,
    EncryptedMessage,
    JoinApprovedEvent,
    JoinCancelledEvent,
    JoinDeniedEvent,
    JoinRequest,
    JoinRequestEvent,
    MemberJoinedEvent,
    MemberLeftEvent,
    MembershipUpdate,
    MembersUpdateEvent,
    MessageEvent,
    RoomClosedEvent,
    RoomCreated,
    RoomData,
    generate_room_code,
    normalize_room_code,
)

logger = logging.getLogger(__name__)


class RelayError(Exception):
    """Base class for errors reported by the relay."""


class UsernameTakenError(RelayError):
    pass


class UnknownUserError(RelayError):
    pass


class RoomNotFoundError(RelayError):
    pass


class NotRoomOwnerError(RelayError):
    pass


class NotRoomMemberError(RelayError):
    pass


class RequestNotFoundError(RelayError):
    pass


@dataclass
class _Room:
    room_id: str
    room_code: str
    owner: str
    members: dict[str, str]  # username -> public key
    version: int = 0
    messages: list[EncryptedMessage] = field(default_factory=list)
    pending: dict[str, JoinRequest] = field(default_factory=dict)

    def snapshot(self) -> MembershipUpdate:
        return MembershipUpdate(
            room_code=self.room_code,
            room_id=self.room_id,
            version=self.version,
            member_keys=dict(self.members),
        )


class InMemoryRelay:
    """Relay holding users and rooms in memory for the life of the process."""

    def __init__(self, bus: EventBus | None = None, room_code_length: int = DEFAULT_ROOM_CODE_LENGTH):
        self.bus = bus or get_event_bus()
        self.room_code_length = room_code_length
        self._users: dict[str, str] = {}  # username -> public key
        self._rooms: dict[str, _Room] = {}  # room_id -> room
        self._codes: dict[str, str] = {}  # room_code -> room_id

    # --- Users ---

    async def register(self, username: str, public_key: str) -> None:
        """Register a username. Usernames are unique across the relay."""
        if not username.strip():
            raise RelayError("Username must not be empty")
        if username in self._users:
            raise UsernameTakenError(f"Username {username} is taken")
        try:
            load_public_key(public_key)
        except InvalidPublicKeyError as e:
            raise RelayError(f"Invalid public key for {username}: {e}") from e
        self._users[username] = public_key
        logger.info(f"Registered {username}")

    async def unregister(self, username: str) -> None:
        """Drop a user, leaving (or closing) every room they are in.

        Join requests the user still has pending are cancelled.
        """
        for room in list(self._rooms.values()):
            for request in [r for r in room.pending.values() if r.username == username]:
                await self._cancel_pending(room, request)
        for room in [r for r in self._rooms.values() if username in r.members]:
            await self.leave_room(username, room.room_id)
        self._users.pop(username, None)
        self.bus.discard(username)

    def _require_user(self, username: str) -> str:
        public_key = self._users.get(username)
        if public_key is None:
            raise UnknownUserError(f"Unknown user {username}")
        return public_key

    def _get_room(self, room_id: str) -> _Room:
        room = self._rooms.get(room_id)
        if room is None:
            raise RoomNotFoundError(f"Room {room_id} not found")
        return room

    def _require_member(self, room: _Room, username: str) -> None:
        if username not in room.members:
            raise NotRoomMemberError(f"{username} is not a member of {room.room_code}")

    def _require_owner(self, room: _Room, username: str) -> None:
        if room.owner != username:
            raise NotRoomOwnerError(f"{username} does not own {room.room_code}")

    def room_id_for_code(self, room_code: str) -> str | None:
        return self._codes.get(normalize_room_code(room_code))

    # --- Rooms ---

    async def create_room(self, owner: str) -> RoomCreated:
        """Create a room owned by a registered user."""
        public_key = self._require_user(owner)

        room_code = generate_room_code(self.room_code_length)
        while room_code in self._codes:
            room_code = generate_room_code(self.room_code_length)

        room = _Room(
            room_id=str(make_uuid7()),
            room_code=room_code,
            owner=owner,
            members={owner: public_key},
        )
        self._rooms[room.room_id] = room
        self._codes[room_code] = room.room_id
        logger.info(f"{owner} created room {room_code} ({room.room_id})")
        return RoomCreated(room_id=room.room_id, room_code=room_code)

    async def request_join(self, request: JoinRequest) -> JoinRequest:
        """Route a join request to the room owner.

        Returns:
            The request with the relay's room_id filled in
        """
        registered_key = self._require_user(request.username)
        if request.public_key != registered_key:
            raise RelayError(f"{request.username} must join with their registered public key")
        room_id = self.room_id_for_code(request.room_code)
        if room_id is None:
            raise RoomNotFoundError(f"Room {request.room_code} not found")
        room = self._rooms[room_id]
        if request.username in room.members:
            raise RelayError(f"{request.username} is already in {room.room_code}")

        routed = request.model_copy(update={"room_id": room_id, "room_code": room.room_code})
        room.pending[routed.request_id] = routed
        await self.bus.publish(room.owner, JoinRequestEvent(request=routed).to_wire())
        return routed

    async def approve_join(self, owner: str, request_id: str) -> MembershipUpdate:
        """Admit a requester and publish the new membership to everyone."""
        room = self._find_request_room(request_id)
        self._require_owner(room, owner)
        request = room.pending.pop(request_id)

        existing = list(room.members)
        room.members[request.username] = request.public_key
        room.version += 1
        update = room.snapshot()

        for member in existing:
            await self.bus.publish(member, MembersUpdateEvent(update=update).to_wire())
        await self.bus.publish(
            request.username,
            JoinApprovedEvent(request_id=request_id, update=update).to_wire(),
        )
        joined = MemberJoinedEvent(
            room_id=room.room_id,
            username=request.username,
            public_key=request.public_key,
        ).to_wire()
        for member in existing:
            await self.bus.publish(member, joined)

        logger.info(f"{request.username} joined {room.room_code} (v{room.version})")
        return update

    async def deny_join(self, owner: str, request_id: str) -> None:
        room = self._find_request_room(request_id)
        self._require_owner(room, owner)
        request = room.pending.pop(request_id)
        await self.bus.publish(
            request.username,
            JoinDeniedEvent(request_id=request_id, room_code=room.room_code).to_wire(),
        )

    async def pending_requests(self, owner: str, room_id: str) -> list[JoinRequest]:
        """Join requests awaiting the owner's decision."""
        room = self._get_room(room_id)
        self._require_owner(room, owner)
        return list(room.pending.values())

    async def cancel_join(self, username: str, request_id: str) -> None:
        """Withdraw a pending join request and tell the owner."""
        room = self._find_request_room(request_id)
        request = room.pending[request_id]
        if request.username != username:
            raise RelayError(f"{username} did not send join request {request_id}")
        await self._cancel_pending(room, request)

    async def _cancel_pending(self, room: _Room, request: JoinRequest) -> None:
        del room.pending[request.request_id]
        await self.bus.publish(
            room.owner,
            JoinCancelledEvent(
                request_id=request.request_id,
                username=request.username,
                room_code=room.room_code,
            ).to_wire(),
        )
        logger.info(f"{request.username} cancelled join request {request.request_id} for {room.room_code}")

    def _find_request_room(self, request_id: str) -> _Room:
        for room in self._rooms.values():
            if request_id in room.pending:
                return room
        raise RequestNotFoundError(f"No pending join request {request_id}")

    async def leave_room(self, username: str, room_id: str) -> None:
        """Leave a room. The owner leaving closes it."""
        room = self._get_room(room_id)
        self._require_member(room, username)

        if username == room.owner:
            await self.close_room(username, room_id)
            return

        del room.members[username]
        room.version += 1
        update = room.snapshot()
        left = MemberLeftEvent(room_id=room_id, username=username).to_wire()
        for member in room.members:
            await self.bus.publish(member, MembersUpdateEvent(update=update).to_wire())
            await self.bus.publish(member, left)
        logger.info(f"{username} left {room.room_code} (v{room.version})")

    async def close_room(self, owner: str, room_id: str) -> None:
        """Close a room and discard its members, requests and messages."""
        room = self._get_room(room_id)
        self._require_owner(room, owner)

        closed = RoomClosedEvent(room_id=room_id, room_code=room.room_code).to_wire()
        for member in room.members:
            if member != owner:
                await self.bus.publish(member, closed)
        for request in room.pending.values():
            await self.bus.publish(
                request.username,
                JoinDeniedEvent(request_id=request.request_id, room_code=room.room_code).to_wire(),
            )

        del self._rooms[room_id]
        del self._codes[room.room_code]
        logger.info(f"Room {room.room_code} closed by {owner}")

    # --- Messages ---

    async def send_message(self, username: str, room_id: str, message: EncryptedMessage) -> None:
        """Buffer an encrypted message and fan it out to every member."""
        room = self._get_room(room_id)
        self._require_member(room, username)
        if message.sender_id is not None and message.sender_id != username:
            raise RelayError(f"{username} cannot send as {message.sender_id}")

        message = message.model_copy(update={"message_id": str(make_uuid7())})
        room.messages.append(message)
        event = MessageEvent(room_id=room_id, message=message).to_wire()
        for member in room.members:
            await self.bus.publish(member, event)

    async def room_data(self, username: str, room_id: str) -> RoomData:
        """Membership and buffered ciphertext for a member entering the room."""
        room = self._get_room(room_id)
        self._require_member(room, username)
        return RoomData(
            room_id=room.room_id,
            room_code=room.room_code,
            version=room.version,
            member_keys=dict(room.members),
            messages=list(room.messages),
        )

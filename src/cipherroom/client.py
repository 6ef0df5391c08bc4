"""Participant client.

Glues one identity, one RoomSession and a relay together: registers a
username, creates or joins rooms, answers join requests, sends encrypted
messages and processes relay events in delivery order.

Usage:
    relay = InMemoryRelay()
    alice = Participant("alice", relay)
    bob = Participant("bob", relay)
    await alice.register()
    await bob.register()

    room = await alice.create_room()
    await bob.request_join(room.room_code)
    await alice.process_events()
    await alice.approve(alice.session.pending_requests[0].request_id)
    await bob.process_events()

    await alice.send("hello")
    await bob.process_events()
    bob.messages[-1].text  # "hello"
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .config import CipherRoomConfig
from .crypto import DecryptFailure, DecryptFailureReason, KeyPair, check_crypto_available, create_identity
from .protocol import (
    EncryptedMessage,
    JoinApprovedEvent,
    JoinCancelledEvent,
    JoinDeniedEvent,
    JoinRequestEvent,
    MemberJoinedEvent,
    MemberLeftEvent,
    MembersUpdateEvent,
    MessageEvent,
    RelayEvent,
    RoomClosedEvent,
    RoomCreated,
    parse_event,
)
from .relay import InMemoryRelay, RelayError
from .session import RoomSession, RoomState, RoomStateError

logger = logging.getLogger(__name__)


@dataclass
class ReceivedMessage:
    """A room message as shown to the user."""

    sender_id: str | None
    text: str
    timestamp: str | None
    decrypted: bool


class Participant:
    """One user connected to a relay."""

    def __init__(
        self,
        username: str,
        relay: InMemoryRelay,
        keypair: KeyPair | None = None,
        config: CipherRoomConfig | None = None,
    ):
        if keypair is None:
            check_crypto_available()
            keypair = create_identity()

        self.username = username
        self.relay = relay
        self.config = config or CipherRoomConfig()
        self.session = RoomSession(
            keypair,
            username,
            bind_metadata=self.config.bind_metadata,
            room_code_length=self.config.room_code_length,
        )
        self.messages: list[ReceivedMessage] = []
        self.notices: list[str] = []
        self._seen: set[str] = set()

    def _clear_messages(self) -> None:
        self.messages.clear()
        self._seen.clear()

    @property
    def fingerprint(self) -> str:
        return self.session.fingerprint

    @property
    def room_id(self) -> str | None:
        return self.session.room_id

    async def register(self) -> None:
        await self.relay.register(self.username, self.session.public_key)

    # --- Room lifecycle ---

    async def create_room(self) -> RoomCreated:
        created = await self.relay.create_room(self.username)
        await self.session.create(room_code=created.room_code, room_id=created.room_id)
        self._clear_messages()
        self.notices.append(f"Room {created.room_code} created")
        return created

    async def request_join(self, room_code: str) -> str:
        """Send a join request. Returns the request id."""
        request = await self.session.request_join(room_code)
        try:
            await self.relay.request_join(request)
        except RelayError:
            await self.session.cancel_request()
            raise
        self.notices.append("Join request sent...")
        return request.request_id

    async def cancel_request(self) -> None:
        """Withdraw the outgoing join request before it is decided."""
        request = self.session.outgoing_request
        if request is None:
            raise RoomStateError("No join request to cancel")
        await self.relay.cancel_join(self.username, request.request_id)
        await self.session.cancel_request()
        self.notices.append("Join request cancelled")

    async def approve(self, request_id: str) -> None:
        """Admit a requester. The local session rekeys only after the relay accepts."""
        await self.relay.approve_join(self.username, request_id)
        await self.session.approve(request_id)

    async def deny(self, request_id: str) -> None:
        await self.relay.deny_join(self.username, request_id)
        await self.session.deny(request_id)

    async def leave(self) -> None:
        """Leave the room; for the owner this closes it."""
        room_id = self.session.room_id
        if room_id is None:
            raise RoomStateError("Not in a room")

        await self.relay.leave_room(self.username, room_id)
        if self.session.is_owner:
            await self.session.close()
        else:
            await self.session.leave()
        self._clear_messages()

    # --- Messages ---

    async def send(self, text: str) -> None:
        text = text.strip()
        if not text:
            return
        room_id = self.session.room_id
        if room_id is None:
            raise RoomStateError("Not in a room")

        envelope = await self.session.encrypt(text)
        await self.relay.send_message(self.username, room_id, EncryptedMessage.from_envelope(envelope))

    async def _receive(self, message: EncryptedMessage, from_history: bool = False) -> ReceivedMessage | None:
        if message.message_id in self._seen:
            return None

        result = await self.session.decrypt(message.to_envelope())
        if from_history and isinstance(result, DecryptFailure) and result.reason == DecryptFailureReason.STALE_KEY:
            # Encrypted after our key; it is still queued as a live event
            return None
        if message.message_id is not None:
            self._seen.add(message.message_id)

        decrypted = not isinstance(result, DecryptFailure)
        received = ReceivedMessage(
            sender_id=message.sender_id,
            text=result if decrypted else self.config.placeholder,
            timestamp=message.timestamp,
            decrypted=decrypted,
        )
        self.messages.append(received)
        return received

    async def _load_history(self) -> None:
        assert self.session.room_id is not None
        data = await self.relay.room_data(self.username, self.session.room_id)
        self._clear_messages()
        for message in data.messages:
            await self._receive(message, from_history=True)

    # --- Event processing ---

    async def process_events(self, timeout: float = 0) -> int:
        """
        Handle every queued relay event in order.

        Args:
            timeout: Seconds to wait for the first event (0 = only what is queued)

        Returns:
            Number of events handled
        """
        handled = 0
        wait = timeout
        while True:
            data = await self.relay.bus.next_event(self.username, timeout=wait)
            if data is None:
                return handled
            await self.handle_event(parse_event(data))
            handled += 1
            wait = 0

    async def handle_event(self, event: RelayEvent) -> None:
        if isinstance(event, JoinRequestEvent):
            if await self.session.receive_join_request(event.request):
                self.notices.append(f"{event.request.username} wants to join")

        elif isinstance(event, JoinApprovedEvent):
            outgoing = self.session.outgoing_request
            if (
                self.session.state != RoomState.REQUESTING
                or outgoing is None
                or outgoing.request_id != event.request_id
            ):
                logger.info(f"Ignoring approval of request {event.request_id} that is no longer outstanding")
                return
            await self.session.on_join_approved(event.update)
            await self._load_history()
            self.notices.append("Joined secure room")

        elif isinstance(event, JoinDeniedEvent):
            if self.session.state == RoomState.REQUESTING:
                await self.session.on_join_denied(event.request_id)
                self.notices.append("Join request denied")

        elif isinstance(event, JoinCancelledEvent):
            if self.session.is_owner and await self.session.on_join_cancelled(event.request_id):
                self.notices.append(f"{event.username} cancelled their join request")

        elif isinstance(event, MembersUpdateEvent):
            if self.session.state in (RoomState.OWNED, RoomState.ACTIVE):
                await self.session.apply_membership(event.update)

        elif isinstance(event, MemberJoinedEvent):
            self.notices.append(f"{event.username} joined with verified encryption")

        elif isinstance(event, MemberLeftEvent):
            self.notices.append(f"{event.username} left the room")

        elif isinstance(event, MessageEvent):
            if event.room_id == self.session.room_id:
                await self._receive(event.message)

        elif isinstance(event, RoomClosedEvent):
            if event.room_id == self.session.room_id:
                await self.session.on_room_closed()
                self._clear_messages()
                self.notices.append("Room was closed by owner")

        else:  # pragma: no cover
            logger.warning(f"Unhandled event {event!r}")

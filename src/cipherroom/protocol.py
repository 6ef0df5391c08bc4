"""Wire models exchanged between participants and the relay.

All models serialize with camelCase keys (``requestId``, ``memberKeys``...) so
they match the JSON the transport layer carries. Relay events are a
discriminated union on the ``type`` field.
"""

from __future__ import annotations

import secrets
import string
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from .crypto import EncryptedEnvelope

ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits
DEFAULT_ROOM_CODE_LENGTH = 6


def generate_room_code(length: int = DEFAULT_ROOM_CODE_LENGTH) -> str:
    """Generate a short human-typeable room code."""
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(length))


def normalize_room_code(room_code: str) -> str:
    """Normalize a user-typed room code (strip whitespace, upper-case)."""
    return room_code.strip().upper()


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_wire(self) -> dict:
        """Dump with camelCase keys."""
        return self.model_dump(by_alias=True)


class JoinRequest(WireModel):
    request_id: str
    username: str
    public_key: str
    room_code: str
    room_id: str | None = None


class MembershipUpdate(WireModel):
    """Full membership snapshot for a room at one version."""

    room_code: str
    room_id: str | None = None
    version: int
    member_keys: dict[str, str]

    @property
    def members(self) -> list[str]:
        return sorted(self.member_keys)


class RoomCreated(WireModel):
    room_id: str | None = None
    room_code: str


class EncryptedMessage(WireModel):
    """Wire form of an encrypted room message."""

    ciphertext: str
    nonce: str
    sender_id: str | None = None
    timestamp: str | None = None
    epoch: int | None = None
    message_id: str | None = None  # assigned by the relay

    @classmethod
    def from_envelope(cls, envelope: EncryptedEnvelope) -> "EncryptedMessage":
        return cls.model_validate(envelope.to_dict())

    def to_envelope(self) -> EncryptedEnvelope:
        return EncryptedEnvelope.from_dict(self.to_wire())


class RoomData(WireModel):
    """What a member receives when entering a room."""

    room_id: str
    room_code: str
    version: int
    member_keys: dict[str, str]
    messages: list[EncryptedMessage] = Field(default_factory=list)


# --- Relay events ---


class JoinRequestEvent(WireModel):
    type: Literal["join-request"] = "join-request"
    request: JoinRequest


class JoinApprovedEvent(WireModel):
    type: Literal["join-approved"] = "join-approved"
    request_id: str
    update: MembershipUpdate


class JoinDeniedEvent(WireModel):
    type: Literal["join-denied"] = "join-denied"
    request_id: str
    room_code: str


class JoinCancelledEvent(WireModel):
    type: Literal["join-cancelled"] = "join-cancelled"
    request_id: str
    username: str
    room_code: str


class MembersUpdateEvent(WireModel):
    type: Literal["members-update"] = "members-update"
    update: MembershipUpdate


class MemberJoinedEvent(WireModel):
    type: Literal["member-joined"] = "member-joined"
    room_id: str
    username: str
    public_key: str


class MemberLeftEvent(WireModel):
    type: Literal["member-left"] = "member-left"
    room_id: str
    username: str


class MessageEvent(WireModel):
    type: Literal["message"] = "message"
    room_id: str
    message: EncryptedMessage


class RoomClosedEvent(WireModel):
    type: Literal["room-closed"] = "room-closed"
    room_id: str
    room_code: str


RelayEvent = Annotated[
    Union[
        JoinRequestEvent,
        JoinApprovedEvent,
        JoinDeniedEvent,
        JoinCancelledEvent,
        MembersUpdateEvent,
        MemberJoinedEvent,
        MemberLeftEvent,
        MessageEvent,
        RoomClosedEvent,
    ],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[RelayEvent] = TypeAdapter(RelayEvent)


def parse_event(data: dict) -> RelayEvent:
    """Parse a wire dictionary into the matching relay event model."""
    return _event_adapter.validate_python(data)

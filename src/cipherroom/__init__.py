"""cipherroom - End-to-end encrypted chat rooms.

Usage:
    from cipherroom import InMemoryRelay, Participant

    relay = InMemoryRelay()
    alice = Participant("alice", relay)
    bob = Participant("bob", relay)
    await alice.register()
    await bob.register()

    # Alice owns the room; the room key is derived over {alice}
    room = await alice.create_room()

    # Bob asks to join; alice approves and everyone rekeys over {alice, bob}
    await bob.request_join(room.room_code)
    await alice.process_events()
    await alice.approve(alice.session.pending_requests[0].request_id)
    await bob.process_events()

    await alice.send("hello")
    await bob.process_events()

Lower-level building blocks:
    from cipherroom.crypto import create_identity, derive_room_key, encrypt_message
    from cipherroom.session import RoomSession
"""

from cipherroom._version import __version__
from cipherroom.client import Participant, ReceivedMessage
from cipherroom.config import CipherRoomConfig, CipherRoomConfigError
from cipherroom.crypto import (
    CryptoUnavailableError,
    DecryptFailure,
    EncryptedEnvelope,
    KeyPair,
    RoomKey,
    create_identity,
    derive_room_key,
    fingerprint,
)
from cipherroom.relay import InMemoryRelay, RelayError
from cipherroom.session import RoomSession, RoomState, RoomStateError

__all__ = [
    "__version__",
    "CipherRoomConfig",
    "CipherRoomConfigError",
    "CryptoUnavailableError",
    "DecryptFailure",
    "EncryptedEnvelope",
    "InMemoryRelay",
    "KeyPair",
    "Participant",
    "ReceivedMessage",
    "RelayError",
    "RoomKey",
    "RoomSession",
    "RoomState",
    "RoomStateError",
    "create_identity",
    "derive_room_key",
    "fingerprint",
]

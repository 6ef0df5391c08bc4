"""Pytest fixtures for testing with cipherroom.

Usage in conftest.py:
    pytest_plugins = ["cipherroom.testing"]

Available fixtures:
    - keypair: Fresh identity key pair
    - relay: InMemoryRelay on its own event bus
    - alice_and_bob: Two registered participants on the relay
    - shared_room: alice owns a room that bob has joined
"""

from __future__ import annotations

from typing import AsyncGenerator

import pytest
import pytest_asyncio

from .client import Participant
from .crypto import KeyPair, create_identity
from .events import InMemoryEventBus
from .relay import InMemoryRelay


@pytest.fixture
def keypair() -> KeyPair:
    """Fresh P-256 identity."""
    return create_identity()


@pytest.fixture
def relay() -> InMemoryRelay:
    """Relay with a private event bus (no global state shared between tests)."""
    return InMemoryRelay(InMemoryEventBus())


@pytest_asyncio.fixture
async def alice_and_bob(relay: InMemoryRelay) -> AsyncGenerator[tuple[Participant, Participant], None]:
    """Two registered participants, not yet in any room.

    Example:
        @pytest.mark.asyncio
        async def test_something(alice_and_bob):
            alice, bob = alice_and_bob
            room = await alice.create_room()
            ...
    """
    alice = Participant("alice", relay)
    bob = Participant("bob", relay)
    await alice.register()
    await bob.register()
    yield alice, bob


@pytest_asyncio.fixture
async def shared_room(
    alice_and_bob: tuple[Participant, Participant],
) -> AsyncGenerator[tuple[Participant, Participant], None]:
    """alice owns a room and bob has been admitted; all events are drained."""
    alice, bob = alice_and_bob
    await join_room(alice, bob)
    yield alice, bob


# --- Utility Functions ---


async def join_room(owner: Participant, joiner: Participant) -> None:
    """Have ``joiner`` request to join ``owner``'s room and get approved.

    Creates the room first if the owner is not in one. Drains both
    participants' event queues afterwards.
    """
    if owner.session.room_code is None:
        await owner.create_room()
    request_id = await joiner.request_join(owner.session.room_code)
    await owner.process_events()
    await owner.approve(request_id)
    await joiner.process_events()
    await owner.process_events()


async def drain(*participants: Participant) -> None:
    """Process every queued event for each participant."""
    for participant in participants:
        await participant.process_events()

"""CLI for cipherroom.

Tools for checking keys out of band and for exercising the protocol locally:
- keygen: create an identity and show its public key and fingerprint
- fingerprint: fingerprint of a public-key record
- room-key: key id and membership hash for a room code and member keys
- demo: run a two-participant room through the in-memory relay
- config: show the effective configuration
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Annotated

import cyclopts

from .config import CipherRoomConfig, CipherRoomConfigError, get_config_path
from .crypto import (
    CryptoUnavailableError,
    InvalidPublicKeyError,
    compute_membership_hash,
    create_identity,
    derive_room_key,
    fingerprint as key_fingerprint,
    load_public_key,
)
from .events import InMemoryEventBus
from .protocol import normalize_room_code

app = cyclopts.App(
    name="cipherroom",
    help="End-to-end encrypted rooms: key tools and a local demo",
)


def load_config() -> CipherRoomConfig:
    """Load config or exit with error."""
    try:
        return CipherRoomConfig.load()
    except CipherRoomConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)


def print_json(data):
    """Pretty print JSON data."""
    print(json.dumps(data, indent=2, default=str, ensure_ascii=False))


@app.command
def keygen(*, json_output: bool = False):
    """Generate an identity and print its public key and fingerprint.

    The private key is never written anywhere; it is discarded on exit.
    """
    try:
        keypair = create_identity()
    except CryptoUnavailableError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(2)

    if json_output:
        print_json({"public_key": keypair.public_key_record, "fingerprint": keypair.fingerprint})
        return
    print(f"Public key:  {keypair.public_key_record}")
    print(f"Fingerprint: {keypair.fingerprint}")


@app.command
def fingerprint(public_key: str):
    """Show the fingerprint of a public-key record."""
    try:
        load_public_key(public_key)
    except InvalidPublicKeyError as e:
        raise cyclopts.ValidationError(str(e))
    print(key_fingerprint(public_key))


@app.command
def room_key(room_code: str, *public_keys: str):
    """Show the room key id every member should see for this membership.

    Compare the key id over a trusted channel to confirm all members derived
    the same key. The key itself is never printed.
    """
    if not public_keys:
        raise cyclopts.ValidationError("At least one member public key is required")
    for key in public_keys:
        try:
            load_public_key(key)
        except InvalidPublicKeyError as e:
            raise cyclopts.ValidationError(f"{key[:16]}...: {e}")

    code = normalize_room_code(room_code)
    key = derive_room_key(code, public_keys)
    print_json(
        {
            "room_code": code,
            "members": len(set(public_keys)),
            "membership_hash": compute_membership_hash(public_keys),
            "key_id": key.key_id,
        }
    )


async def _run_demo(cfg: CipherRoomConfig) -> list[str]:
    from .client import Participant
    from .relay import InMemoryRelay

    relay = InMemoryRelay(InMemoryEventBus(), room_code_length=cfg.room_code_length)
    alice = Participant("alice", relay, config=cfg)
    bob = Participant("bob", relay, config=cfg)
    await alice.register()
    await bob.register()

    transcript = [
        f"alice fingerprint: {alice.fingerprint}",
        f"bob fingerprint:   {bob.fingerprint}",
    ]

    room = await alice.create_room()
    transcript.append(f"alice created room {room.room_code} (key {alice.session.room_key_id})")
    await alice.send("Anyone here?")

    await bob.request_join(room.room_code)
    await alice.process_events()
    request = alice.session.pending_requests[0]
    transcript.append(f"alice sees join request from {request.username} ({key_fingerprint(request.public_key)})")
    await alice.approve(request.request_id)
    await bob.process_events()
    await alice.process_events()
    transcript.append(
        f"room rekeyed to v{alice.session.membership_version}: "
        f"alice key {alice.session.room_key_id}, bob key {bob.session.room_key_id}"
    )

    await bob.send("Hi alice!")
    await alice.send("Welcome, bob.")
    await alice.process_events()
    await bob.process_events()

    for name, participant in (("alice", alice), ("bob", bob)):
        for message in participant.messages:
            transcript.append(f"[{name}] {message.sender_id}: {message.text}")

    await bob.leave()
    await alice.process_events()
    transcript.append(f"bob left; alice rekeyed to v{alice.session.membership_version} ({alice.session.room_key_id})")
    await alice.leave()
    transcript.append(f"alice closed the room; state {alice.session.state.value}")
    return transcript


@app.command
def demo():
    """Run alice and bob through create, join, chat, leave and close."""
    for line in asyncio.run(_run_demo(load_config())):
        print(line)


@app.command
def config():
    """Show the effective configuration."""
    cfg = load_config()
    print(f"# {get_config_path()}")
    print_json(cfg.to_dict())


@app.meta.default
def launcher(*tokens: Annotated[str, cyclopts.Parameter(show=False, allow_leading_hyphen=True)]):
    """Configure logging from the config, then dispatch."""
    level = load_config().log_level
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app(tokens)


def main():
    app.meta()


if __name__ == "__main__":
    main()

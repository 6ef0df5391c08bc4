"""End-to-end tests: participants talking through the relay."""

import pytest

from cipherroom.client import Participant
from cipherroom.config import DEFAULT_PLACEHOLDER, CipherRoomConfig
from cipherroom.protocol import EncryptedMessage, JoinApprovedEvent, MembershipUpdate
from cipherroom.relay import NotRoomMemberError, RequestNotFoundError, RoomNotFoundError, UsernameTakenError
from cipherroom.session import RoomState, RoomStateError
from cipherroom.testing import drain, join_room


class TestRegistration:
    @pytest.mark.asyncio
    async def test_duplicate_username(self, relay, alice_and_bob):
        with pytest.raises(UsernameTakenError):
            await Participant("alice", relay).register()

    def test_uses_given_keypair(self, relay, keypair):
        participant = Participant("carol", relay, keypair=keypair)
        assert participant.fingerprint == keypair.fingerprint
        assert participant.session.public_key == keypair.public_key_record


class TestJoining:
    @pytest.mark.asyncio
    async def test_create_room(self, alice_and_bob):
        alice, _ = alice_and_bob
        created = await alice.create_room()
        assert alice.session.state == RoomState.OWNED
        assert alice.session.room_code == created.room_code
        assert alice.room_id == created.room_id
        assert alice.notices[-1] == f"Room {created.room_code} created"

    @pytest.mark.asyncio
    async def test_join_request_notifies_owner(self, alice_and_bob):
        alice, bob = alice_and_bob
        created = await alice.create_room()
        request_id = await bob.request_join(created.room_code)

        assert await alice.process_events() == 1
        assert alice.notices[-1] == "bob wants to join"
        assert [r.request_id for r in alice.session.pending_requests] == [request_id]
        assert bob.session.state == RoomState.REQUESTING

    @pytest.mark.asyncio
    async def test_approved_join_shares_key(self, shared_room):
        alice, bob = shared_room
        assert bob.session.state == RoomState.ACTIVE
        assert alice.session.state == RoomState.ACTIVE
        assert alice.session.room_key_id == bob.session.room_key_id
        assert alice.session.membership_version == bob.session.membership_version == 1
        assert "Joined secure room" in bob.notices
        assert "bob joined with verified encryption" in alice.notices

    @pytest.mark.asyncio
    async def test_denied_join(self, alice_and_bob):
        alice, bob = alice_and_bob
        created = await alice.create_room()
        request_id = await bob.request_join(created.room_code)
        await alice.process_events()

        await alice.deny(request_id)
        await bob.process_events()

        assert bob.session.state == RoomState.DENIED
        assert bob.notices[-1] == "Join request denied"
        assert alice.session.membership_version == 0

    @pytest.mark.asyncio
    async def test_join_missing_room(self, alice_and_bob):
        _, bob = alice_and_bob
        with pytest.raises(RoomNotFoundError):
            await bob.request_join("ZZZZZZ")
        assert bob.session.state == RoomState.NO_ROOM


class TestMessaging:
    @pytest.mark.asyncio
    async def test_message_roundtrip(self, shared_room):
        alice, bob = shared_room
        await alice.send("  hello bob  ")
        await drain(alice, bob)

        assert bob.messages[-1].text == "hello bob"
        assert bob.messages[-1].sender_id == "alice"
        assert bob.messages[-1].decrypted
        assert alice.messages[-1].text == "hello bob"

    @pytest.mark.asyncio
    async def test_blank_message_ignored(self, shared_room):
        alice, bob = shared_room
        await alice.send("   ")
        await drain(alice, bob)
        assert bob.messages == []

    @pytest.mark.asyncio
    async def test_history_before_join_shows_placeholder(self, alice_and_bob):
        alice, bob = alice_and_bob
        await alice.create_room()
        await alice.send("before bob")
        await join_room(alice, bob)

        assert len(bob.messages) == 1
        assert bob.messages[0].text == DEFAULT_PLACEHOLDER
        assert not bob.messages[0].decrypted
        assert alice.messages[0].text == "before bob"

    @pytest.mark.asyncio
    async def test_custom_placeholder(self, relay):
        alice = Participant("alice", relay)
        bob = Participant("bob", relay, config=CipherRoomConfig(placeholder="[encrypted]"))
        await alice.register()
        await bob.register()
        await alice.create_room()
        await alice.send("secret")
        await join_room(alice, bob)

        assert bob.messages[0].text == "[encrypted]"

    @pytest.mark.asyncio
    async def test_history_message_not_duplicated(self, alice_and_bob):
        alice, bob = alice_and_bob
        created = await alice.create_room()
        request_id = await bob.request_join(created.room_code)
        await alice.process_events()
        await alice.approve(request_id)
        await alice.send("once")

        # join-approved loads history, which already holds the message event
        await bob.process_events()
        assert [m.text for m in bob.messages] == ["once"]

    @pytest.mark.asyncio
    async def test_third_member_rekeys_everyone(self, relay, shared_room):
        alice, bob = shared_room
        carol = Participant("carol", relay)
        await carol.register()

        await alice.send("before carol")
        await join_room(alice, carol)
        await alice.send("with carol")
        await drain(alice, bob, carol)

        assert [m.text for m in bob.messages] == ["before carol", "with carol"]
        assert [m.text for m in carol.messages] == [DEFAULT_PLACEHOLDER, "with carol"]
        assert bob.session.room_key_id == carol.session.room_key_id == alice.session.room_key_id

    @pytest.mark.asyncio
    async def test_leave_rotates_key(self, relay, shared_room):
        alice, bob = shared_room
        old_key = alice.session.room_key_id
        await bob.leave()
        await drain(alice)

        assert bob.session.state == RoomState.NO_ROOM
        assert alice.session.state == RoomState.OWNED
        assert alice.session.room_key_id != old_key
        assert "bob left the room" in alice.notices

        with pytest.raises(NotRoomMemberError):
            await relay.send_message(bob.username, alice.room_id, EncryptedMessage(ciphertext="YQ==", nonce="Yg=="))

    @pytest.mark.asyncio
    async def test_owner_leave_closes_room(self, shared_room):
        alice, bob = shared_room
        await alice.leave()
        await bob.process_events()

        assert alice.session.state == RoomState.CLOSED
        assert bob.session.state == RoomState.NO_ROOM
        assert bob.notices[-1] == "Room was closed by owner"
        assert bob.messages == []

    @pytest.mark.asyncio
    async def test_bound_metadata_end_to_end(self, relay):
        config = CipherRoomConfig(bind_metadata=True)
        alice = Participant("alice", relay, config=config)
        bob = Participant("bob", relay, config=config)
        await alice.register()
        await bob.register()
        await join_room(alice, bob)

        await bob.send("bound")
        await drain(alice, bob)
        assert alice.messages[-1].text == "bound"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_request(self, relay, alice_and_bob):
        alice, bob = alice_and_bob
        created = await alice.create_room()
        request_id = await bob.request_join(created.room_code)
        await alice.process_events()

        await bob.cancel_request()
        assert bob.session.state == RoomState.NO_ROOM
        assert await relay.pending_requests("alice", created.room_id) == []

        await alice.process_events()
        assert alice.session.pending_requests == []
        assert alice.notices[-1] == "bob cancelled their join request"

        with pytest.raises(RequestNotFoundError):
            await alice.approve(request_id)
        assert alice.session.membership_version == 0
        assert list((await relay.room_data("alice", created.room_id)).member_keys) == ["alice"]

    @pytest.mark.asyncio
    async def test_approve_racing_cancel_leaves_keys_alone(self, relay, alice_and_bob):
        """Approving before the cancellation arrives fails without rekeying the owner."""
        alice, bob = alice_and_bob
        created = await alice.create_room()
        request_id = await bob.request_join(created.room_code)
        await alice.process_events()
        key_before = alice.session.room_key_id

        await bob.cancel_request()
        with pytest.raises(RequestNotFoundError):
            await alice.approve(request_id)

        assert alice.session.room_key_id == key_before
        assert alice.session.state == RoomState.OWNED
        assert await bob.process_events() == 0

    @pytest.mark.asyncio
    async def test_cancel_without_request(self, alice_and_bob):
        _, bob = alice_and_bob
        with pytest.raises(RoomStateError):
            await bob.cancel_request()

    @pytest.mark.asyncio
    async def test_requester_unregisters(self, relay, alice_and_bob):
        alice, bob = alice_and_bob
        created = await alice.create_room()
        request_id = await bob.request_join(created.room_code)
        await alice.process_events()

        await relay.unregister("bob")
        await alice.process_events()

        assert alice.session.pending_requests == []
        assert await relay.pending_requests("alice", created.room_id) == []
        with pytest.raises(RequestNotFoundError):
            await alice.approve(request_id)
        assert alice.session.membership_version == 0
        assert list((await relay.room_data("alice", created.room_id)).member_keys) == ["alice"]

    @pytest.mark.asyncio
    async def test_approval_for_other_request_ignored(self, alice_and_bob):
        alice, bob = alice_and_bob
        created = await alice.create_room()
        await bob.request_join(created.room_code)
        update = MembershipUpdate(
            room_code=created.room_code,
            room_id=created.room_id,
            version=1,
            member_keys={"alice": alice.session.public_key, "bob": bob.session.public_key},
        )

        await bob.handle_event(JoinApprovedEvent(request_id="someone-else", update=update))

        assert bob.session.state == RoomState.REQUESTING
        assert not bob.session.has_key

    @pytest.mark.asyncio
    async def test_approval_after_local_cancel_ignored(self, alice_and_bob):
        alice, bob = alice_and_bob
        created = await alice.create_room()
        request_id = await bob.request_join(created.room_code)
        await bob.session.cancel_request()
        update = MembershipUpdate(
            room_code=created.room_code,
            version=1,
            member_keys={"alice": alice.session.public_key, "bob": bob.session.public_key},
        )

        await bob.handle_event(JoinApprovedEvent(request_id=request_id, update=update))

        assert bob.session.state == RoomState.NO_ROOM
        assert bob.messages == []

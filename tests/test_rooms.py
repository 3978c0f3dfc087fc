#!/usr/bin/env python3
"""
Unit tests for the room router: membership, persisted fan-out, typing
relay and bulk read marking.
"""

import asyncio
import unittest
from unittest.mock import patch

from fakes import FakeWebSocket, make_store
from realtime.errors import InvalidPayload, PersistenceFailure
from realtime.rooms import RoomRouter
from realtime.sessions import Session, SessionState
from schemas.chat import SendMessagePayload, UserIdentity


def identified_session(user_id, **ws_kwargs):
    session = Session(FakeWebSocket(**ws_kwargs))
    session.identity = UserIdentity(user_id=user_id, user_name=user_id.upper(), user_image=f"{user_id}.png")
    session.state = SessionState.IDENTIFIED
    return session


class TestRoomMembership(unittest.TestCase):
    """Test cases for joining and leaving rooms."""

    def setUp(self):
        self.router = RoomRouter(make_store())

    def test_join_is_idempotent(self):
        session = identified_session("u1")

        self.assertTrue(self.router.join(session, "u1_u2"))
        self.assertFalse(self.router.join(session, "u1_u2"))

        self.assertEqual(self.router.members("u1_u2"), [session])
        self.assertEqual(session.rooms, {"u1_u2"})
        self.assertEqual(self.router.participants("u1_u2"), {"u1"})

    def test_leave_and_leave_all(self):
        session = identified_session("u1")
        self.router.join(session, "a")
        self.router.join(session, "b")

        self.assertTrue(self.router.leave(session, "a"))
        self.assertFalse(self.router.leave(session, "a"))
        self.assertEqual(self.router.leave_all(session), ["b"])
        self.assertEqual(session.rooms, set())
        self.assertEqual(self.router.room_count(), 0)

    def test_other_participants_prefers_explicit_recipient(self):
        self.router.record_participant("room", "u3")
        self.assertEqual(self.router.other_participants("room", "u1", recipient_id="u9"), {"u9"})
        self.assertEqual(self.router.other_participants("room", "u1", recipient_id="u1"), set())

    def test_other_participants_from_membership_record(self):
        self.router.join(identified_session("u1"), "food-42")
        self.router.join(identified_session("u7"), "food-42")

        self.assertEqual(self.router.other_participants("food-42", "u1"), {"u7"})

    def test_other_participants_from_stored_record(self):
        self.assertEqual(self.router.other_participants("food-42", "u1", stored={"u1", "u7"}), {"u7"})
        # Memory wins over the store while the room has members
        self.router.join(identified_session("u1"), "food-42")
        self.router.join(identified_session("u8"), "food-42")
        self.assertEqual(self.router.other_participants("food-42", "u1", stored={"u7"}), {"u8"})

    def test_empty_room_forgets_participants(self):
        alice, bob = identified_session("u1"), identified_session("u2")
        self.router.join(alice, "food-42")
        self.router.join(bob, "food-42")

        self.router.leave(alice, "food-42")
        self.assertEqual(self.router.participants("food-42"), {"u1", "u2"})
        self.router.leave_all(bob)

        self.assertEqual(self.router.participants("food-42"), set())
        self.assertEqual(self.router._participants, {})
        # Nobody is in the room, so nothing is recorded for it
        self.router.record_participant("food-42", "u3")
        self.assertEqual(self.router._participants, {})

    def test_other_participants_from_room_id_convention(self):
        self.assertEqual(self.router.other_participants("u1_u2", "u1"), {"u2"})
        self.assertEqual(self.router.other_participants("u1_u2", "u2"), {"u1"})
        # Sender not part of the id, or ids containing the separator: nobody
        self.assertEqual(self.router.other_participants("u1_u2", "u5"), set())
        self.assertEqual(self.router.other_participants("a_b_c", "a"), set())


class TestRoomFanOut(unittest.IsolatedAsyncioTestCase):
    """Test cases for send, typing and mark_read."""

    def setUp(self):
        self.store = make_store()
        self.router = RoomRouter(self.store)

    async def test_send_persists_then_delivers_to_all_members(self):
        alice, bob, carol = identified_session("u1"), identified_session("u2"), identified_session("u3")
        self.router.join(alice, "u1_u2")
        self.router.join(bob, "u1_u2")

        message, recipients = await self.router.send(alice, SendMessagePayload(room_id="u1_u2", message="hi"))

        self.assertEqual(recipients, {"u2"})
        self.assertEqual(message.sender_name, "U1")
        self.assertEqual(message.sender_image, "u1.png")
        for session in (alice, bob):
            received = session.websocket.payloads("receive_message")
            self.assertEqual(len(received), 1)
            self.assertEqual(received[0]["message"], "hi")
            self.assertEqual(received[0]["id"], message.id)
        self.assertEqual(carol.websocket.sent, [])
        self.assertEqual([m.id for m in self.store.list_by_room("u1_u2")], [message.id])

    async def test_send_to_empty_room_still_persists(self):
        alice = identified_session("u1")

        message, _ = await self.router.send(alice, SendMessagePayload(room_id="u1_u2", message="anyone?"))

        self.assertEqual(self.store.list_by_room("u1_u2")[0].id, message.id)
        self.assertEqual(alice.websocket.sent, [])

    async def test_send_after_room_emptied_uses_stored_participants(self):
        alice, carol = identified_session("u1"), identified_session("u7")
        self.router.join(alice, "food-42")
        self.router.join(carol, "food-42")
        await self.router.send(alice, SendMessagePayload(room_id="food-42", message="still there?"))
        self.router.leave_all(alice)
        self.router.leave_all(carol)

        _, recipients = await self.router.send(alice, SendMessagePayload(room_id="food-42", message="later"))

        self.assertEqual(recipients, {"u7"})
        self.assertEqual(self.router._participants, {})

    async def test_send_order_matches_acceptance_order(self):
        alice, bob = identified_session("u1"), identified_session("u2")
        self.router.join(bob, "u1_u2")

        for i in range(5):
            await self.router.send(alice, SendMessagePayload(room_id="u1_u2", message=f"m{i}"))

        delivered = [m["message"] for m in bob.websocket.payloads("receive_message")]
        stored = [m.message for m in self.store.list_by_room("u1_u2")]
        self.assertEqual(delivered, ["m0", "m1", "m2", "m3", "m4"])
        self.assertEqual(stored, delivered)

    async def test_concurrent_sends_are_serialized(self):
        alice, bob = identified_session("u1"), identified_session("u2")
        self.router.join(bob, "u1_u2")

        await asyncio.gather(*(self.router.send(alice, SendMessagePayload(room_id="u1_u2", message=f"m{i}")) for i in range(8)))

        delivered = [m["message"] for m in bob.websocket.payloads("receive_message")]
        stored = [m.message for m in self.store.list_by_room("u1_u2")]
        self.assertEqual(delivered, stored)
        self.assertEqual(sorted(delivered), [f"m{i}" for i in range(8)])
        # Per-room locks do not outlive the sends that used them
        self.assertEqual(self.router._send_locks, {})

    async def test_send_rejects_spoofed_sender(self):
        alice = identified_session("u1")

        with self.assertRaises(InvalidPayload):
            await self.router.send(alice, SendMessagePayload(room_id="u1_u2", message="hi", sender_id="u2"))
        self.assertEqual(self.store.list_by_room("u1_u2"), [])

    async def test_persistence_failure_skips_fan_out(self):
        alice, bob = identified_session("u1"), identified_session("u2")
        self.router.join(alice, "u1_u2")
        self.router.join(bob, "u1_u2")

        with patch.object(self.store, "append", side_effect=PersistenceFailure("append failed")):
            with self.assertRaises(PersistenceFailure):
                await self.router.send(alice, SendMessagePayload(room_id="u1_u2", message="lost"))

        self.assertEqual(alice.websocket.sent, [])
        self.assertEqual(bob.websocket.sent, [])

    async def test_delivery_to_closed_or_broken_session_is_silent(self):
        alice, bob, broken = identified_session("u1"), identified_session("u2"), identified_session("u3", fail_sends=True)
        for session in (alice, bob, broken):
            self.router.join(session, "room")
        bob.state = SessionState.CLOSED

        delivered = await self.router.deliver("room", "ping", {})

        self.assertEqual(delivered, 1)
        self.assertEqual(alice.websocket.events(), ["ping"])
        self.assertEqual(bob.websocket.sent, [])

    async def test_typing_skips_sender(self):
        alice, bob = identified_session("u1"), identified_session("u2")
        self.router.join(alice, "u1_u2")
        self.router.join(bob, "u1_u2")

        await self.router.typing(alice, "u1_u2", "Alice", True)
        await self.router.typing(alice, "u1_u2", "Alice", False)

        self.assertEqual(alice.websocket.sent, [])
        self.assertEqual(bob.websocket.payloads("user_typing"), [
            {"roomId": "u1_u2", "userName": "Alice", "isTyping": True},
            {"roomId": "u1_u2", "userName": "Alice", "isTyping": False},
        ])

    async def test_mark_read_is_idempotent_and_notifies_room(self):
        alice, bob = identified_session("u1"), identified_session("u2")
        self.router.join(alice, "u1_u2")
        self.router.join(bob, "u1_u2")
        await self.router.send(alice, SendMessagePayload(room_id="u1_u2", message="one"))
        await self.router.send(alice, SendMessagePayload(room_id="u1_u2", message="two"))

        first = await self.router.mark_read("u1_u2", "u2", exclude_connection_id=bob.connection_id)
        second = await self.router.mark_read("u1_u2", "u2", exclude_connection_id=bob.connection_id)

        self.assertEqual((first, second), (2, 0))
        self.assertEqual(alice.websocket.payloads("messages_read"), [{"roomId": "u1_u2", "readerId": "u2", "count": 2}])
        self.assertEqual(bob.websocket.payloads("messages_read"), [])


if __name__ == '__main__':
    unittest.main()

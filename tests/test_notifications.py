#!/usr/bin/env python3
"""
Unit tests for the notification dispatcher.

Delivery outcomes are returned explicitly, so the no-delivery cases are
asserted directly.
"""

import unittest

from fakes import FakeWebSocket, make_store
from realtime.notifications import NotificationDispatcher, truncate_preview
from realtime.presence import PresenceRegistry
from realtime.rooms import RoomRouter
from realtime.sessions import Session, SessionState
from schemas.chat import ChatMessage, UserIdentity


class TestTruncatePreview(unittest.TestCase):

    def test_short_body_untouched(self):
        self.assertEqual(truncate_preview("hello", 10), "hello")

    def test_long_body_truncated_with_ellipsis(self):
        self.assertEqual(truncate_preview("a" * 60, 50), "a" * 50 + "...")

    def test_zero_length_disables_truncation(self):
        self.assertEqual(truncate_preview("abc", 0), "abc")


class TestNotificationDispatcher(unittest.IsolatedAsyncioTestCase):
    """Test cases for NotificationDispatcher."""

    def setUp(self):
        self.registry = PresenceRegistry()
        self.router = RoomRouter(make_store())
        self.sessions = {}
        self.dispatcher = NotificationDispatcher(self.registry, self.router, self.sessions, preview_length=10)
        self.message = ChatMessage(id="m1", room_id="u1_u2", sender_id="u1", sender_name="Ann", message="Is the bread still available?")

    def online(self, user_id):
        session = Session(FakeWebSocket())
        session.identity = UserIdentity(user_id=user_id)
        session.state = SessionState.IDENTIFIED
        entry = self.registry.register(session.connection_id, session.identity)
        session.generation = entry.generation
        self.sessions[session.connection_id] = session
        return session

    async def test_offline_recipient_is_dropped(self):
        outcome = await self.dispatcher.notify_new_message(self.message, "u2")

        self.assertFalse(outcome.delivered)
        self.assertEqual(outcome.reason, "offline")

    async def test_online_recipient_outside_room_gets_preview(self):
        bob = self.online("u2")

        outcome = await self.dispatcher.notify_new_message(self.message, "u2")

        self.assertTrue(outcome.delivered)
        self.assertEqual(outcome.connection_id, bob.connection_id)
        [notification] = bob.websocket.payloads("new_message_notification")
        self.assertEqual(notification["preview"], "Is the bre...")
        self.assertEqual(notification["roomId"], "u1_u2")
        self.assertEqual(notification["senderName"], "Ann")
        self.assertEqual(notification["messageId"], "m1")

    async def test_recipient_already_in_room_is_skipped(self):
        bob = self.online("u2")
        self.router.join(bob, "u1_u2")

        outcome = await self.dispatcher.notify_new_message(self.message, "u2")

        self.assertFalse(outcome.delivered)
        self.assertEqual(outcome.reason, "in_room")
        self.assertEqual(bob.websocket.sent, [])

    async def test_sender_connection_is_skipped(self):
        bob = self.online("u2")

        outcome = await self.dispatcher.notify_new_message(self.message, "u2", sender_connection_id=bob.connection_id)

        self.assertEqual(outcome.reason, "sender_connection")
        self.assertEqual(bob.websocket.sent, [])

    async def test_broken_socket_reports_send_failed(self):
        bob = self.online("u2")
        bob.websocket.fail_sends = True

        outcome = await self.dispatcher.notify_new_message(self.message, "u2")

        self.assertEqual(outcome.reason, "send_failed")

    async def test_broadcast_with_exclusions(self):
        ann, bob, cid = self.online("u1"), self.online("u2"), self.online("u3")

        delivered = await self.dispatcher.notify_broadcast("food_notification", {"foodId": "f1"}, exclude_connection_id=ann.connection_id)
        self.assertEqual(delivered, 2)
        self.assertEqual(ann.websocket.sent, [])
        self.assertEqual(bob.websocket.payloads("food_notification"), [{"foodId": "f1"}])

        delivered = await self.dispatcher.notify_broadcast("request_status_updated", {"status": "approved"}, exclude_user_id="u3")
        self.assertEqual(delivered, 2)
        self.assertEqual(cid.websocket.payloads("request_status_updated"), [])

    async def test_broadcast_with_nobody_connected(self):
        self.assertEqual(await self.dispatcher.notify_broadcast("food_notification", {}), 0)


if __name__ == '__main__':
    unittest.main()

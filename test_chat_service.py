"""
Tests for chat_service.
"""
import unittest
from unittest.mock import MagicMock

from testing_utils import BitPulseTestCase
from chat_service import ChatService, ChatError, MAX_MESSAGE_LENGTH


class TestChatService(BitPulseTestCase):

    def setUp(self):
        super().setUp()
        self.socketio = MagicMock()
        self.service = ChatService(self.socketio)
        self.alice = self.create_user('alice')
        self.bob = self.create_user('bob')
        self.carol = self.create_user('carol')

    def test_private_room_is_reused(self):
        room = self.service.get_or_create_private_room(self.alice.id, self.bob.id)
        self.assertEqual(room.type, 'private')
        self.assertEqual(room.participant_ids(), {self.alice.id, self.bob.id})

        again = self.service.get_or_create_private_room(self.bob.id, self.alice.id)
        self.assertEqual(again.id, room.id)
        self.assertEqual([r.id for r in self.service.get_rooms(self.carol.id)], [])

    def test_private_room_errors(self):
        with self.assertRaises(ChatError):
            self.service.get_or_create_private_room(self.alice.id, self.alice.id)
        with self.assertRaises(ChatError) as ctx:
            self.service.get_or_create_private_room(self.alice.id, 9999)
        self.assertEqual(ctx.exception.status_code, 404)

    def test_group_room(self):
        room = self.service.create_group(self.alice.id, ' Traders ', [self.bob.id, str(self.carol.id)])
        self.assertEqual(room.name, 'Traders')
        self.assertEqual(room.participant_ids(), {self.alice.id, self.bob.id, self.carol.id})

        with self.assertRaises(ChatError):
            self.service.create_group(self.alice.id, '', [])
        with self.assertRaises(ChatError):
            self.service.create_group(self.alice.id, 'Bad', [], room_type='private')
        with self.assertRaises(ChatError) as ctx:
            self.service.create_group(self.alice.id, 'Ghosts', [9999])
        self.assertEqual(ctx.exception.status_code, 404)

    def test_add_participant(self):
        room = self.service.create_group(self.alice.id, 'Traders', [self.bob.id])
        room = self.service.add_participant(self.alice.id, room.id, self.carol.id)
        self.assertIn(self.carol.id, room.participant_ids())

        private = self.service.get_or_create_private_room(self.alice.id, self.bob.id)
        with self.assertRaises(ChatError):
            self.service.add_participant(self.alice.id, private.id, self.carol.id)

    def test_messages(self):
        room = self.service.get_or_create_private_room(self.alice.id, self.bob.id)
        first = self.service.send_message(self.alice.id, room.id, ' hello ')
        second = self.service.send_message(self.bob.id, room.id, 'hi!')
        third = self.service.send_message(self.alice.id, room.id, 'buy BTC?')

        self.assertEqual(first.content, 'hello')
        self.assertEqual([m.id for m in self.service.get_messages(self.bob.id, room.id)],
                         [first.id, second.id, third.id])
        self.assertEqual([m.id for m in self.service.get_messages(self.bob.id, room.id, limit=2)],
                         [second.id, third.id])
        self.assertEqual([m.id for m in self.service.get_messages(self.bob.id, room.id, before_id=third.id)],
                         [first.id, second.id])

        event, payload = self.socketio.emit.call_args.args
        self.assertEqual(event, 'chat_message')
        self.assertEqual(payload['content'], 'buy BTC?')
        self.assertEqual(self.socketio.emit.call_args.kwargs['to'], f'chat_{room.id}')

    def test_message_validation(self):
        room = self.service.get_or_create_private_room(self.alice.id, self.bob.id)
        for content in ('', '   ', None, 'x' * (MAX_MESSAGE_LENGTH + 1)):
            with self.assertRaises(ChatError):
                self.service.send_message(self.alice.id, room.id, content)

    def test_non_participants_rejected(self):
        room = self.service.get_or_create_private_room(self.alice.id, self.bob.id)
        with self.assertRaises(ChatError) as ctx:
            self.service.send_message(self.carol.id, room.id, 'let me in')
        self.assertEqual(ctx.exception.status_code, 403)
        with self.assertRaises(ChatError) as ctx:
            self.service.get_messages(self.carol.id, 9999)
        self.assertEqual(ctx.exception.status_code, 404)


if __name__ == '__main__':
    unittest.main()

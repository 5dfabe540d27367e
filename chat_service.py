"""
Chat Service - private, group and support rooms between users.
"""
import logging
from typing import Iterable, List, Optional

from models import db, User, ChatRoom, ChatParticipant, ChatMessage

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 2000


class ChatError(Exception):
    status_code = 400

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ChatService:
    def __init__(self, socketio=None):
        self.socketio = socketio

    def get_rooms(self, user_id: int) -> List[ChatRoom]:
        """Rooms the user takes part in."""
        return (ChatRoom.query
                .join(ChatParticipant, ChatParticipant.room_id == ChatRoom.id)
                .filter(ChatParticipant.user_id == user_id)
                .order_by(ChatRoom.created_at.desc())
                .all())

    def get_room_for(self, user_id: int, room_id: int) -> ChatRoom:
        room = db.session.get(ChatRoom, room_id)
        if room is None:
            raise ChatError('Chat room not found', 404)
        if user_id not in room.participant_ids():
            raise ChatError('Not a participant of this chat room', 403)
        return room

    def get_or_create_private_room(self, user_id: int, other_user_id: int) -> ChatRoom:
        if user_id == other_user_id:
            raise ChatError('Cannot open a private chat with yourself')
        if db.session.get(User, other_user_id) is None:
            raise ChatError('User not found', 404)

        for room in self.get_rooms(user_id):
            if room.type == 'private' and room.participant_ids() == {user_id, other_user_id}:
                return room

        room = ChatRoom(type='private', created_by=user_id)
        db.session.add(room)
        db.session.flush()
        db.session.add_all([
            ChatParticipant(room_id=room.id, user_id=user_id),
            ChatParticipant(room_id=room.id, user_id=other_user_id),
        ])
        db.session.commit()
        logger.info(f"Created private chat room {room.id} between users {user_id} and {other_user_id}")
        return room

    def create_group(self, creator_id: int, name: str, member_ids: Iterable[int], room_type: str = 'group') -> ChatRoom:
        if not isinstance(name, str) or not name.strip():
            raise ChatError('Group name is required')
        if room_type not in ('group', 'support'):
            raise ChatError('Room type must be group or support')

        members = {creator_id}
        for member_id in member_ids or []:
            try:
                members.add(int(member_id))
            except (TypeError, ValueError):
                raise ChatError(f'Invalid user id: {member_id}')

        found = {u.id for u in User.query.filter(User.id.in_(members)).all()}
        missing = members - found
        if missing:
            raise ChatError(f"Unknown users: {', '.join(str(m) for m in sorted(missing))}", 404)

        room = ChatRoom(name=name.strip()[:120], type=room_type, created_by=creator_id)
        db.session.add(room)
        db.session.flush()
        db.session.add_all([ChatParticipant(room_id=room.id, user_id=m) for m in sorted(members)])
        db.session.commit()
        logger.info(f"User {creator_id} created {room_type} room {room.id} with {len(members)} members")
        return room

    def add_participant(self, actor_id: int, room_id: int, user_id: int) -> ChatRoom:
        room = self.get_room_for(actor_id, room_id)
        if room.type == 'private':
            raise ChatError('Cannot add participants to a private chat')
        if db.session.get(User, user_id) is None:
            raise ChatError('User not found', 404)
        if user_id in room.participant_ids():
            return room
        db.session.add(ChatParticipant(room_id=room.id, user_id=user_id))
        db.session.commit()
        return room

    def get_messages(self, user_id: int, room_id: int, limit: int = 50,
                     before_id: Optional[int] = None) -> List[ChatMessage]:
        """Latest messages of a room in chronological order."""
        self.get_room_for(user_id, room_id)
        query = ChatMessage.query.filter_by(room_id=room_id)
        if before_id:
            query = query.filter(ChatMessage.id < before_id)
        messages = query.order_by(ChatMessage.id.desc()).limit(limit).all()
        return list(reversed(messages))

    def send_message(self, user_id: int, room_id: int, content: str) -> ChatMessage:
        room = self.get_room_for(user_id, room_id)
        if not isinstance(content, str) or not content.strip():
            raise ChatError('Message cannot be empty')
        if len(content) > MAX_MESSAGE_LENGTH:
            raise ChatError(f'Message cannot exceed {MAX_MESSAGE_LENGTH} characters')

        message = ChatMessage(room_id=room.id, sender_id=user_id, content=content.strip())
        db.session.add(message)
        db.session.commit()

        if self.socketio:
            try:
                self.socketio.emit('chat_message', message.to_dict(), to=f'chat_{room.id}')
            except Exception as e:
                logger.error(f"Error emitting chat message {message.id}: {e}")
        return message

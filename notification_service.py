"""
Notification Service - in-app notifications pushed over SocketIO.
"""
import logging
from typing import List, Optional

from models import db, Notification

logger = logging.getLogger(__name__)


class NotificationService:
    """Creates, lists and marks user notifications."""

    def __init__(self, socketio=None):
        self.socketio = socketio

    def create(self, user_id: int, title: str, body: str, link: str = '/dashboard',
               commit: bool = True) -> Notification:
        """Create a notification.

        With commit=False the row joins the caller's transaction and the
        caller is expected to call emit() once it has committed.
        """
        notification = Notification(user_id=user_id, title=title, body=body, link=link or '/dashboard')
        db.session.add(notification)
        if commit:
            db.session.commit()
            self.emit(notification)
        return notification

    def emit(self, notification: Notification):
        if not self.socketio:
            return
        try:
            self.socketio.emit('notification', {'user_id': notification.user_id, **notification.to_dict()},
                               to=f'user_{notification.user_id}')
        except Exception as e:
            logger.error(f"Error emitting notification {notification.id}: {e}")

    def get_unread(self, user_id: int) -> List[Notification]:
        return (Notification.query
                .filter_by(user_id=user_id, is_read=False)
                .order_by(Notification.created_at.desc(), Notification.id.desc())
                .all())

    def get_recent(self, user_id: int, limit: int = 20) -> List[Notification]:
        return (Notification.query
                .filter_by(user_id=user_id)
                .order_by(Notification.created_at.desc(), Notification.id.desc())
                .limit(limit)
                .all())

    def unread_count(self, user_id: int) -> int:
        return Notification.query.filter_by(user_id=user_id, is_read=False).count()

    def _get_owned(self, user_id: int, notification_id: int) -> Optional[Notification]:
        return Notification.query.filter_by(id=notification_id, user_id=user_id).first()

    def mark_read(self, user_id: int, notification_id: int) -> bool:
        notification = self._get_owned(user_id, notification_id)
        if notification is None:
            return False
        notification.is_read = True
        db.session.commit()
        return True

    def mark_all_read(self, user_id: int) -> int:
        count = Notification.query.filter_by(user_id=user_id, is_read=False).update(
            {'is_read': True}, synchronize_session=False
        )
        db.session.commit()
        return count

    def delete(self, user_id: int, notification_id: int) -> bool:
        notification = self._get_owned(user_id, notification_id)
        if notification is None:
            return False
        db.session.delete(notification)
        db.session.commit()
        return True

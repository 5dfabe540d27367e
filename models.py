"""
Database models for the BitPulse trading simulator.
"""
from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime, timedelta, timezone
import json
import uuid

db = SQLAlchemy()


def current_utc() -> datetime:
    """Return naive UTC timestamp derived from timezone-aware clock."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_uuid() -> str:
    return str(uuid.uuid4())


USER_ROLES = ('cliente', 'admin', 'maestro')
POSITION_DIRECTIONS = ('long', 'short')
POSITION_STATUSES = ('open', 'closed', 'liquidated')
DURATION_UNITS = ('minute', 'hour', 'day')

_DURATION_UNIT_SECONDS = {
    'minute': 60,
    'hour': 60 * 60,
    'day': 24 * 60 * 60,
}


def duration_to_timedelta(value, unit) -> timedelta:
    """Convert a (value, unit) position duration to a timedelta.

    Unknown units are treated as hours.
    """
    seconds = _DURATION_UNIT_SECONDS.get(unit, _DURATION_UNIT_SECONDS['hour'])
    return timedelta(seconds=float(value) * seconds)


class User(UserMixin, db.Model):
    """User model for authentication and Pejecoin balance."""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    first_name = db.Column(db.String(80), nullable=False, default='')
    last_name = db.Column(db.String(80), nullable=False, default='')
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default='cliente')
    pejecoins = db.Column(db.Float, nullable=False, default=0.0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # Email confirmation
    email_confirmed = db.Column(db.Boolean, nullable=False, default=False)
    confirmation_token = db.Column(db.String(64), nullable=True, index=True)
    confirmation_expires_at = db.Column(db.DateTime, nullable=True)

    # Two factor authentication
    two_factor_secret = db.Column(db.String(64), nullable=True)
    two_factor_enabled = db.Column(db.Boolean, nullable=False, default=False)

    # Admin approval grace period
    admin_approval_required = db.Column(db.Boolean, nullable=False, default=False)
    admin_approved = db.Column(db.Boolean, nullable=False, default=False)
    admin_approval_requested_at = db.Column(db.DateTime, nullable=True)
    admin_approval_expires_at = db.Column(db.DateTime, nullable=True)

    last_login = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=current_utc)
    updated_at = db.Column(db.DateTime, default=current_utc, onupdate=current_utc)

    positions = db.relationship('TradePosition', backref='user', cascade='all, delete-orphan', lazy='dynamic')
    notifications = db.relationship('Notification', backref='user', cascade='all, delete-orphan', lazy='dynamic')
    activities = db.relationship('UserActivity', backref='user', cascade='all, delete-orphan', lazy='dynamic')

    __table_args__ = (
        db.CheckConstraint('pejecoins >= 0', name='check_pejecoins_non_negative'),
        db.CheckConstraint("role IN ('cliente', 'admin', 'maestro')", name='check_valid_role'),
    )

    def set_password(self, password):
        """Set password hash."""
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        """Check if password matches."""
        return check_password_hash(self.password_hash, password)

    @property
    def full_name(self):
        return f'{self.first_name} {self.last_name}'.strip()

    def is_admin(self):
        return self.role == 'admin'

    def is_staff(self):
        return self.role in ('admin', 'maestro')

    def to_dict(self, include_private=False):
        data = {
            'id': self.id,
            'email': self.email,
            'username': self.username,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'role': self.role,
            'pejecoins': round(self.pejecoins or 0.0, 2),
            'is_active': self.is_active,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'last_login': self.last_login.isoformat() if self.last_login else None,
        }
        if include_private:
            data.update({
                'email_confirmed': self.email_confirmed,
                'two_factor_enabled': self.two_factor_enabled,
                'admin_approval_required': self.admin_approval_required,
                'admin_approved': self.admin_approved,
            })
        return data

    def __repr__(self):
        return f'<User {self.username}>'


class TradePosition(db.Model):
    """A simulated position opened with Pejecoins for a fixed duration."""
    __tablename__ = 'trade_positions'

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    instrument = db.Column(db.String(64), nullable=False)
    category = db.Column(db.String(32), nullable=True)
    direction = db.Column(db.String(5), nullable=False)
    market_color = db.Column(db.String(16), nullable=True)

    stake = db.Column(db.Float, nullable=False)
    amount = db.Column(db.Float, nullable=False)  # Pejecoins committed
    leverage = db.Column(db.Float, nullable=False, default=0.0)
    capital_fraction = db.Column(db.Float, nullable=True)
    lot_size = db.Column(db.Float, nullable=True)
    position_value = db.Column(db.Float, nullable=True)
    margin_required = db.Column(db.Float, nullable=True)

    open_price = db.Column(db.Float, nullable=False)
    current_price = db.Column(db.Float, nullable=True)
    close_price = db.Column(db.Float, nullable=True)
    profit = db.Column(db.Float, nullable=True)
    stop_loss = db.Column(db.Float, nullable=True)
    take_profit = db.Column(db.Float, nullable=True)

    duration_value = db.Column(db.Integer, nullable=False)
    duration_unit = db.Column(db.String(10), nullable=False, default='hour')

    status = db.Column(db.String(12), nullable=False, default='open', index=True)
    close_reason = db.Column(db.String(20), nullable=True)
    open_time = db.Column(db.DateTime, nullable=False, default=current_utc, index=True)
    close_time = db.Column(db.DateTime, nullable=True)

    modifications = db.relationship('PositionModification', backref='position', cascade='all, delete-orphan',
                                     order_by='PositionModification.created_at.desc()')

    __table_args__ = (
        db.CheckConstraint('amount > 0', name='check_positive_amount'),
        db.CheckConstraint('stake > 0', name='check_positive_stake'),
        db.CheckConstraint('open_price > 0', name='check_positive_open_price'),
        db.CheckConstraint('duration_value > 0', name='check_positive_duration'),
        db.CheckConstraint("direction IN ('long', 'short')", name='check_valid_direction'),
        db.CheckConstraint("duration_unit IN ('minute', 'hour', 'day')", name='check_valid_duration_unit'),
        db.CheckConstraint("status IN ('open', 'closed', 'liquidated')", name='check_valid_status'),
    )

    @property
    def direction_sign(self):
        return 1 if self.direction == 'long' else -1

    @property
    def expires_at(self):
        return self.open_time + duration_to_timedelta(self.duration_value, self.duration_unit)

    def time_to_expiry(self):
        """Remaining time before the position is due, or None when it is not open."""
        if self.status != 'open':
            return None
        remaining = self.expires_at - current_utc()
        return remaining if remaining > timedelta(0) else timedelta(0)

    def to_dict(self):
        ttl = self.time_to_expiry()
        return {
            'id': self.id,
            'user_id': self.user_id,
            'instrument': self.instrument,
            'category': self.category,
            'direction': self.direction,
            'market_color': self.market_color,
            'stake': self.stake,
            'amount': self.amount,
            'leverage': self.leverage,
            'lot_size': self.lot_size,
            'position_value': self.position_value,
            'margin_required': self.margin_required,
            'open_price': self.open_price,
            'current_price': self.current_price,
            'close_price': self.close_price,
            'profit': self.profit,
            'stop_loss': self.stop_loss,
            'take_profit': self.take_profit,
            'duration': {'value': self.duration_value, 'unit': self.duration_unit},
            'status': self.status,
            'close_reason': self.close_reason,
            'open_time': self.open_time.isoformat() if self.open_time else None,
            'close_time': self.close_time.isoformat() if self.close_time else None,
            'expires_at': self.expires_at.isoformat() if self.open_time else None,
            'time_to_expiry_seconds': ttl.total_seconds() if ttl is not None else 0,
        }

    def __repr__(self):
        return f'<TradePosition {self.id} {self.instrument} {self.direction} {self.status}>'


class PejeCoinTransaction(db.Model):
    """Ledger of Pejecoin movements."""
    __tablename__ = 'pejecoin_transactions'

    id = db.Column(db.Integer, primary_key=True)
    from_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)  # None for system grants
    to_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)  # None when coins leave the user
    amount = db.Column(db.Float, nullable=False)
    concept = db.Column(db.String(64), nullable=False)
    status = db.Column(db.String(10), nullable=False, default='completed')
    reference_id = db.Column(db.String(64), nullable=True, index=True)
    timestamp = db.Column(db.DateTime, nullable=False, default=current_utc)

    __table_args__ = (
        db.CheckConstraint('amount >= 0', name='check_non_negative_tx_amount'),
        db.CheckConstraint("status IN ('pending', 'completed', 'failed')", name='check_valid_tx_status'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'from_user_id': self.from_user_id,
            'to_user_id': self.to_user_id,
            'amount': self.amount,
            'concept': self.concept,
            'status': self.status,
            'reference_id': self.reference_id,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
        }


class UserActivity(db.Model):
    """Audit trail of user actions."""
    __tablename__ = 'user_activities'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    action = db.Column(db.String(64), nullable=False)
    details = db.Column(db.Text, default='{}')  # JSON string
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)
    timestamp = db.Column(db.DateTime, nullable=False, default=current_utc, index=True)

    def get_details(self):
        return json.loads(self.details) if self.details else {}

    def set_details(self, details):
        self.details = json.dumps(details or {}, default=str)

    def to_dict(self):
        return {
            'id': self.id,
            'action': self.action,
            'details': self.get_details(),
            'ip_address': self.ip_address,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
        }


class Notification(db.Model):
    __tablename__ = 'notifications'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    body = db.Column(db.Text, nullable=False)
    link = db.Column(db.String(255), nullable=False, default='/dashboard')
    is_read = db.Column(db.Boolean, nullable=False, default=False, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=current_utc)

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'body': self.body,
            'link': self.link,
            'is_read': self.is_read,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class ChatRoom(db.Model):
    __tablename__ = 'chat_rooms'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=True)
    type = db.Column(db.String(10), nullable=False, default='private')
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=current_utc)

    participants = db.relationship('ChatParticipant', backref='room', cascade='all, delete-orphan')
    messages = db.relationship('ChatMessage', backref='room', cascade='all, delete-orphan',
                               order_by='ChatMessage.created_at')

    __table_args__ = (
        db.CheckConstraint("type IN ('private', 'group', 'support')", name='check_valid_room_type'),
    )

    def participant_ids(self):
        return {p.user_id for p in self.participants}

    def to_dict(self):
        last = self.messages[-1] if self.messages else None
        return {
            'id': self.id,
            'name': self.name,
            'type': self.type,
            'participants': sorted(self.participant_ids()),
            'last_message': last.to_dict() if last else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class ChatParticipant(db.Model):
    __tablename__ = 'chat_participants'

    id = db.Column(db.Integer, primary_key=True)
    room_id = db.Column(db.Integer, db.ForeignKey('chat_rooms.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    joined_at = db.Column(db.DateTime, nullable=False, default=current_utc)

    __table_args__ = (
        db.UniqueConstraint('room_id', 'user_id', name='uq_room_participant'),
    )


class ChatMessage(db.Model):
    __tablename__ = 'chat_messages'

    id = db.Column(db.Integer, primary_key=True)
    room_id = db.Column(db.Integer, db.ForeignKey('chat_rooms.id'), nullable=False, index=True)
    sender_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    content = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=current_utc)

    def to_dict(self):
        return {
            'id': self.id,
            'room_id': self.room_id,
            'sender_id': self.sender_id,
            'content': self.content,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class MentorAssignment(db.Model):
    """Links a maestro (mentor) to the clients they supervise."""
    __tablename__ = 'mentor_assignments'

    id = db.Column(db.Integer, primary_key=True)
    mentor_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=current_utc)

    mentor = db.relationship('User', foreign_keys=[mentor_id])
    client = db.relationship('User', foreign_keys=[user_id])

    __table_args__ = (
        db.UniqueConstraint('mentor_id', 'user_id', name='uq_mentor_client'),
    )


class PositionModification(db.Model):
    """Audit record of a staff edit to an open position."""
    __tablename__ = 'position_modifications'

    id = db.Column(db.Integer, primary_key=True)
    position_id = db.Column(db.String(36), db.ForeignKey('trade_positions.id'), nullable=False, index=True)
    modified_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    modified_by_name = db.Column(db.String(160), nullable=False, default='')
    field = db.Column(db.String(32), nullable=False)
    old_value = db.Column(db.String(64), nullable=True)
    new_value = db.Column(db.String(64), nullable=True)
    reason = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=current_utc)

    def to_dict(self):
        return {
            'id': self.id,
            'position_id': self.position_id,
            'modified_by': self.modified_by,
            'modified_by_name': self.modified_by_name,
            'field': self.field,
            'old_value': self.old_value,
            'new_value': self.new_value,
            'reason': self.reason,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class WithdrawalRequest(db.Model):
    __tablename__ = 'withdrawal_requests'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    amount = db.Column(db.Float, nullable=False)
    method = db.Column(db.String(20), nullable=False)
    details = db.Column(db.Text, default='{}')  # JSON string of bank/crypto fields
    status = db.Column(db.String(10), nullable=False, default='pending', index=True)
    reviewed_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    reviewed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=current_utc)

    user = db.relationship('User', foreign_keys=[user_id])

    __table_args__ = (
        db.CheckConstraint('amount > 0', name='check_positive_withdrawal'),
        db.CheckConstraint("method IN ('bank_account', 'crypto')", name='check_valid_withdrawal_method'),
        db.CheckConstraint("status IN ('pending', 'approved', 'rejected')", name='check_valid_withdrawal_status'),
    )

    def get_details(self):
        return json.loads(self.details) if self.details else {}

    def set_details(self, details):
        self.details = json.dumps(details or {})

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'amount': self.amount,
            'method': self.method,
            'details': self.get_details(),
            'status': self.status,
            'reviewed_by': self.reviewed_by,
            'reviewed_at': self.reviewed_at.isoformat() if self.reviewed_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class LeverageSetting(db.Model):
    """Leverage applied to new positions, per market category."""
    __tablename__ = 'leverage_settings'

    id = db.Column(db.Integer, primary_key=True)
    category = db.Column(db.String(32), unique=True, nullable=False)
    leverage = db.Column(db.Float, nullable=False)
    updated_at = db.Column(db.DateTime, default=current_utc, onupdate=current_utc)

    __table_args__ = (
        db.CheckConstraint('leverage >= 1', name='check_leverage_min'),
    )

    @staticmethod
    def get_all(defaults):
        """Return {category: leverage} merging stored overrides over defaults."""
        settings = dict(defaults)
        for row in LeverageSetting.query.all():
            settings[row.category] = row.leverage
        return settings

    @staticmethod
    def get_leverage(category, defaults):
        row = LeverageSetting.query.filter_by(category=category).first()
        if row:
            return row.leverage
        return defaults.get(category)

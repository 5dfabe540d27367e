"""
Auth Service - account creation, login checks, e-mail confirmation,
two-factor authentication and the admin-approval grace period.
"""
import logging
import secrets
import smtplib
import threading
from datetime import datetime, timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional, Tuple

import pyotp
from sqlalchemy import func

from models import db, User, UserActivity, current_utc
from pejecoin_service import grant_initial_coins
from validators import UserValidator, ValidationError

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """Authentication or account operation refused."""
    status_code = 400

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class LoginRateLimiter:
    """Counts login attempts per identifier inside a sliding window."""

    def __init__(self, max_attempts: int = 5, window: int = 300):
        self.max_attempts = max_attempts
        self.window = window
        self._attempts: Dict[str, Tuple[int, datetime]] = {}
        self._lock = threading.Lock()

    def check(self, identifier: str, now: Optional[datetime] = None) -> Tuple[bool, int]:
        """Register an attempt. Returns (allowed, seconds until the window resets)."""
        now = now or datetime.now()
        key = (identifier or '').lower()

        with self._lock:
            if key in self._attempts:
                attempts, first_attempt_time = self._attempts[key]
                elapsed = (now - first_attempt_time).total_seconds()
                if elapsed < self.window:
                    if attempts >= self.max_attempts:
                        return False, int(self.window - elapsed)
                    self._attempts[key] = (attempts + 1, first_attempt_time)
                else:
                    self._attempts[key] = (1, now)
            else:
                self._attempts[key] = (1, now)

        return True, 0

    def reset(self, identifier: str):
        with self._lock:
            self._attempts.pop((identifier or '').lower(), None)

    def clear(self):
        with self._lock:
            self._attempts.clear()


def record_activity(user_id: int, action: str, details: Optional[dict] = None,
                    ip_address: Optional[str] = None, user_agent: Optional[str] = None, commit: bool = True):
    activity = UserActivity(user_id=user_id, action=action, ip_address=ip_address,
                            user_agent=(user_agent or '')[:255] or None)
    activity.set_details(details)
    db.session.add(activity)
    if commit:
        db.session.commit()
    return activity


def find_user(identifier: str) -> Optional[User]:
    """Look a user up by e-mail or username (case-insensitive)."""
    if not identifier:
        return None
    identifier = identifier.strip()
    if '@' in identifier:
        return User.query.filter(func.lower(User.email) == identifier.lower()).first()
    return User.query.filter(func.lower(User.username) == identifier.lower()).first()


# E-mail

def send_email(config, to_address: str, subject: str, body: str) -> bool:
    """Send a plain-text e-mail. Returns False when mail is not configured or fails."""
    server = config.get('MAIL_SERVER')
    if not server:
        logger.info(f"Mail not configured, skipping '{subject}' to {to_address}")
        return False

    message = MIMEMultipart()
    message['From'] = config.get('MAIL_DEFAULT_SENDER')
    message['To'] = to_address
    message['Subject'] = subject
    message.attach(MIMEText(body, 'plain'))

    try:
        with smtplib.SMTP(server, config.get('MAIL_PORT', 587), timeout=10) as smtp:
            if config.get('MAIL_USE_TLS', True):
                smtp.starttls()
            if config.get('MAIL_USERNAME'):
                smtp.login(config['MAIL_USERNAME'], config.get('MAIL_PASSWORD') or '')
            smtp.send_message(message)
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Error sending '{subject}' to {to_address}: {e}")
        return False

    logger.info(f"Sent '{subject}' to {to_address}")
    return True


def issue_confirmation_token(user: User, hours: int = 24) -> str:
    user.confirmation_token = secrets.token_urlsafe(32)
    user.confirmation_expires_at = current_utc() + timedelta(hours=hours)
    return user.confirmation_token


def send_confirmation_email(config, user: User) -> bool:
    link = f"{config.get('APP_BASE_URL', '').rstrip('/')}/confirm-email?token={user.confirmation_token}"
    body = (
        f"Hello {user.first_name or user.username},\n\n"
        f"Confirm your BitPulse account by opening the link below:\n\n{link}\n\n"
        f"The link expires in {config.get('EMAIL_CONFIRMATION_HOURS', 24)} hours."
    )
    return send_email(config, user.email, 'Confirm your BitPulse account', body)


def confirm_email(token: str) -> User:
    if not token:
        raise AuthError('Confirmation token is required')
    user = User.query.filter_by(confirmation_token=token).first()
    if user is None:
        raise AuthError('Invalid confirmation token', 404)
    if user.confirmation_expires_at and user.confirmation_expires_at < current_utc():
        raise AuthError('Confirmation token has expired', 410)

    user.email_confirmed = True
    user.confirmation_token = None
    user.confirmation_expires_at = None
    record_activity(user.id, 'email_confirmed', commit=False)
    db.session.commit()
    logger.info(f"User {user.id} confirmed e-mail {user.email}")
    return user


def resend_confirmation(config, email: str) -> bool:
    """Issue a fresh confirmation token. Unknown or confirmed addresses are a silent no-op."""
    user = User.query.filter_by(email=UserValidator.validate_email(email)).first()
    if user is None or user.email_confirmed:
        return False
    issue_confirmation_token(user, config.get('EMAIL_CONFIRMATION_HOURS', 24))
    db.session.commit()
    send_confirmation_email(config, user)
    return True


# Accounts

def register_user(config, data: Dict[str, Any], role: str = 'cliente') -> User:
    """Create an account with its initial Pejecoin grant and a confirmation token."""
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')

    email = UserValidator.validate_email(data.get('email'))
    username = UserValidator.validate_username(data.get('username'))
    password = UserValidator.validate_password(data.get('password'))
    first_name = UserValidator.validate_name(data.get('first_name') or data.get('firstName') or username, 'First name')
    last_name = data.get('last_name') or data.get('lastName') or ''
    if last_name:
        last_name = UserValidator.validate_name(last_name, 'Last name')
    role = UserValidator.validate_role(role)

    if User.query.filter(func.lower(User.email) == email).first():
        raise AuthError('Email already registered', 409)
    if User.query.filter(func.lower(User.username) == username.lower()).first():
        raise AuthError('Username already exists', 409)

    user = User(email=email, username=username, first_name=first_name, last_name=last_name, role=role)
    user.set_password(password)
    issue_confirmation_token(user, config.get('EMAIL_CONFIRMATION_HOURS', 24))

    if config.get('ADMIN_APPROVAL_REQUIRED') and role == 'cliente':
        start_grace_period(user, config.get('ADMIN_APPROVAL_GRACE_DAYS', 7))

    try:
        db.session.add(user)
        db.session.flush()
        grant_initial_coins(user, float(config.get('INITIAL_PEJECOINS', 10000)))
        record_activity(user.id, 'user_registered', {'email': email, 'username': username}, commit=False)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(f"Registered user {user.id} ({username})")
    send_confirmation_email(config, user)
    return user


def authenticate(identifier: str, password: str) -> User:
    user = find_user(identifier)
    if user is None or not password or not user.check_password(password):
        raise AuthError('Invalid username or password', 401)
    if not user.is_active:
        raise AuthError('Account is disabled', 403)
    return user


def update_profile(user: User, data: Dict[str, Any]) -> User:
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')

    changes = {}
    if 'first_name' in data:
        changes['first_name'] = UserValidator.validate_name(data['first_name'], 'First name')
    if 'last_name' in data:
        changes['last_name'] = UserValidator.validate_name(data['last_name'], 'Last name')
    if 'username' in data and data['username'] != user.username:
        username = UserValidator.validate_username(data['username'])
        existing = User.query.filter(func.lower(User.username) == username.lower(), User.id != user.id).first()
        if existing:
            raise AuthError('Username already exists', 409)
        changes['username'] = username
    if not changes:
        raise ValidationError('No profile fields to update')

    for field, value in changes.items():
        setattr(user, field, value)
    record_activity(user.id, 'profile_updated', {'fields': sorted(changes)}, commit=False)
    db.session.commit()
    return user


def change_password(user: User, current_password: str, new_password: str):
    if not current_password or not user.check_password(current_password):
        raise AuthError('Current password is incorrect', 401)
    new_password = UserValidator.validate_password(new_password)
    if user.check_password(new_password):
        raise ValidationError('New password must be different from the current one')
    user.set_password(new_password)
    record_activity(user.id, 'password_changed', commit=False)
    db.session.commit()
    logger.info(f"User {user.id} changed password")


# Two-factor authentication

def verify_totp(secret: Optional[str], code: Any) -> bool:
    if not secret or code is None:
        return False
    code = str(code).strip().replace(' ', '')
    if not code.isdigit():
        return False
    return pyotp.TOTP(secret).verify(code, valid_window=1)


def setup_two_factor(config, user: User) -> Dict[str, str]:
    """Generate a new (not yet enabled) TOTP secret for the user."""
    if user.two_factor_enabled:
        raise AuthError('Two-factor authentication is already enabled', 409)
    secret = pyotp.random_base32()
    user.two_factor_secret = secret
    db.session.commit()
    uri = pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name=config.get('TOTP_ISSUER', 'BitPulse'))
    return {'secret': secret, 'provisioning_uri': uri}


def enable_two_factor(user: User, code: Any):
    if not user.two_factor_secret:
        raise AuthError('Two-factor setup has not been started')
    if not verify_totp(user.two_factor_secret, code):
        raise AuthError('Invalid verification code', 401)
    user.two_factor_enabled = True
    record_activity(user.id, 'two_factor_enabled', commit=False)
    db.session.commit()
    logger.info(f"User {user.id} enabled two-factor authentication")


def disable_two_factor(user: User, code: Any):
    if not user.two_factor_enabled:
        return
    if not verify_totp(user.two_factor_secret, code):
        raise AuthError('Invalid verification code', 401)
    user.two_factor_enabled = False
    user.two_factor_secret = None
    record_activity(user.id, 'two_factor_disabled', commit=False)
    db.session.commit()
    logger.info(f"User {user.id} disabled two-factor authentication")


# Admin approval grace period

def start_grace_period(user: User, days: int = 7):
    now = current_utc()
    user.admin_approval_required = True
    user.admin_approved = False
    user.admin_approval_requested_at = now
    user.admin_approval_expires_at = now + timedelta(days=days)


def get_grace_period_status(user: User, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or current_utc()
    status = {
        'approval_required': bool(user.admin_approval_required),
        'approved': bool(user.admin_approved),
        'expires_at': user.admin_approval_expires_at.isoformat() if user.admin_approval_expires_at else None,
        'expired': False,
        'days_remaining': None,
        'hours_remaining': None,
    }
    if not user.admin_approval_required or user.admin_approved or not user.admin_approval_expires_at:
        return status

    remaining = user.admin_approval_expires_at - now
    if remaining <= timedelta(0):
        status.update({'expired': True, 'days_remaining': 0, 'hours_remaining': 0})
    else:
        status['days_remaining'] = remaining.days
        status['hours_remaining'] = remaining.seconds // 3600
    return status

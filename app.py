"""
BitPulse - A simulated trading web application played with Pejecoins.
"""
from flask import Flask, render_template, jsonify, request, redirect, url_for, flash, session
from flask_socketio import SocketIO, emit, join_room
from flask_login import LoginManager, login_user, login_required, logout_user, current_user
from flask_wtf import FlaskForm
from wtforms import StringField, PasswordField, SubmitField
from wtforms.validators import DataRequired, Length, EqualTo, Optional as OptionalField
from wtforms.validators import ValidationError as FormValidationError
from werkzeug.exceptions import HTTPException
from functools import wraps
import os
import logging
from sqlalchemy import func, or_
from config import config
from models import (db, User, TradePosition, UserActivity, MentorAssignment, WithdrawalRequest,
                    LeverageSetting, current_utc)
from price_client import HybridPriceService
from position_manager import PositionManager, PositionError
from scheduler import AutoCloseScheduler
from notification_service import NotificationService
from chat_service import ChatService, ChatError
import auth_service
from auth_service import AuthError, LoginRateLimiter
import pejecoin_service
from pejecoin_service import PejecoinError
from validators import (
    ValidationError as InputValidationError,
    validate_new_position,
    PositionValidator,
    UserValidator,
    QueryValidator,
)

# Configure logging
if os.environ.get('FLASK_ENV') in ('production', 'testing'):
    # Production logging - only to stdout
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler()]
    )
else:
    # Development logging - to file and stdout
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler('bitpulse.log'),
            logging.StreamHandler()
        ]
    )
logger = logging.getLogger(__name__)

login_manager = LoginManager()


def create_app(config_name='default'):
    """Application factory pattern."""
    app = Flask(__name__)

    # Load configuration
    app.config.from_object(config[config_name])

    # Initialize extensions
    db.init_app(app)
    login_manager.init_app(app)

    return app


# Create Flask app
config_name = os.environ.get('FLASK_ENV', 'development')
app = create_app(config_name if config_name in config else 'default')
socketio = SocketIO(app)
login_manager.login_view = 'login'  # type: ignore[assignment]

# Services
price_service = HybridPriceService(
    api_url=app.config.get('PRICE_SERVICE_URL'),
    use_binance=app.config.get('USE_BINANCE', True),
    binance_url=app.config.get('BINANCE_API_URL', 'https://api.binance.com'),
    timeout=app.config.get('PRICE_REQUEST_TIMEOUT', 5),
)
notification_service = NotificationService(socketio)
position_manager = PositionManager(app.config, price_service, socketio, notification_service)
chat_service = ChatService(socketio)
scheduler = AutoCloseScheduler(app, position_manager, price_service, socketio)
login_limiter = LoginRateLimiter(
    app.config.get('LOGIN_RATE_LIMIT_ATTEMPTS', 5),
    app.config.get('LOGIN_RATE_LIMIT_WINDOW', 300),
)


def validate_username(form, field):
    """WTForms adapter for the username rules."""
    try:
        UserValidator.validate_username(field.data)
    except InputValidationError as e:
        raise FormValidationError(str(e))


def validate_email_address(form, field):
    try:
        UserValidator.validate_email(field.data)
    except InputValidationError as e:
        raise FormValidationError(str(e))


def validate_password_strength(form, field):
    try:
        UserValidator.validate_password(field.data or '')
    except InputValidationError as e:
        raise FormValidationError(str(e))


class LoginForm(FlaskForm):
    identifier = StringField('Email or username', validators=[DataRequired(), Length(min=3, max=255)])
    password = PasswordField('Password', validators=[DataRequired()])
    otp_code = StringField('Authentication code', validators=[OptionalField(), Length(min=6, max=8)])
    submit = SubmitField('Login')


class RegisterForm(FlaskForm):
    email = StringField('Email', validators=[DataRequired(), Length(max=255), validate_email_address])
    username = StringField('Username', validators=[
        DataRequired(),
        Length(min=3, max=20, message='Username must be between 3 and 20 characters.'),
        validate_username
    ])
    first_name = StringField('First name', validators=[DataRequired(), Length(max=80)])
    last_name = StringField('Last name', validators=[OptionalField(), Length(max=80)])
    password = PasswordField('Password', validators=[
        DataRequired(),
        Length(min=8, message='Password must be at least 8 characters long.'),
        validate_password_strength
    ])
    password2 = PasswordField('Confirm Password', validators=[
        DataRequired(),
        EqualTo('password', message='Passwords must match.')
    ])
    submit = SubmitField('Register')


@login_manager.user_loader
def load_user(user_id):
    try:
        return db.session.get(User, int(user_id))
    except (TypeError, ValueError):
        return None


@login_manager.unauthorized_handler
def unauthorized():
    """Handle unauthorized access - return JSON for AJAX requests, redirect for browser requests."""
    if request.path.startswith('/api/') or request.headers.get('X-Requested-With') == 'XMLHttpRequest':
        return api_error('Authentication required', 401)
    return redirect(url_for('login'))


def api_response(data=None, message='', status=200):
    return jsonify({'success': True, 'message': message, 'data': data}), status


def api_error(message, status=400, data=None):
    return jsonify({'success': False, 'message': message, 'data': data}), status


def get_json_body():
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def role_required(*roles):
    """Restrict an API route to users with one of ROLES."""
    def decorator(view):
        @wraps(view)
        @login_required
        def wrapped(*args, **kwargs):
            if current_user.role not in roles:
                logger.warning(f"User {current_user.id} ({current_user.role}) denied access to {request.path}")
                return api_error('Forbidden', 403)
            return view(*args, **kwargs)
        return wrapped
    return decorator


def log_activity(action, details=None, user_id=None):
    return auth_service.record_activity(
        user_id or current_user.id, action, details,
        ip_address=request.remote_addr,
        user_agent=request.headers.get('User-Agent'),
    )


@app.errorhandler(InputValidationError)
def handle_validation_error(e):
    return api_error(str(e), 400)


@app.errorhandler(PositionError)
@app.errorhandler(PejecoinError)
@app.errorhandler(AuthError)
@app.errorhandler(ChatError)
def handle_domain_error(e):
    return api_error(e.message, e.status_code)


@app.errorhandler(Exception)
def handle_unexpected_error(e):
    if isinstance(e, HTTPException):
        if request.path.startswith('/api/'):
            return api_error(e.description, e.code)
        return e
    db.session.rollback()
    logger.error(f"Unhandled error on {request.method} {request.path}: {e}", exc_info=True)
    return api_error('Internal server error', 500)


# Pages

@app.route('/')
@login_required
def index():
    return render_template('index.html', user=current_user)


@app.route('/dashboard')
@login_required
def dashboard():
    return render_template('index.html', user=current_user)


def complete_login(user):
    """Open the session for an authenticated user."""
    login_user(user)
    user.last_login = current_utc()
    log_activity('login', user_id=user.id)
    login_limiter.reset(user.username)
    login_limiter.reset(user.email)
    logger.info(f"Successful login: {user.username}")


@app.route('/login', methods=['GET', 'POST'])
def login():
    if current_user.is_authenticated:
        return redirect(url_for('index'))

    form = LoginForm()
    if form.validate_on_submit():
        identifier = form.identifier.data

        allowed, remaining_time = login_limiter.check(identifier)
        if not allowed:
            flash(f'Too many login attempts. Please try again in {remaining_time} seconds.')
            logger.warning(f"Rate limit exceeded for user: {identifier}")
            return render_template('login.html', form=form)

        try:
            user = auth_service.authenticate(identifier, form.password.data)
        except AuthError as e:
            flash(e.message)
            logger.warning(f"Failed login attempt for user: {identifier}")
            return render_template('login.html', form=form)

        if user.two_factor_enabled and not auth_service.verify_totp(user.two_factor_secret, form.otp_code.data):
            flash('Enter the code from your authenticator app')
            return render_template('login.html', form=form, requires_2fa=True)

        complete_login(user)
        return redirect(url_for('index'))

    return render_template('login.html', form=form)


@app.route('/register', methods=['GET', 'POST'])
def register():
    if current_user.is_authenticated:
        return redirect(url_for('index'))

    form = RegisterForm()
    if form.validate_on_submit():
        try:
            user = auth_service.register_user(app.config, {
                'email': form.email.data,
                'username': form.username.data,
                'first_name': form.first_name.data,
                'last_name': form.last_name.data,
                'password': form.password.data,
            })
        except (InputValidationError, AuthError) as e:
            flash(str(e))
            return render_template('register.html', form=form)

        login_user(user)
        flash('Check your inbox to confirm your e-mail address.')
        return redirect(url_for('index'))

    return render_template('register.html', form=form)


@app.route('/confirm-email')
def confirm_email_page():
    try:
        auth_service.confirm_email(request.args.get('token', ''))
        flash('Your e-mail address has been confirmed.')
    except AuthError as e:
        flash(e.message)
    return redirect(url_for('login'))


@app.route('/logout')
@login_required
def logout():
    logout_user()
    return redirect(url_for('login'))


# Auth API

@app.route('/api/auth/register', methods=['POST'])
def api_register():
    user = auth_service.register_user(app.config, get_json_body())
    return api_response(user.to_dict(include_private=True), 'Account created. Check your e-mail to confirm it.', 201)


@app.route('/api/auth/confirm', methods=['GET', 'POST'])
def api_confirm_email():
    token = request.args.get('token') or get_json_body().get('token')
    user = auth_service.confirm_email(token)
    return api_response({'email': user.email, 'email_confirmed': True}, 'Email confirmed')


@app.route('/api/auth/resend-confirmation', methods=['POST'])
def api_resend_confirmation():
    auth_service.resend_confirmation(app.config, get_json_body().get('email'))
    # Same answer whether or not the address exists
    return api_response(None, 'If the account exists and is unconfirmed, a new e-mail has been sent')


@app.route('/api/auth/login', methods=['POST'])
def api_login():
    data = get_json_body()
    identifier = (data.get('identifier') or data.get('email') or data.get('username') or '').strip()
    if not identifier or not data.get('password'):
        return api_error('Email/username and password are required', 400)

    allowed, remaining_time = login_limiter.check(identifier)
    if not allowed:
        logger.warning(f"Rate limit exceeded for user: {identifier}")
        return api_error(f'Too many login attempts. Please try again in {remaining_time} seconds.', 429,
                         {'retry_after': remaining_time})

    try:
        user = auth_service.authenticate(identifier, data.get('password'))
    except AuthError:
        logger.warning(f"Failed login attempt for user: {identifier}")
        raise

    if user.two_factor_enabled:
        session['pending_2fa_user_id'] = user.id
        return api_response({'requires_2fa': True}, 'Two-factor code required')

    complete_login(user)
    return api_response({'requires_2fa': False, 'user': user.to_dict(include_private=True)}, 'Logged in')


@app.route('/api/auth/verify-2fa', methods=['POST'])
def api_verify_2fa():
    user_id = session.get('pending_2fa_user_id')
    user = db.session.get(User, user_id) if user_id else None
    if user is None:
        return api_error('No login awaiting two-factor verification', 400)

    if not auth_service.verify_totp(user.two_factor_secret, get_json_body().get('code')):
        logger.warning(f"Invalid two-factor code for user {user.id}")
        return api_error('Invalid verification code', 401)

    session.pop('pending_2fa_user_id', None)
    complete_login(user)
    return api_response({'user': user.to_dict(include_private=True)}, 'Logged in')


@app.route('/api/auth/logout', methods=['POST'])
@login_required
def api_logout():
    log_activity('logout')
    logout_user()
    return api_response(None, 'Logged out')


@app.route('/api/auth/2fa/setup', methods=['POST'])
@login_required
def api_2fa_setup():
    return api_response(auth_service.setup_two_factor(app.config, current_user), 'Scan the code and confirm it')


@app.route('/api/auth/2fa/enable', methods=['POST'])
@login_required
def api_2fa_enable():
    auth_service.enable_two_factor(current_user, get_json_body().get('code'))
    return api_response({'two_factor_enabled': True}, 'Two-factor authentication enabled')


@app.route('/api/auth/2fa/disable', methods=['POST'])
@login_required
def api_2fa_disable():
    auth_service.disable_two_factor(current_user, get_json_body().get('code'))
    return api_response({'two_factor_enabled': False}, 'Two-factor authentication disabled')


@app.route('/api/auth/grace-period', methods=['GET'])
@login_required
def api_grace_period():
    return api_response(auth_service.get_grace_period_status(current_user))


# Profile

@app.route('/api/profile', methods=['GET'])
@login_required
def get_profile():
    data = current_user.to_dict(include_private=True)
    data['open_positions'] = current_user.positions.filter_by(status='open').count()
    data['unread_notifications'] = notification_service.unread_count(current_user.id)
    return api_response(data)


@app.route('/api/profile', methods=['PUT'])
@login_required
def update_profile():
    user = auth_service.update_profile(current_user, get_json_body())
    return api_response(user.to_dict(include_private=True), 'Profile updated')


@app.route('/api/profile/history', methods=['GET'])
@login_required
def get_profile_history():
    limit = QueryValidator.validate_limit(request.args.get('limit'), max_limit=200, default=50)
    offset = QueryValidator.validate_offset(request.args.get('offset'))
    query = UserActivity.query.filter_by(user_id=current_user.id)
    total = query.count()
    activities = query.order_by(UserActivity.timestamp.desc(), UserActivity.id.desc()).offset(offset).limit(limit).all()
    return api_response({'activities': [a.to_dict() for a in activities], 'total': total,
                         'limit': limit, 'offset': offset})


@app.route('/api/profile/change-password', methods=['POST'])
@login_required
def api_change_password():
    data = get_json_body()
    auth_service.change_password(current_user, data.get('current_password'), data.get('new_password'))
    return api_response(None, 'Password changed')


# Positions

@app.route('/api/positions', methods=['GET'])
@login_required
def list_positions():
    status = request.args.get('status', 'open')
    limit = QueryValidator.validate_limit(request.args.get('limit'), max_limit=500, default=100)
    query = TradePosition.query.filter_by(user_id=current_user.id)
    if status != 'all':
        if status not in ('open', 'closed', 'liquidated'):
            return api_error('Status must be open, closed, liquidated or all', 400)
        query = query.filter_by(status=status)
    positions = query.order_by(TradePosition.open_time.desc()).limit(limit).all()
    return api_response([p.to_dict() for p in positions])


@app.route('/api/positions', methods=['POST'])
@login_required
def open_position():
    data = validate_new_position(get_json_body())
    position = position_manager.open_position(current_user, data)
    return api_response(position.to_dict(), 'Position opened', 201)


def get_owned_position(position_id):
    position = TradePosition.query.filter_by(id=position_id, user_id=current_user.id).first()
    if position is None:
        raise PositionError('Position not found', 404)
    return position


@app.route('/api/positions/<position_id>', methods=['GET'])
@login_required
def get_position(position_id):
    return api_response(get_owned_position(position_id).to_dict())


@app.route('/api/positions/<position_id>/close', methods=['POST'])
@login_required
def close_position(position_id):
    position = get_owned_position(position_id)
    if position.status != 'open':
        return api_error('Position is already closed', 409)

    result = position_manager.close_position(position, reason='manual')
    if result is None:
        return api_error('Position is already closed', 409)
    return api_response(result._asdict(), 'Position closed')


@app.route('/api/positions/<position_id>/check-expiry', methods=['POST'])
@login_required
def check_position_expiry(position_id):
    get_owned_position(position_id)
    result = position_manager.check_specific_position(position_id)
    if result is None:
        return api_response({'closed': False}, 'Position has not expired')
    return api_response({'closed': True, **result._asdict()}, 'Position closed on expiry')


# Prices

@app.route('/api/prices', methods=['GET'])
@login_required
def get_prices():
    symbols = [s for s in request.args.get('symbols', '').split(',') if s.strip()]
    if symbols:
        return api_response(price_service.get_prices([s.strip() for s in symbols[:50]]))
    return api_response(price_service.get_current_prices())


@app.route('/api/prices/<path:instrument>', methods=['GET'])
@login_required
def get_instrument_price(instrument):
    instrument = PositionValidator.validate_instrument(instrument)
    price = price_service.get_price(instrument)
    return api_response({'instrument': instrument, 'price': price, 'source': price_service.last_source})


# Pejecoins

@app.route('/api/pejecoins/balance', methods=['GET'])
@login_required
def get_balance():
    return api_response({'pejecoins': pejecoin_service.get_balance(current_user.id)})


@app.route('/api/pejecoins/transactions', methods=['GET'])
@login_required
def get_pejecoin_transactions():
    limit = QueryValidator.validate_limit(request.args.get('limit'), max_limit=500, default=50)
    offset = QueryValidator.validate_offset(request.args.get('offset'))
    transactions = pejecoin_service.get_transactions(current_user.id, limit, offset)
    return api_response([t.to_dict() for t in transactions])


@app.route('/api/pejecoins/transfer', methods=['POST'])
@login_required
def transfer_pejecoins():
    data = get_json_body()
    to_user_id = QueryValidator.validate_user_id(data.get('to_user_id'))
    transaction = pejecoin_service.transfer_coins(current_user.id, to_user_id, data.get('amount'),
                                                  data.get('concept') or 'transfer')
    notification_service.create(to_user_id, 'Pejecoins received',
                                f"{current_user.username} sent you {transaction.amount:.2f} Pejecoins")
    return api_response(transaction.to_dict(), 'Transfer completed', 201)


# Notifications

@app.route('/api/notifications', methods=['GET'])
@login_required
def list_notifications():
    if request.args.get('unread') in ('1', 'true'):
        notifications = notification_service.get_unread(current_user.id)
    else:
        limit = QueryValidator.validate_limit(request.args.get('limit'), max_limit=100, default=20)
        notifications = notification_service.get_recent(current_user.id, limit)
    return api_response({
        'notifications': [n.to_dict() for n in notifications],
        'unread_count': notification_service.unread_count(current_user.id),
    })


@app.route('/api/notifications/<int:notification_id>/read', methods=['POST'])
@login_required
def mark_notification_read(notification_id):
    if not notification_service.mark_read(current_user.id, notification_id):
        return api_error('Notification not found', 404)
    return api_response(None, 'Notification marked as read')


@app.route('/api/notifications/read-all', methods=['POST'])
@login_required
def mark_all_notifications_read():
    count = notification_service.mark_all_read(current_user.id)
    return api_response({'updated': count}, 'All notifications marked as read')


@app.route('/api/notifications/<int:notification_id>', methods=['DELETE'])
@login_required
def delete_notification(notification_id):
    if not notification_service.delete(current_user.id, notification_id):
        return api_error('Notification not found', 404)
    return api_response(None, 'Notification deleted')


# Chat

@app.route('/api/chat/rooms', methods=['GET'])
@login_required
def list_chat_rooms():
    return api_response([room.to_dict() for room in chat_service.get_rooms(current_user.id)])


@app.route('/api/chat/rooms/private', methods=['POST'])
@login_required
def open_private_chat():
    other_id = QueryValidator.validate_user_id(get_json_body().get('user_id'))
    room = chat_service.get_or_create_private_room(current_user.id, other_id)
    return api_response(room.to_dict())


@app.route('/api/chat/rooms/group', methods=['POST'])
@login_required
def create_group_chat():
    data = get_json_body()
    room_type = data.get('type', 'group')
    if room_type == 'support' and not current_user.is_staff():
        return api_error('Forbidden', 403)
    room = chat_service.create_group(current_user.id, data.get('name'), data.get('member_ids') or [], room_type)
    return api_response(room.to_dict(), 'Chat room created', 201)


@app.route('/api/chat/rooms/<int:room_id>/participants', methods=['POST'])
@login_required
def add_chat_participant(room_id):
    user_id = QueryValidator.validate_user_id(get_json_body().get('user_id'))
    room = chat_service.add_participant(current_user.id, room_id, user_id)
    return api_response(room.to_dict(), 'Participant added')


@app.route('/api/chat/rooms/<int:room_id>/messages', methods=['GET'])
@login_required
def list_chat_messages(room_id):
    limit = QueryValidator.validate_limit(request.args.get('limit'), max_limit=200, default=50)
    before_id = request.args.get('before_id', type=int)
    messages = chat_service.get_messages(current_user.id, room_id, limit, before_id)
    return api_response([m.to_dict() for m in messages])


@app.route('/api/chat/rooms/<int:room_id>/messages', methods=['POST'])
@login_required
def send_chat_message(room_id):
    message = chat_service.send_message(current_user.id, room_id, get_json_body().get('content'))
    return api_response(message.to_dict(), 'Message sent', 201)


# Withdrawals

@app.route('/api/withdrawals', methods=['GET'])
@login_required
def list_withdrawals():
    withdrawals = (WithdrawalRequest.query.filter_by(user_id=current_user.id)
                   .order_by(WithdrawalRequest.created_at.desc()).all())
    return api_response([w.to_dict() for w in withdrawals])


@app.route('/api/withdrawals', methods=['POST'])
@login_required
def create_withdrawal():
    data = get_json_body()
    withdrawal = pejecoin_service.create_withdrawal(current_user, data.get('amount'), data.get('method'),
                                                    data.get('details'))
    return api_response(withdrawal.to_dict(), 'Withdrawal request submitted', 201)


# Admin

@app.route('/api/admin/users', methods=['GET'])
@role_required('admin')
def admin_list_users():
    limit = QueryValidator.validate_limit(request.args.get('limit'), max_limit=500, default=50)
    offset = QueryValidator.validate_offset(request.args.get('offset'))
    query = User.query
    search = (request.args.get('search') or '').strip()
    if search:
        pattern = f'%{search.lower()}%'
        query = query.filter(or_(func.lower(User.email).like(pattern), func.lower(User.username).like(pattern),
                                 func.lower(User.first_name).like(pattern), func.lower(User.last_name).like(pattern)))
    role = request.args.get('role')
    if role:
        query = query.filter_by(role=UserValidator.validate_role(role))
    total = query.count()
    users = query.order_by(User.created_at.desc(), User.id.desc()).offset(offset).limit(limit).all()
    return api_response({'users': [u.to_dict(include_private=True) for u in users], 'total': total})


@app.route('/api/admin/users/<int:user_id>', methods=['GET'])
@role_required('admin')
def admin_get_user(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        return api_error('User not found', 404)
    data = user.to_dict(include_private=True)
    data['positions'] = [p.to_dict() for p in user.positions.order_by(TradePosition.open_time.desc()).limit(50)]
    data['transactions'] = [t.to_dict() for t in pejecoin_service.get_transactions(user.id, 50)]
    data['activities'] = [a.to_dict() for a in user.activities.order_by(UserActivity.timestamp.desc()).limit(50)]
    return api_response(data)


@app.route('/api/admin/users/<int:user_id>', methods=['PUT'])
@role_required('admin')
def admin_update_user(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        return api_error('User not found', 404)
    data = get_json_body()
    changes = {}
    if 'role' in data:
        changes['role'] = UserValidator.validate_role(data['role'])
    if 'is_active' in data:
        if not isinstance(data['is_active'], bool):
            return api_error('is_active must be a boolean', 400)
        if user.id == current_user.id and not data['is_active']:
            return api_error('You cannot deactivate your own account', 400)
        changes['is_active'] = data['is_active']
    if 'admin_approved' in data:
        if not isinstance(data['admin_approved'], bool):
            return api_error('admin_approved must be a boolean', 400)
        changes['admin_approved'] = data['admin_approved']
    if not changes:
        return api_error('No changes provided', 400)

    for field, value in changes.items():
        setattr(user, field, value)
    log_activity('admin_user_updated', {'user_id': user.id, 'changes': changes})
    logger.info(f"Admin {current_user.id} updated user {user.id}: {changes}")
    return api_response(user.to_dict(include_private=True), 'User updated')


@app.route('/api/admin/stats', methods=['GET'])
@role_required('admin')
def admin_stats():
    role_counts = dict(db.session.query(User.role, func.count(User.id)).group_by(User.role).all())
    status_counts = dict(db.session.query(TradePosition.status, func.count(TradePosition.id))
                         .group_by(TradePosition.status).all())
    total_pejecoins = db.session.query(func.coalesce(func.sum(User.pejecoins), 0.0)).scalar()
    realized_profit = db.session.query(func.coalesce(func.sum(TradePosition.profit), 0.0)).filter(
        TradePosition.status == 'closed').scalar()
    return api_response({
        'users': {'total': sum(role_counts.values()), 'by_role': role_counts,
                  'active': User.query.filter_by(is_active=True).count()},
        'positions': {'by_status': status_counts, 'realized_profit': round(realized_profit or 0.0, 2)},
        'pejecoins_in_circulation': round(total_pejecoins or 0.0, 2),
        'pending_withdrawals': WithdrawalRequest.query.filter_by(status='pending').count(),
        'auto_close': position_manager.get_auto_close_summary(),
        'scheduler': scheduler.get_status(),
    })


def assigned_client_ids(mentor_id):
    return [a.user_id for a in MentorAssignment.query.filter_by(mentor_id=mentor_id).all()]


@app.route('/api/admin/positions', methods=['GET'])
@role_required('admin', 'maestro')
def admin_list_positions():
    limit = QueryValidator.validate_limit(request.args.get('limit'), max_limit=1000, default=200)
    query = TradePosition.query
    status = request.args.get('status')
    if status:
        query = query.filter_by(status=status)
    if request.args.get('user_id'):
        query = query.filter_by(user_id=QueryValidator.validate_user_id(request.args.get('user_id')))
    if current_user.role == 'maestro':
        query = query.filter(TradePosition.user_id.in_(assigned_client_ids(current_user.id)))
    positions = query.order_by(TradePosition.open_time.desc()).limit(limit).all()
    return api_response([p.to_dict() for p in positions])


@app.route('/api/admin/positions/<position_id>', methods=['PUT'])
@role_required('admin', 'maestro')
def admin_modify_position(position_id):
    data = get_json_body()
    reason = data.pop('reason', None)
    changes = data.pop('changes', None) or data
    position = position_manager.modify_position(current_user, position_id, changes, reason)
    return api_response(position.to_dict(), 'Position modified')


@app.route('/api/admin/positions/<position_id>/modifications', methods=['GET'])
@role_required('admin', 'maestro')
def admin_position_modifications(position_id):
    position = db.session.get(TradePosition, position_id)
    if position is None:
        return api_error('Position not found', 404)
    if not position_manager.can_modify(current_user, position):
        return api_error('Forbidden', 403)
    return api_response([m.to_dict() for m in position.modifications])


@app.route('/api/admin/assigned-clients', methods=['GET'])
@role_required('admin', 'maestro')
def admin_assigned_clients():
    mentor_id = current_user.id
    if current_user.role == 'admin' and request.args.get('mentor_id'):
        mentor_id = QueryValidator.validate_user_id(request.args.get('mentor_id'))
    clients = User.query.filter(User.id.in_(assigned_client_ids(mentor_id))).order_by(User.username).all()
    payload = []
    for client in clients:
        data = client.to_dict()
        data['open_positions'] = client.positions.filter_by(status='open').count()
        payload.append(data)
    return api_response(payload)


@app.route('/api/admin/assignments', methods=['POST'])
@role_required('admin')
def admin_assign_mentor():
    data = get_json_body()
    mentor = db.session.get(User, QueryValidator.validate_user_id(data.get('mentor_id')))
    client = db.session.get(User, QueryValidator.validate_user_id(data.get('user_id')))
    if mentor is None or client is None:
        return api_error('User not found', 404)
    if mentor.role != 'maestro':
        return api_error('Mentor must have the maestro role', 400)
    if MentorAssignment.query.filter_by(mentor_id=mentor.id, user_id=client.id).first():
        return api_error('Client is already assigned to this mentor', 409)
    db.session.add(MentorAssignment(mentor_id=mentor.id, user_id=client.id))
    db.session.commit()
    logger.info(f"Admin {current_user.id} assigned client {client.id} to mentor {mentor.id}")
    return api_response({'mentor_id': mentor.id, 'user_id': client.id}, 'Client assigned', 201)


@app.route('/api/admin/leverage', methods=['GET'])
@role_required('admin')
def admin_get_leverage():
    return api_response(LeverageSetting.get_all(app.config['DEFAULT_LEVERAGE']))


@app.route('/api/admin/leverage', methods=['PUT'])
@role_required('admin')
def admin_update_leverage():
    data = get_json_body()
    settings = data.get('settings', data)
    if not isinstance(settings, dict) or not settings:
        return api_error('Provide a {category: leverage} mapping', 400)

    validated = {}
    for category, leverage in settings.items():
        if category not in app.config['DEFAULT_LEVERAGE']:
            return api_error(f'Unknown category: {category}', 400)
        validated[category] = float(PositionValidator.validate_leverage(leverage))

    for category, leverage in validated.items():
        row = LeverageSetting.query.filter_by(category=category).first()
        if row is None:
            db.session.add(LeverageSetting(category=category, leverage=leverage))
        else:
            row.leverage = leverage
    log_activity('leverage_updated', validated)
    logger.info(f"Admin {current_user.id} updated leverage settings: {validated}")
    return api_response(LeverageSetting.get_all(app.config['DEFAULT_LEVERAGE']), 'Leverage updated')


@app.route('/api/admin/withdrawals', methods=['GET'])
@role_required('admin')
def admin_list_withdrawals():
    query = WithdrawalRequest.query
    status = request.args.get('status')
    if status:
        query = query.filter_by(status=status)
    withdrawals = query.order_by(WithdrawalRequest.created_at.desc()).all()
    return api_response([{**w.to_dict(), 'username': w.user.username} for w in withdrawals])


@app.route('/api/admin/withdrawals/<int:withdrawal_id>/review', methods=['POST'])
@role_required('admin')
def admin_review_withdrawal(withdrawal_id):
    action = get_json_body().get('action')
    if action not in ('approve', 'reject'):
        return api_error("Action must be 'approve' or 'reject'", 400)
    withdrawal = pejecoin_service.review_withdrawal(current_user, withdrawal_id, action == 'approve')
    notification_service.create(
        withdrawal.user_id,
        f'Withdrawal {withdrawal.status}',
        f'Your withdrawal of {withdrawal.amount:.2f} Pejecoins was {withdrawal.status}.',
    )
    return api_response(withdrawal.to_dict(), f'Withdrawal {withdrawal.status}')


@app.route('/api/admin/pejecoins/assign', methods=['POST'])
@role_required('admin')
def admin_assign_pejecoins():
    data = get_json_body()
    user_id = QueryValidator.validate_user_id(data.get('user_id'))
    transaction = pejecoin_service.assign_coins(current_user, user_id, data.get('amount'),
                                                data.get('concept') or 'admin_assign')
    notification_service.create(user_id, 'Pejecoins credited',
                                f'{transaction.amount:.2f} Pejecoins were added to your balance.')
    return api_response(transaction.to_dict(), 'Pejecoins assigned', 201)


@app.route('/api/admin/auto-close', methods=['GET'])
@role_required('admin')
def admin_auto_close_status():
    return api_response({'scheduler': scheduler.get_status(),
                         'summary': position_manager.get_auto_close_summary()})


@app.route('/api/admin/auto-close', methods=['POST'])
@role_required('admin')
def admin_auto_close_control():
    action = get_json_body().get('action')
    if action == 'start':
        scheduler.start_all()
    elif action == 'stop':
        scheduler.stop_all()
    elif action == 'run':
        results = scheduler.run_auto_close_once()
        return api_response({'closed': [r._asdict() for r in results], 'status': scheduler.get_status()},
                            f'Closed {len(results)} position(s)')
    elif action == 'update_prices':
        return api_response(scheduler.run_price_update_once(), 'Prices updated')
    elif action == 'reset_stats':
        scheduler.reset_stats()
    else:
        return api_error("Action must be one of start, stop, run, update_prices, reset_stats", 400)
    logger.info(f"Admin {current_user.id} scheduler action: {action}")
    return api_response(scheduler.get_status(), f'Scheduler {action} done')


# Real-time events

@socketio.on('connect')
def handle_connect():
    if current_user.is_authenticated:
        join_room(f'user_{current_user.id}')
        if current_user.is_staff():
            join_room('staff')


@socketio.on('join_chat')
def handle_join_chat(data):
    if not current_user.is_authenticated:
        return
    try:
        room = chat_service.get_room_for(current_user.id, int((data or {}).get('room_id')))
    except (ChatError, TypeError, ValueError):
        emit('chat_error', {'message': 'Cannot join this chat room'})
        return
    join_room(f'chat_{room.id}')


@socketio.on('open_position')
def handle_open_position(data):
    """Open a position from the trading panel."""
    if not current_user.is_authenticated:
        emit('position_confirmation', {'success': False, 'message': 'Please log in'})
        return

    try:
        validated = validate_new_position(data or {})
        position = position_manager.open_position(current_user, validated)
    except InputValidationError as ve:
        logger.warning(f"Position validation failed for user {current_user.id}: {ve}")
        emit('position_confirmation', {'success': False, 'message': f'Invalid input: {ve}'})
        return
    except (PositionError, PejecoinError) as e:
        emit('position_confirmation', {'success': False, 'message': e.message})
        return
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error opening position for user {current_user.id}: {e}", exc_info=True)
        emit('position_confirmation', {'success': False, 'message': 'Internal server error'})
        return

    emit('position_confirmation', {'success': True, 'message': 'Position opened', 'position': position.to_dict()})


def start_background_threads():
    """Start the auto-close and price refresh jobs if configured to."""
    if not app.config.get('SCHEDULER_AUTOSTART', True):
        logger.info("[AutoClose] Autostart disabled by configuration")
        return False
    scheduler.start_all()
    return True


# Start background threads
start_background_threads()


def seed_admin():
    """Create the admin account from ADMIN_EMAIL / ADMIN_PASSWORD when missing."""
    email = os.environ.get('ADMIN_EMAIL')
    password = os.environ.get('ADMIN_PASSWORD')
    if not email or not password or User.query.filter_by(role='admin').first():
        return None
    admin = User(email=UserValidator.validate_email(email), username=os.environ.get('ADMIN_USERNAME', 'bitpulse_admin'),
                 first_name='Admin', role='admin', email_confirmed=True)
    admin.set_password(password)
    db.session.add(admin)
    db.session.commit()
    logger.info(f"Created admin account {admin.email}")
    return admin


if __name__ == '__main__':
    with app.app_context():
        try:
            db.create_all()
            logger.info("Database tables created")
            seed_admin()
        except Exception as e:
            logger.error(f"Database initialization error: {e}", exc_info=True)

    port = int(os.environ.get('PORT') or os.environ.get('FLASK_PORT', 5000))
    debug = os.environ.get('FLASK_DEBUG', 'True').lower() == 'true'

    logger.info(f"Starting application on port {port}, debug={debug}")
    socketio.run(app, debug=debug, port=port, host='0.0.0.0', use_reloader=False, allow_unsafe_werkzeug=True)

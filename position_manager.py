"""
Position Manager - Lifecycle of simulated trade positions.

Opens positions against a user's Pejecoin balance, closes them manually or
when their duration elapses, and settles the profit or loss back into the
balance.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, NamedTuple, Optional

from models import (db, User, TradePosition, PejeCoinTransaction, UserActivity, Notification,
                    MentorAssignment, PositionModification, LeverageSetting, current_utc,
                    duration_to_timedelta, DURATION_UNITS)
from pejecoin_service import InsufficientFundsError, debit_user, credit_user
from price_client import normalize_symbol
from validators import PositionValidator, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_LEVERAGE = 100

# Units per lot
CONTRACT_SIZES = {
    'BTC': 1,
    'ETH': 1,
    'XAU': 100,
}
DEFAULT_CONTRACT_SIZE = 100000

# Staff-editable fields: request key -> column
MODIFIABLE_FIELDS = {
    'currentPrice': 'current_price',
    'stopLoss': 'stop_loss',
    'takeProfit': 'take_profit',
    'openPrice': 'open_price',
    'amount': 'amount',
    'leverage': 'leverage',
    'stake': 'stake',
    'durationValue': 'duration_value',
    'durationUnit': 'duration_unit',
    'marketColor': 'market_color',
}


class PositionError(Exception):
    """Raised when a position operation is not allowed."""
    status_code = 400

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class PositionNotFoundError(PositionError):
    status_code = 404


class PositionCloseResult(NamedTuple):
    position_id: str
    user_id: int
    profit: float
    close_price: float
    new_balance: float


def is_position_expired(position, now: Optional[datetime] = None) -> bool:
    """True once open_time + duration has been reached."""
    now = now or current_utc()
    return position.open_time + duration_to_timedelta(position.duration_value, position.duration_unit) <= now


def calculate_profit(direction: str, open_price: float, close_price: float, amount: float) -> float:
    """Profit of a position in Pejecoins.

    The relative price move, signed by direction, applied to the committed
    amount. Rounded to cents and never below -amount.
    """
    if open_price is None or open_price <= 0:
        raise PositionError('Open price must be positive')
    sign = 1 if direction == 'long' else -1
    profit = round((close_price - open_price) * sign / open_price * amount, 2)
    return max(profit, -round(amount, 2))


def contract_size_for(instrument: str) -> int:
    return CONTRACT_SIZES.get(normalize_symbol(instrument), DEFAULT_CONTRACT_SIZE)


class PositionManager:
    """Opens, closes and settles positions."""

    def __init__(self, app_config, price_service=None, socketio=None, notifier=None):
        """Initialize the position manager.

        Args:
            app_config: Flask app configuration
            price_service: Price source exposing get_price(instrument) (optional)
            socketio: SocketIO instance for emitting events (optional)
            notifier: NotificationService used to push settlement notices (optional)
        """
        self.config = app_config
        self.price_service = price_service
        self.socketio = socketio
        self.notifier = notifier
        self.default_leverage = app_config.get('DEFAULT_LEVERAGE', {})
        self.expiring_soon_minutes = app_config.get('EXPIRING_SOON_MINUTES', 10)
        self.open_price_tolerance = app_config.get('OPEN_PRICE_TOLERANCE', 0.02)
        self.last_pass = {'checked': 0, 'closed': 0, 'errors': 0}

    def get_current_price(self, instrument: str, fallback: Optional[float] = None) -> Optional[float]:
        """Price from the configured price source, FALLBACK if it has none."""
        if self.price_service is None:
            return fallback
        try:
            price = self.price_service.get_price(instrument)
        except Exception as e:
            logger.error(f"Error fetching price for {instrument}: {e}")
            return fallback
        if price is None or price <= 0:
            return fallback
        return float(price)

    def leverage_for(self, category: Optional[str]) -> float:
        if category:
            leverage = LeverageSetting.get_leverage(category, self.default_leverage)
            if leverage:
                return float(leverage)
        return float(DEFAULT_LEVERAGE)

    def open_position(self, user: User, data: Dict[str, Any]) -> TradePosition:
        """Open a position from validated request data, debiting its amount.

        Args:
            user: Owner of the position
            data: Output of validators.validate_new_position

        Raises:
            InsufficientFundsError: If the balance does not cover the amount
            PositionError: If no market price is available, or the quoted
                open price is too far from it
        """
        amount = data['amount']
        market_price = self.get_current_price(data['instrument'])
        if not market_price:
            raise PositionError(f"No price available for {data['instrument']}", 503)

        open_price = data.get('open_price') or market_price
        if abs(open_price - market_price) / market_price > self.open_price_tolerance:
            raise PositionError(
                f"Open price {open_price} is out of line with the market price {market_price}"
            )

        leverage = data.get('leverage') or self.leverage_for(data.get('category'))
        lot_size = data.get('lot_size') or 1.0
        position_value = lot_size * contract_size_for(data['instrument']) * open_price
        margin_required = position_value / leverage

        position = TradePosition(
            user_id=user.id,
            instrument=data['instrument'],
            category=data.get('category'),
            direction=data['direction'],
            market_color=data.get('market_color'),
            stake=data.get('stake') or amount,
            amount=amount,
            leverage=leverage,
            lot_size=lot_size,
            position_value=round(position_value, 2),
            margin_required=round(margin_required, 2),
            open_price=open_price,
            current_price=market_price,
            stop_loss=data.get('stop_loss'),
            take_profit=data.get('take_profit'),
            duration_value=data['duration_value'],
            duration_unit=data['duration_unit'],
            status='open',
            open_time=current_utc(),
        )

        try:
            if not debit_user(user.id, amount):
                db.session.rollback()
                raise InsufficientFundsError(
                    f"Insufficient Pejecoins: have {user.pejecoins:.2f}, need {amount:.2f}"
                )
            db.session.add(position)
            db.session.flush()

            db.session.add(PejeCoinTransaction(
                from_user_id=user.id,
                to_user_id=None,
                amount=amount,
                concept='trade_open',
                reference_id=position.id,
            ))
            activity = UserActivity(user_id=user.id, action='position_opened')
            activity.set_details({
                'position_id': position.id,
                'instrument': position.instrument,
                'direction': position.direction,
                'amount': amount,
                'open_price': open_price,
                'duration': f'{position.duration_value} {position.duration_unit}',
            })
            db.session.add(activity)
            db.session.commit()
        except InsufficientFundsError:
            raise
        except Exception:
            db.session.rollback()
            raise

        logger.info(f"Opened {position.direction} position {position.id} on {position.instrument} "
                    f"for user {user.id}: {amount:.2f} Pejecoins at {open_price}")
        self._emit(user.id, 'balance_update', {'user_id': user.id, 'pejecoins': round(user.pejecoins, 2)})
        return position

    def close_position(self, position: TradePosition, close_price: Optional[float] = None,
                       reason: str = 'manual', now: Optional[datetime] = None) -> Optional[PositionCloseResult]:
        """Settle one position.

        The row is claimed with a conditional update on status='open'; the
        claim, the balance credit, the ledger entry, the activity and the
        notification commit together. Returns None when the position was
        already closed by someone else.
        """
        position_id = position.id
        user_id = position.user_id
        instrument = position.instrument
        direction = position.direction
        amount = position.amount
        open_price = position.open_price

        if close_price is None:
            close_price = self.get_current_price(instrument, fallback=position.current_price)
        if close_price is None:
            raise PositionError(f"No price available for {instrument}", 503)

        profit = calculate_profit(direction, open_price, close_price, amount)
        payout = round(amount + profit, 2)
        auto = reason == 'expired'
        closed_at = now or current_utc()

        try:
            claimed = TradePosition.query.filter_by(id=position_id, status='open').update({
                'status': 'closed',
                'close_price': close_price,
                'current_price': close_price,
                'profit': profit,
                'close_reason': reason,
                'close_time': closed_at,
            }, synchronize_session=False)
            if claimed == 0:
                db.session.rollback()
                logger.info(f"Position {position_id} already settled, skipping")
                return None

            credit_user(user_id, payout)
            db.session.add(PejeCoinTransaction(
                from_user_id=None,
                to_user_id=user_id,
                amount=payout,
                concept='trade_auto_close' if auto else 'trade_close',
                reference_id=position_id,
            ))

            activity = UserActivity(user_id=user_id, action='position_auto_closed' if auto else 'position_closed')
            activity.set_details({
                'position_id': position_id,
                'instrument': instrument,
                'direction': direction,
                'amount': amount,
                'open_price': open_price,
                'close_price': close_price,
                'profit': profit,
                'reason': reason,
            })
            db.session.add(activity)

            outcome = 'profit' if profit >= 0 else 'loss'
            notification = Notification(
                user_id=user_id,
                title='Position closed automatically' if auto else 'Position closed',
                body=f"{instrument} {direction} closed at {close_price} with a {outcome} of {profit:.2f} Pejecoins",
                link='/dashboard',
            )
            db.session.add(notification)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        new_balance = round(db.session.get(User, user_id).pejecoins, 2)
        result = PositionCloseResult(position_id, user_id, profit, close_price, new_balance)

        logger.info(f"Closed position {position_id} ({reason}) for user {user_id}: "
                    f"profit {profit:.2f}, balance {new_balance:.2f}")

        if self.notifier:
            self.notifier.emit(notification)
        self._emit(user_id, 'position_closed', {**result._asdict(), 'reason': reason, 'instrument': instrument})
        self._emit(user_id, 'balance_update', {'user_id': user_id, 'pejecoins': new_balance})
        return result

    def get_open_positions(self, user_id: Optional[int] = None) -> List[TradePosition]:
        query = TradePosition.query.filter_by(status='open')
        if user_id is not None:
            query = query.filter_by(user_id=user_id)
        return query.order_by(TradePosition.open_time).all()

    def get_expired_positions(self, now: Optional[datetime] = None) -> List[TradePosition]:
        """Open positions whose duration has elapsed."""
        now = now or current_utc()
        # Shortest duration is one minute
        candidates = TradePosition.query.filter(
            TradePosition.status == 'open',
            TradePosition.open_time <= now - timedelta(minutes=1)
        ).all()
        return [p for p in candidates if is_position_expired(p, now)]

    def check_and_close_expired_positions(self, now: Optional[datetime] = None) -> List[PositionCloseResult]:
        """Settle every expired position at its current market price.

        A failure on one position is logged and does not stop the pass.
        """
        now = now or current_utc()
        expired = self.get_expired_positions(now)
        self.last_pass = {'checked': len(expired), 'closed': 0, 'errors': 0}

        if not expired:
            return []

        logger.info(f"Found {len(expired)} expired position(s) to close")

        prices: Dict[str, Optional[float]] = {}
        results = []
        for position in expired:
            try:
                if position.instrument not in prices:
                    prices[position.instrument] = self.get_current_price(position.instrument)
                close_price = prices[position.instrument] or position.current_price
                result = self.close_position(position, close_price=close_price, reason='expired', now=now)
            except Exception as e:
                self.last_pass['errors'] += 1
                logger.error(f"Error closing expired position {position.id}: {e}", exc_info=True)
                continue

            if result is not None:
                results.append(result)

        self.last_pass['closed'] = len(results)
        logger.info(f"Auto-close pass complete: {self.last_pass}")
        return results

    def check_specific_position(self, position_id: str, now: Optional[datetime] = None) -> Optional[PositionCloseResult]:
        """Close a single position if it has expired."""
        position = db.session.get(TradePosition, position_id)
        if position is None:
            raise PositionNotFoundError('Position not found')
        if position.status != 'open' or not is_position_expired(position, now):
            return None
        return self.close_position(position, reason='expired', now=now)

    def update_open_position_prices(self) -> int:
        """Refresh current_price of open positions. Returns the number updated."""
        positions = self.get_open_positions()
        prices: Dict[str, Optional[float]] = {}
        updated = 0
        for position in positions:
            if position.instrument not in prices:
                prices[position.instrument] = self.get_current_price(position.instrument)
            price = prices[position.instrument]
            if price and price != position.current_price:
                position.current_price = price
                updated += 1
        if updated:
            db.session.commit()
        return updated

    def get_auto_close_summary(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or current_utc()
        soon = now + timedelta(minutes=self.expiring_soon_minutes)
        open_positions = self.get_open_positions()

        expired = [p for p in open_positions if p.expires_at <= now]
        expiring_soon = [p for p in open_positions if now < p.expires_at <= soon]

        return {
            'open_count': len(open_positions),
            'expired_unsettled_count': len(expired),
            'expiring_soon_count': len(expiring_soon),
            'expiring_soon': [
                {
                    'id': p.id,
                    'user_id': p.user_id,
                    'instrument': p.instrument,
                    'expires_at': p.expires_at.isoformat(),
                    'seconds_remaining': (p.expires_at - now).total_seconds(),
                }
                for p in sorted(expiring_soon, key=lambda x: x.expires_at)
            ],
            'timestamp': now.isoformat(),
        }

    def can_modify(self, editor: User, position: TradePosition) -> bool:
        """Admins may edit any position, maestros only those of their clients."""
        if editor.role == 'admin':
            return True
        if editor.role == 'maestro':
            return MentorAssignment.query.filter_by(mentor_id=editor.id, user_id=position.user_id).first() is not None
        return False

    def modify_position(self, editor: User, position_id: str, changes: Dict[str, Any], reason: str) -> TradePosition:
        """Apply a staff edit to an open position and record one audit row per field."""
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError('A reason is required to modify a position')

        position = db.session.get(TradePosition, position_id)
        if position is None:
            raise PositionNotFoundError('Position not found')
        if not self.can_modify(editor, position):
            raise PositionError('Not allowed to modify this position', 403)
        if position.status != 'open':
            raise PositionError('Only open positions can be modified', 409)

        if not isinstance(changes, dict) or not changes:
            raise ValidationError('No changes provided')
        unknown = [key for key in changes if key not in MODIFIABLE_FIELDS]
        if unknown:
            raise ValidationError(f"Fields cannot be modified: {', '.join(unknown)}")

        updates = {MODIFIABLE_FIELDS[key]: self._validate_field(MODIFIABLE_FIELDS[key], value)
                   for key, value in changes.items()}

        try:
            for column, value in updates.items():
                old_value = getattr(position, column)
                if old_value == value:
                    continue
                setattr(position, column, value)
                db.session.add(PositionModification(
                    position_id=position.id,
                    modified_by=editor.id,
                    modified_by_name=editor.full_name or editor.username,
                    field=column,
                    old_value=None if old_value is None else str(old_value),
                    new_value=None if value is None else str(value),
                    reason=reason.strip(),
                ))
            activity = UserActivity(user_id=editor.id, action='position_modified')
            activity.set_details({'position_id': position.id, 'changes': updates, 'reason': reason.strip()})
            db.session.add(activity)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(f"User {editor.id} modified position {position.id}: {updates}")
        self._emit(position.user_id, 'position_updated', position.to_dict())
        return position

    @staticmethod
    def _validate_field(column: str, value: Any):
        if column in ('current_price', 'open_price'):
            return float(PositionValidator.validate_price(value))
        if column in ('stop_loss', 'take_profit'):
            return None if value is None else float(PositionValidator.validate_price(value))
        if column in ('amount', 'stake'):
            return float(PositionValidator.validate_amount(value))
        if column == 'leverage':
            return float(PositionValidator.validate_leverage(value))
        if column == 'duration_value':
            if isinstance(value, bool):
                raise ValidationError(f"Invalid duration: {value}")
            try:
                duration = int(value)
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid duration: {value}")
            if duration <= 0:
                raise ValidationError('Duration must be positive')
            return duration
        if column == 'duration_unit':
            if value not in DURATION_UNITS:
                raise ValidationError(f"Duration unit must be one of {', '.join(DURATION_UNITS)}")
            return value
        if column == 'market_color':
            return None if value is None else str(value)[:16]
        return value

    def _emit(self, user_id: int, event: str, payload: Dict[str, Any]):
        """Push EVENT to the owner's socket room only."""
        if not self.socketio:
            return
        try:
            self.socketio.emit(event, payload, to=f'user_{user_id}')
        except Exception as e:
            logger.error(f"Error emitting {event}: {e}")

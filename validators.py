"""
Input validation utilities for the BitPulse trading simulator.

This module provides comprehensive validation for all user inputs to prevent:
- Financial exploits (negative values, precision attacks)
- Injection of unexpected values into enum-like fields
- Business logic bypasses
- Data integrity issues (NaN, infinity, extreme values)
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN
from typing import Any, Tuple
import re
import math

from models import DURATION_UNITS, USER_ROLES


class ValidationError(Exception):
    """Custom exception for validation failures."""
    pass


def _to_decimal(value: Any, label: str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {label} format: {value}")
    try:
        if isinstance(value, str):
            value = value.strip()
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Invalid {label} format: {value}")


class PositionValidator:
    """Validates the fields of a new trade position."""

    MAX_AMOUNT = Decimal('1000000000')  # 1 billion Pejecoins max
    MIN_AMOUNT = Decimal('0.01')
    MAX_PRICE = Decimal('1000000000')
    MIN_PRICE = Decimal('0.00000001')
    MAX_LEVERAGE = Decimal('1000')

    # Maximum duration per unit (30 days)
    MAX_DURATION = {'minute': 43200, 'hour': 720, 'day': 30}

    INSTRUMENT_PATTERN = re.compile(r'^[A-Za-z0-9 /()._\-]{1,64}$')

    DIRECTION_ALIASES = {
        'up': 'long',
        'long': 'long',
        'buy': 'long',
        'down': 'short',
        'short': 'short',
        'sell': 'short',
    }

    @staticmethod
    def validate_amount(amount: Any) -> Decimal:
        """Validate the Pejecoins committed to a position.

        Args:
            amount: Raw amount input (int, float, str, Decimal)

        Returns:
            Validated Decimal amount rounded to cents

        Raises:
            ValidationError: If amount is invalid
        """
        amt = _to_decimal(amount, 'amount')

        if not amt.is_finite():
            raise ValidationError("Amount cannot be infinity or NaN")

        if amt <= 0:
            raise ValidationError("Amount must be positive")

        if amt < PositionValidator.MIN_AMOUNT:
            raise ValidationError(f"Amount must be at least {PositionValidator.MIN_AMOUNT}")

        if amt > PositionValidator.MAX_AMOUNT:
            raise ValidationError(f"Amount cannot exceed {PositionValidator.MAX_AMOUNT}")

        return amt.quantize(Decimal('0.01'), rounding=ROUND_HALF_EVEN)

    @staticmethod
    def validate_price(price: Any) -> Decimal:
        """Validate and sanitize an instrument price.

        Raises:
            ValidationError: If price is invalid
        """
        prc = _to_decimal(price, 'price')

        if not prc.is_finite():
            raise ValidationError("Price cannot be infinity or NaN")

        if prc < PositionValidator.MIN_PRICE:
            raise ValidationError(f"Price must be at least {PositionValidator.MIN_PRICE}")

        if prc > PositionValidator.MAX_PRICE:
            raise ValidationError(f"Price cannot exceed {PositionValidator.MAX_PRICE}")

        return prc.quantize(Decimal('0.00000001'), rounding=ROUND_HALF_EVEN)

    @staticmethod
    def validate_direction(direction: Any) -> str:
        """Normalize a trade direction to 'long' or 'short'.

        The trading panel sends 'up'/'down'; the API also accepts
        'long'/'short' and 'buy'/'sell'.
        """
        if not isinstance(direction, str):
            raise ValidationError("Direction must be a string")

        normalized = PositionValidator.DIRECTION_ALIASES.get(direction.lower().strip())
        if normalized is None:
            raise ValidationError(f"Direction must be 'up' or 'down', got '{direction}'")
        return normalized

    @staticmethod
    def validate_duration(value: Any, unit: Any) -> Tuple[int, str]:
        """Validate a position duration.

        Returns:
            Tuple of (value, unit)
        """
        if not isinstance(unit, str) or unit.lower().strip() not in DURATION_UNITS:
            raise ValidationError(f"Duration unit must be one of {', '.join(DURATION_UNITS)}")
        unit = unit.lower().strip()

        if isinstance(value, bool):
            raise ValidationError(f"Invalid duration value: {value}")
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid duration value: {value}")

        if not math.isfinite(numeric) or numeric != int(numeric):
            raise ValidationError("Duration value must be a whole number")

        duration = int(numeric)
        if duration <= 0:
            raise ValidationError("Duration value must be positive")
        if duration > PositionValidator.MAX_DURATION[unit]:
            raise ValidationError(
                f"Duration cannot exceed {PositionValidator.MAX_DURATION[unit]} {unit}(s)"
            )
        return duration, unit

    @staticmethod
    def validate_instrument(instrument: Any) -> str:
        if not isinstance(instrument, str):
            raise ValidationError("Instrument must be a string")

        instrument = instrument.strip()
        if not instrument:
            raise ValidationError("Instrument cannot be empty")

        if not PositionValidator.INSTRUMENT_PATTERN.match(instrument):
            raise ValidationError("Instrument contains invalid characters")

        return instrument

    @staticmethod
    def validate_leverage(leverage: Any) -> Decimal:
        lev = _to_decimal(leverage, 'leverage')
        if not lev.is_finite() or lev < 1:
            raise ValidationError("Leverage must be at least 1")
        if lev > PositionValidator.MAX_LEVERAGE:
            raise ValidationError(f"Leverage cannot exceed {PositionValidator.MAX_LEVERAGE}")
        return lev


class PejecoinValidator:
    """Validates Pejecoin balances and movements."""

    MAX_BALANCE = Decimal('100000000000')  # 100 billion max
    MIN_BALANCE = Decimal('0')  # Cannot go negative

    @staticmethod
    def validate_balance(balance: Any) -> Decimal:
        """Validate a Pejecoin balance.

        Raises:
            ValidationError: If balance is invalid
        """
        bal = _to_decimal(balance, 'balance')

        if not bal.is_finite():
            raise ValidationError("Balance cannot be infinity or NaN")

        if bal < PejecoinValidator.MIN_BALANCE:
            raise ValidationError("Balance cannot be negative")

        if bal > PejecoinValidator.MAX_BALANCE:
            raise ValidationError(f"Balance cannot exceed {PejecoinValidator.MAX_BALANCE}")

        return bal.quantize(Decimal('0.01'), rounding=ROUND_HALF_EVEN)

    @staticmethod
    def parse_amount(raw: Any) -> Decimal:
        """Parse an amount typed by a user, accepting thousands separators.

        '50.000' is read as fifty thousand, '50.50' as fifty and a half,
        '1,250.75' and '1.250.000' are accepted too.
        """
        if isinstance(raw, (int, float, Decimal)) and not isinstance(raw, bool):
            return PositionValidator.validate_amount(raw)

        if not isinstance(raw, str):
            raise ValidationError(f"Invalid amount format: {raw}")

        cleaned = re.sub(r'[^\d.,]', '', raw.strip())
        if not cleaned:
            raise ValidationError(f"Invalid amount format: {raw}")

        if not cleaned.isdigit():
            cleaned = cleaned.replace(',', '')
            dot_count = cleaned.count('.')
            if dot_count == 1:
                whole, fraction = cleaned.split('.')
                if len(fraction) == 3 and re.fullmatch(r'\d{1,3}', whole):
                    cleaned = whole + fraction
            elif dot_count > 1:
                groups = cleaned.split('.')
                if all(len(group) == 3 and group.isdigit() for group in groups[1:]):
                    return PositionValidator.validate_amount(''.join(groups))
                last_dot = cleaned.rfind('.')
                cleaned = cleaned[:last_dot].replace('.', '') + cleaned[last_dot:]

        return PositionValidator.validate_amount(cleaned)


class UserValidator:
    """Validates account fields."""

    EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$')
    USERNAME_PATTERN = re.compile(r'^[a-zA-Z0-9_]+$')
    RESERVED_USERNAMES = {'admin', 'root', 'system', 'test', 'api', 'public', 'private', 'support'}

    @staticmethod
    def validate_email(email: Any) -> str:
        if not isinstance(email, str):
            raise ValidationError("Email must be a string")

        email = email.strip().lower()
        if not email or len(email) > 255 or not UserValidator.EMAIL_PATTERN.match(email):
            raise ValidationError("Invalid email format")
        return email

    @staticmethod
    def validate_username(username: Any) -> str:
        if not isinstance(username, str):
            raise ValidationError("Username must be a string")

        username = username.strip()
        if len(username) < 3 or len(username) > 20:
            raise ValidationError("Username must be between 3 and 20 characters")

        if not UserValidator.USERNAME_PATTERN.match(username):
            raise ValidationError("Username can only contain letters, numbers, and underscores")

        if username.lower() in UserValidator.RESERVED_USERNAMES:
            raise ValidationError("This username is reserved and cannot be used")
        return username

    @staticmethod
    def validate_password(password: Any) -> str:
        if not isinstance(password, str):
            raise ValidationError("Password must be a string")

        if len(password) < 8:
            raise ValidationError("Password must be at least 8 characters long")

        if not password.strip():
            raise ValidationError("Password cannot be only whitespace characters")
        return password

    @staticmethod
    def validate_name(name: Any, label: str = 'Name') -> str:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError(f"{label} is required")
        name = re.sub(r'[<>]', '', name.strip())
        if len(name) > 80:
            raise ValidationError(f"{label} cannot exceed 80 characters")
        return name

    @staticmethod
    def validate_role(role: Any) -> str:
        if role not in USER_ROLES:
            raise ValidationError(f"Role must be one of {', '.join(USER_ROLES)}")
        return role


class QueryValidator:
    """Validates API query parameters."""

    @staticmethod
    def validate_limit(limit: Any, max_limit: int = 1000, default: int = 100) -> int:
        """Validate pagination limit parameter.

        Args:
            limit: Raw limit input
            max_limit: Maximum allowed limit
            default: Default value if limit is None

        Returns:
            Validated integer limit
        """
        if limit is None:
            return default

        try:
            limit = int(limit)
        except (ValueError, TypeError):
            return default

        # Clamp to valid range
        if limit < 1:
            return 1
        if limit > max_limit:
            return max_limit

        return limit

    @staticmethod
    def validate_offset(offset: Any, default: int = 0) -> int:
        """Validate pagination offset parameter."""
        if offset is None:
            return default

        try:
            offset = int(offset)
        except (ValueError, TypeError):
            return default

        # Offset must be non-negative
        if offset < 0:
            return 0

        return offset

    @staticmethod
    def validate_user_id(user_id: Any) -> int:
        """Validate user ID parameter.

        Raises:
            ValidationError: If user ID is invalid
        """
        if isinstance(user_id, bool):
            raise ValidationError(f"Invalid user ID: {user_id}")
        try:
            uid = int(user_id)
        except (ValueError, TypeError):
            raise ValidationError(f"Invalid user ID: {user_id}")

        if uid < 1:
            raise ValidationError("User ID must be positive")

        return uid


def validate_new_position(data: dict) -> dict:
    """Validate the payload of a new position request.

    Args:
        data: Raw JSON body. Accepts either 'instrument' or 'instrumentName',
            'direction', 'amount', optional 'stake' (defaults to amount),
            'duration' as {'value', 'unit'} or flat 'duration_value'/'duration_unit',
            optional 'leverage', 'lot_size', 'category', 'market_color',
            'stop_loss', 'take_profit', 'open_price'.

    Returns:
        Dictionary of validated values (floats for numeric fields)

    Raises:
        ValidationError: If any component is invalid
    """
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")

    instrument = PositionValidator.validate_instrument(
        data.get('instrument') or data.get('instrumentName')
    )
    direction = PositionValidator.validate_direction(data.get('direction'))
    amount = PositionValidator.validate_amount(data.get('amount'))
    stake = PositionValidator.validate_amount(data['stake']) if data.get('stake') is not None else amount

    duration = data.get('duration') or {}
    if not isinstance(duration, dict):
        raise ValidationError("Duration must be an object with 'value' and 'unit'")
    duration_value, duration_unit = PositionValidator.validate_duration(
        duration.get('value', data.get('duration_value')),
        duration.get('unit', data.get('duration_unit')),
    )

    validated = {
        'instrument': instrument,
        'direction': direction,
        'amount': float(amount),
        'stake': float(stake),
        'duration_value': duration_value,
        'duration_unit': duration_unit,
        'category': data.get('category') if isinstance(data.get('category'), str) else None,
        'market_color': data.get('market_color') or data.get('marketColor'),
        'leverage': None,
        'lot_size': None,
        'open_price': None,
        'stop_loss': None,
        'take_profit': None,
    }

    if data.get('leverage') is not None:
        validated['leverage'] = float(PositionValidator.validate_leverage(data['leverage']))

    lot_size = data.get('lot_size', data.get('lotSize'))
    if lot_size is not None:
        validated['lot_size'] = float(PositionValidator.validate_amount(lot_size))

    open_price = data.get('open_price', data.get('openPrice'))
    if open_price is not None:
        validated['open_price'] = float(PositionValidator.validate_price(open_price))

    for key in ('stop_loss', 'take_profit'):
        if data.get(key) is not None:
            validated[key] = float(PositionValidator.validate_price(data[key]))

    return validated


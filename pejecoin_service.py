"""
Pejecoin Service - balances, ledger and withdrawals of the virtual currency.
"""
import logging
from typing import List, Optional

from models import db, User, PejeCoinTransaction, UserActivity, WithdrawalRequest, current_utc
from validators import PositionValidator, PejecoinValidator, ValidationError

logger = logging.getLogger(__name__)

WITHDRAWAL_METHODS = ('bank_account', 'crypto')
WITHDRAWAL_REQUIRED_FIELDS = {
    'bank_account': ('bank_name', 'account_number', 'account_holder'),
    'crypto': ('wallet_address', 'network'),
}


class PejecoinError(Exception):
    """Raised when a Pejecoin operation cannot be carried out."""
    status_code = 400

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class InsufficientFundsError(PejecoinError):
    status_code = 409


def debit_user(user_id: int, amount: float) -> bool:
    """Subtract AMOUNT from a balance only if the balance covers it.

    Runs inside the caller's transaction; returns False when the row was not
    updated (unknown user or not enough coins).
    """
    updated = User.query.filter(User.id == user_id, User.pejecoins >= amount).update(
        {User.pejecoins: User.pejecoins - amount}, synchronize_session=False
    )
    return updated == 1


def credit_user(user_id: int, amount: float) -> bool:
    updated = User.query.filter(User.id == user_id).update(
        {User.pejecoins: User.pejecoins + amount}, synchronize_session=False
    )
    return updated == 1


def _get_user(user_id) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise PejecoinError('User not found', 404)
    return user


def _record_activity(user_id, action, details):
    activity = UserActivity(user_id=user_id, action=action)
    activity.set_details(details)
    db.session.add(activity)


def get_balance(user_id: int) -> float:
    return round(_get_user(user_id).pejecoins, 2)


def get_transactions(user_id: int, limit: int = 50, offset: int = 0) -> List[PejeCoinTransaction]:
    """Ledger rows where the user sent or received coins, newest first."""
    return (PejeCoinTransaction.query
            .filter((PejeCoinTransaction.from_user_id == user_id) | (PejeCoinTransaction.to_user_id == user_id))
            .order_by(PejeCoinTransaction.timestamp.desc(), PejeCoinTransaction.id.desc())
            .offset(offset)
            .limit(limit)
            .all())


def grant_initial_coins(user: User, amount: float) -> PejeCoinTransaction:
    """Record the welcome grant of a freshly created account (no commit)."""
    user.pejecoins = amount
    transaction = PejeCoinTransaction(
        from_user_id=None,
        to_user_id=user.id,
        amount=amount,
        concept='initial_grant',
    )
    db.session.add(transaction)
    return transaction


def assign_coins(admin: User, user_id: int, amount, concept: str = 'admin_assign') -> PejeCoinTransaction:
    """Credit coins to a user from the system on behalf of an admin."""
    value = float(PositionValidator.validate_amount(amount))
    user = _get_user(user_id)

    try:
        credit_user(user.id, value)
        transaction = PejeCoinTransaction(
            from_user_id=None,
            to_user_id=user.id,
            amount=value,
            concept=concept or 'admin_assign',
            reference_id=f'admin:{admin.id}',
        )
        db.session.add(transaction)
        _record_activity(user.id, 'pejecoins_assigned', {'amount': value, 'assigned_by': admin.id, 'concept': concept})
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(f"Admin {admin.id} assigned {value:.2f} Pejecoins to user {user.id}")
    return transaction


def transfer_coins(from_user_id: int, to_user_id: int, amount, concept: str = 'transfer') -> PejeCoinTransaction:
    """Move coins between two users."""
    if from_user_id == to_user_id:
        raise PejecoinError('Cannot transfer Pejecoins to yourself')

    value = float(PositionValidator.validate_amount(amount))
    sender = _get_user(from_user_id)
    _get_user(to_user_id)

    try:
        if not debit_user(sender.id, value):
            db.session.rollback()
            raise InsufficientFundsError(
                f"Insufficient Pejecoins: have {sender.pejecoins:.2f}, need {value:.2f}"
            )
        credit_user(to_user_id, value)
        transaction = PejeCoinTransaction(
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            amount=value,
            concept=concept or 'transfer',
        )
        db.session.add(transaction)
        _record_activity(from_user_id, 'pejecoins_sent', {'amount': value, 'to_user_id': to_user_id})
        _record_activity(to_user_id, 'pejecoins_received', {'amount': value, 'from_user_id': from_user_id})
        db.session.commit()
    except PejecoinError:
        raise
    except Exception:
        db.session.rollback()
        raise

    logger.info(f"Transferred {value:.2f} Pejecoins from user {from_user_id} to user {to_user_id}")
    return transaction


def create_withdrawal(user: User, raw_amount, method: str, details: Optional[dict] = None) -> WithdrawalRequest:
    """File a withdrawal request; coins stay in the balance until it is approved."""
    amount = PejecoinValidator.parse_amount(raw_amount)

    if method not in WITHDRAWAL_METHODS:
        raise ValidationError(f"Method must be one of {', '.join(WITHDRAWAL_METHODS)}")

    details = details if isinstance(details, dict) else {}
    missing = [field for field in WITHDRAWAL_REQUIRED_FIELDS[method] if not details.get(field)]
    if missing:
        raise ValidationError(f"Missing withdrawal details: {', '.join(missing)}")

    if amount > PejecoinValidator.validate_balance(user.pejecoins):
        raise InsufficientFundsError(
            f"Insufficient Pejecoins: have {user.pejecoins:.2f}, need {amount:.2f}"
        )

    withdrawal = WithdrawalRequest(user_id=user.id, amount=float(amount), method=method)
    withdrawal.set_details({key: str(value) for key, value in details.items()})
    db.session.add(withdrawal)
    _record_activity(user.id, 'withdrawal_requested', {'amount': float(amount), 'method': method})
    db.session.commit()

    logger.info(f"User {user.id} requested withdrawal of {amount:.2f} Pejecoins via {method}")
    return withdrawal


def review_withdrawal(reviewer: User, withdrawal_id: int, approve: bool) -> WithdrawalRequest:
    """Approve (debiting the balance) or reject a pending withdrawal."""
    withdrawal = db.session.get(WithdrawalRequest, withdrawal_id)
    if withdrawal is None:
        raise PejecoinError('Withdrawal request not found', 404)
    if withdrawal.status != 'pending':
        raise PejecoinError(f'Withdrawal request already {withdrawal.status}', 409)

    new_status = 'approved' if approve else 'rejected'
    try:
        claimed = WithdrawalRequest.query.filter_by(id=withdrawal.id, status='pending').update(
            {'status': new_status, 'reviewed_by': reviewer.id, 'reviewed_at': current_utc()},
            synchronize_session=False
        )
        if claimed == 0:
            db.session.rollback()
            raise PejecoinError('Withdrawal request already reviewed', 409)

        if approve:
            if not debit_user(withdrawal.user_id, withdrawal.amount):
                db.session.rollback()
                raise InsufficientFundsError('User balance no longer covers this withdrawal')
            db.session.add(PejeCoinTransaction(
                from_user_id=withdrawal.user_id,
                to_user_id=None,
                amount=withdrawal.amount,
                concept='withdrawal',
                reference_id=str(withdrawal.id),
            ))

        _record_activity(withdrawal.user_id, f'withdrawal_{new_status}',
                         {'withdrawal_id': withdrawal.id, 'amount': withdrawal.amount, 'reviewed_by': reviewer.id})
        db.session.commit()
    except PejecoinError:
        raise
    except Exception:
        db.session.rollback()
        raise

    db.session.refresh(withdrawal)
    logger.info(f"Withdrawal {withdrawal.id} {new_status} by user {reviewer.id}")
    return withdrawal

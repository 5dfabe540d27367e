"""
Tests for position_manager: profit and expiry math, opening positions,
settlement atomicity and idempotency, the auto-close pass and staff edits.
"""
import unittest
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from testing_utils import BitPulseTestCase
from models import (db, TradePosition, PejeCoinTransaction, UserActivity, Notification, MentorAssignment,
                    PositionModification, LeverageSetting, duration_to_timedelta)
from pejecoin_service import InsufficientFundsError
from position_manager import (PositionManager, PositionError, PositionNotFoundError, calculate_profit,
                              is_position_expired, contract_size_for)
from validators import ValidationError


class TestProfitAndExpiry(unittest.TestCase):

    def test_long_profit(self):
        self.assertEqual(calculate_profit('long', 100.0, 110.0, 1000.0), 100.0)
        self.assertEqual(calculate_profit('long', 100.0, 90.0, 1000.0), -100.0)

    def test_short_profit(self):
        self.assertEqual(calculate_profit('short', 100.0, 90.0, 1000.0), 100.0)
        self.assertEqual(calculate_profit('short', 100.0, 110.0, 1000.0), -100.0)

    def test_profit_rounded_to_cents(self):
        self.assertEqual(calculate_profit('long', 100.0, 100.123, 1000.0), 1.23)

    def test_loss_never_exceeds_amount(self):
        self.assertEqual(calculate_profit('short', 100.0, 250.0, 1000.0), -1000.0)

    def test_unchanged_price_is_flat(self):
        self.assertEqual(calculate_profit('long', 2497.81, 2497.81, 300.0), 0.0)

    def test_invalid_open_price(self):
        with self.assertRaises(PositionError):
            calculate_profit('long', 0, 110.0, 1000.0)

    def test_duration_units(self):
        self.assertEqual(duration_to_timedelta(5, 'minute'), timedelta(minutes=5))
        self.assertEqual(duration_to_timedelta(2, 'hour'), timedelta(hours=2))
        self.assertEqual(duration_to_timedelta(1, 'day'), timedelta(days=1))
        # Unknown units count as hours
        self.assertEqual(duration_to_timedelta(3, 'fortnight'), timedelta(hours=3))

    def test_is_position_expired(self):
        now = datetime(2024, 1, 1, 12, 0, 0)
        position = SimpleNamespace(open_time=now - timedelta(minutes=5), duration_value=5, duration_unit='minute')
        self.assertTrue(is_position_expired(position, now))
        self.assertFalse(is_position_expired(position, now - timedelta(seconds=1)))

        position = SimpleNamespace(open_time=now - timedelta(hours=1), duration_value=2, duration_unit='hour')
        self.assertFalse(is_position_expired(position, now))

    def test_contract_sizes(self):
        self.assertEqual(contract_size_for('BTC/USD'), 1)
        self.assertEqual(contract_size_for('Ethereum'), 1)
        self.assertEqual(contract_size_for('XAU/USD'), 100)
        self.assertEqual(contract_size_for('EUR/USD'), 100000)


class PositionManagerTestCase(BitPulseTestCase):

    def setUp(self):
        super().setUp()
        self.price_service = MagicMock()
        self.price_service.get_price.return_value = 110.0
        self.socketio = MagicMock()
        self.notifier = MagicMock()
        self.manager = PositionManager(self.app.config, self.price_service, self.socketio, self.notifier)
        self.user = self.create_user(pejecoins=9000.0)

    def emitted_events(self):
        return [c.args[0] for c in self.socketio.emit.call_args_list]


class TestOpenPosition(PositionManagerTestCase):

    def _data(self, **overrides):
        data = {
            'instrument': 'BTC/USD', 'direction': 'long', 'amount': 1000.0, 'stake': 1000.0,
            'duration_value': 5, 'duration_unit': 'minute', 'category': 'criptomonedas',
            'market_color': None, 'leverage': None, 'lot_size': None, 'open_price': None,
            'stop_loss': None, 'take_profit': None,
        }
        data.update(overrides)
        return data

    def test_open_debits_balance_and_records_ledger(self):
        self.price_service.get_price.return_value = 50000.0
        position = self.manager.open_position(self.user, self._data())

        self.assertEqual(position.status, 'open')
        self.assertEqual(position.open_price, 50000.0)
        self.assertEqual(position.current_price, 50000.0)
        self.assertEqual(position.leverage, 20.0)
        self.assertEqual(position.position_value, 50000.0)
        self.assertEqual(position.margin_required, 2500.0)
        self.assertEqual(self.user.pejecoins, 8000.0)

        tx = PejeCoinTransaction.query.filter_by(concept='trade_open').one()
        self.assertEqual(tx.amount, 1000.0)
        self.assertEqual(tx.from_user_id, self.user.id)
        self.assertEqual(tx.reference_id, position.id)
        self.assertEqual(UserActivity.query.filter_by(action='position_opened').count(), 1)
        self.assertIn('balance_update', self.emitted_events())

    def test_leverage_override_from_settings(self):
        db.session.add(LeverageSetting(category='criptomonedas', leverage=50))
        db.session.commit()
        position = self.manager.open_position(self.user, self._data())
        self.assertEqual(position.leverage, 50.0)

    def test_default_leverage_without_category(self):
        self.price_service.get_price.return_value = 1.1
        position = self.manager.open_position(self.user, self._data(category=None, instrument='EUR/USD',
                                                                    lot_size=0.1))
        self.assertEqual(position.leverage, 100.0)
        self.assertAlmostEqual(position.position_value, 11000.0)
        self.assertAlmostEqual(position.margin_required, 110.0)

    def test_insufficient_funds(self):
        with self.assertRaises(InsufficientFundsError):
            self.manager.open_position(self.user, self._data(amount=9000.01))
        self.assertEqual(self.user.pejecoins, 9000.0)
        self.assertEqual(TradePosition.query.count(), 0)
        self.assertEqual(PejeCoinTransaction.query.count(), 0)

    def test_no_price_available(self):
        self.price_service.get_price.return_value = None
        with self.assertRaises(PositionError) as ctx:
            self.manager.open_position(self.user, self._data())
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertEqual(self.user.pejecoins, 9000.0)

    def test_price_source_error_reported_as_unavailable(self):
        self.price_service.get_price.side_effect = RuntimeError('feed down')
        with self.assertRaises(PositionError) as ctx:
            self.manager.open_position(self.user, self._data())
        self.assertEqual(ctx.exception.status_code, 503)

    def test_quoted_open_price_within_tolerance(self):
        position = self.manager.open_position(self.user, self._data(open_price=109.0))
        self.assertEqual(position.open_price, 109.0)
        self.price_service.get_price.assert_called_once_with('BTC/USD')

    def test_quoted_open_price_far_from_market_rejected(self):
        for quoted in (0.00000001, 42.0, 113.0):
            with self.assertRaises(PositionError) as ctx:
                self.manager.open_position(self.user, self._data(open_price=quoted))
            self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(self.user.pejecoins, 9000.0)
        self.assertEqual(TradePosition.query.count(), 0)

    def test_quoted_open_price_needs_market_price(self):
        self.price_service.get_price.return_value = None
        with self.assertRaises(PositionError) as ctx:
            self.manager.open_position(self.user, self._data(open_price=110.0))
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertEqual(TradePosition.query.count(), 0)


class TestClosePosition(PositionManagerTestCase):

    def test_manual_close_credits_amount_plus_profit(self):
        position = self.create_position(self.user, amount=1000.0, open_price=100.0)
        result = self.manager.close_position(position, reason='manual')

        self.assertEqual(result.position_id, position.id)
        self.assertEqual(result.user_id, self.user.id)
        self.assertEqual(result.profit, 100.0)
        self.assertEqual(result.close_price, 110.0)
        self.assertEqual(result.new_balance, 10100.0)

        db.session.refresh(position)
        self.assertEqual(position.status, 'closed')
        self.assertEqual(position.close_reason, 'manual')
        self.assertEqual(position.profit, 100.0)
        self.assertIsNotNone(position.close_time)
        self.assertEqual(self.user.pejecoins, 10100.0)

        tx = PejeCoinTransaction.query.filter_by(reference_id=position.id).one()
        self.assertEqual(tx.concept, 'trade_close')
        self.assertEqual(tx.amount, 1100.0)
        self.assertIsNone(tx.from_user_id)
        self.assertEqual(UserActivity.query.filter_by(action='position_closed').count(), 1)
        self.assertEqual(Notification.query.filter_by(user_id=self.user.id).count(), 1)

        self.notifier.emit.assert_called_once()
        self.assertIn('position_closed', self.emitted_events())
        self.assertIn('balance_update', self.emitted_events())
        self.assertEqual({c.kwargs['to'] for c in self.socketio.emit.call_args_list}, {f'user_{self.user.id}'})

    def test_expired_close_uses_auto_close_concept(self):
        position = self.create_position(self.user, direction='short', amount=500.0, open_price=100.0)
        result = self.manager.close_position(position, close_price=90.0, reason='expired')

        self.assertEqual(result.profit, 50.0)
        tx = PejeCoinTransaction.query.filter_by(reference_id=position.id).one()
        self.assertEqual(tx.concept, 'trade_auto_close')
        self.assertEqual(UserActivity.query.filter_by(action='position_auto_closed').count(), 1)
        self.price_service.get_price.assert_not_called()

    def test_total_loss_pays_nothing(self):
        position = self.create_position(self.user, direction='short', amount=1000.0, open_price=100.0)
        result = self.manager.close_position(position, close_price=300.0)
        self.assertEqual(result.profit, -1000.0)
        self.assertEqual(result.new_balance, 9000.0)

    def test_close_is_idempotent(self):
        position = self.create_position(self.user)
        first = self.manager.close_position(position)
        second = self.manager.close_position(position)

        self.assertIsNotNone(first)
        self.assertIsNone(second)
        self.assertEqual(self.user.pejecoins, 10100.0)
        self.assertEqual(PejeCoinTransaction.query.count(), 1)

    def test_position_claimed_elsewhere_is_skipped(self):
        position = self.create_position(self.user)
        # Another worker settles the row first
        TradePosition.query.filter_by(id=position.id).update({'status': 'closed'}, synchronize_session=False)
        db.session.commit()

        self.assertIsNone(self.manager.close_position(position, close_price=120.0))
        self.assertEqual(self.user.pejecoins, 9000.0)
        self.assertEqual(PejeCoinTransaction.query.count(), 0)

    def test_failure_rolls_back_whole_settlement(self):
        position = self.create_position(self.user)
        with patch('position_manager.Notification', side_effect=RuntimeError('boom')):
            with self.assertRaises(RuntimeError):
                self.manager.close_position(position)

        db.session.refresh(position)
        self.assertEqual(position.status, 'open')
        self.assertIsNone(position.profit)
        self.assertEqual(self.user.pejecoins, 9000.0)
        self.assertEqual(PejeCoinTransaction.query.count(), 0)
        self.assertEqual(UserActivity.query.count(), 0)
        self.socketio.emit.assert_not_called()

    def test_close_falls_back_to_last_price(self):
        self.price_service.get_price.side_effect = RuntimeError('feed down')
        position = self.create_position(self.user, open_price=100.0, current_price=105.0)
        result = self.manager.close_position(position)
        self.assertEqual(result.close_price, 105.0)
        self.assertEqual(result.profit, 50.0)

    def test_close_without_any_price_leaves_position_open(self):
        self.price_service.get_price.return_value = None
        position = self.create_position(self.user, current_price=None)
        with self.assertRaises(PositionError) as ctx:
            self.manager.close_position(position)
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertEqual(position.status, 'open')
        self.assertEqual(self.user.pejecoins, 9000.0)


class TestAutoClosePass(PositionManagerTestCase):

    def test_closes_only_expired_positions(self):
        expired_long = self.create_position(self.user, amount=1000.0, opened_ago=timedelta(minutes=10))
        expired_short = self.create_position(self.user, direction='short', amount=500.0,
                                             opened_ago=timedelta(minutes=6))
        expired_hours = self.create_position(self.user, instrument='ETH/USD', amount=200.0, duration_value=2,
                                             duration_unit='hour', opened_ago=timedelta(hours=3))
        running = self.create_position(self.user, opened_ago=timedelta(minutes=1))

        prices = {'BTC/USD': 110.0, 'ETH/USD': 90.0}
        self.price_service.get_price.side_effect = lambda instrument: prices[instrument]

        results = self.manager.check_and_close_expired_positions()

        self.assertEqual({r.position_id for r in results}, {expired_long.id, expired_short.id, expired_hours.id})
        # One price lookup per instrument
        self.assertEqual(self.price_service.get_price.call_count, 2)

        db.session.expire_all()
        self.assertEqual(db.session.get(TradePosition, running.id).status, 'open')
        for position_id in (expired_long.id, expired_short.id, expired_hours.id):
            position = db.session.get(TradePosition, position_id)
            self.assertEqual(position.status, 'closed')
            self.assertEqual(position.close_reason, 'expired')

        # 9000 + (1000 + 100) + (500 - 50) + (200 - 20)
        self.assertEqual(self.user.pejecoins, 10730.0)
        self.assertEqual(self.manager.last_pass, {'checked': 3, 'closed': 3, 'errors': 0})

    def test_no_expired_positions(self):
        self.create_position(self.user, opened_ago=timedelta(minutes=2))
        self.assertEqual(self.manager.check_and_close_expired_positions(), [])
        self.price_service.get_price.assert_not_called()

    def test_failure_on_one_position_does_not_stop_pass(self):
        first = self.create_position(self.user, opened_ago=timedelta(minutes=20))
        second = self.create_position(self.user, opened_ago=timedelta(minutes=10))
        original_close = self.manager.close_position
        calls = []

        def flaky_close(position, **kwargs):
            calls.append(position.id)
            if len(calls) == 1:
                raise RuntimeError('database hiccup')
            return original_close(position, **kwargs)

        with patch.object(self.manager, 'close_position', side_effect=flaky_close):
            results = self.manager.check_and_close_expired_positions()

        self.assertEqual(len(results), 1)
        self.assertEqual(self.manager.last_pass['errors'], 1)
        self.assertEqual(set(calls), {first.id, second.id})

    def test_unpriced_position_waits_for_next_pass(self):
        self.price_service.get_price.return_value = None
        marked = self.create_position(self.user, open_price=100.0, current_price=105.0,
                                      opened_ago=timedelta(minutes=10))
        unmarked = self.create_position(self.user, instrument='ETH/USD', current_price=None,
                                        opened_ago=timedelta(minutes=10))

        results = self.manager.check_and_close_expired_positions()

        self.assertEqual([r.position_id for r in results], [marked.id])
        self.assertEqual(results[0].close_price, 105.0)
        self.assertEqual(self.manager.last_pass['errors'], 1)
        db.session.refresh(unmarked)
        self.assertEqual(unmarked.status, 'open')

    def test_running_pass_twice_settles_once(self):
        self.create_position(self.user, opened_ago=timedelta(minutes=10))
        self.assertEqual(len(self.manager.check_and_close_expired_positions()), 1)
        self.assertEqual(self.manager.check_and_close_expired_positions(), [])
        self.assertEqual(PejeCoinTransaction.query.count(), 1)

    def test_check_specific_position(self):
        expired = self.create_position(self.user, opened_ago=timedelta(minutes=10))
        running = self.create_position(self.user, opened_ago=timedelta(minutes=1))

        self.assertIsNone(self.manager.check_specific_position(running.id))
        result = self.manager.check_specific_position(expired.id)
        self.assertEqual(result.position_id, expired.id)
        self.assertIsNone(self.manager.check_specific_position(expired.id))

        with self.assertRaises(PositionNotFoundError):
            self.manager.check_specific_position('missing')

    def test_auto_close_summary(self):
        self.create_position(self.user, opened_ago=timedelta(minutes=10))
        self.create_position(self.user, opened_ago=timedelta(minutes=2))
        self.create_position(self.user, duration_value=1, duration_unit='day')

        summary = self.manager.get_auto_close_summary()
        self.assertEqual(summary['open_count'], 3)
        self.assertEqual(summary['expired_unsettled_count'], 1)
        self.assertEqual(summary['expiring_soon_count'], 1)
        self.assertEqual(len(summary['expiring_soon']), 1)

    def test_update_open_position_prices(self):
        position = self.create_position(self.user, open_price=100.0)
        self.create_position(self.user, status='closed', open_price=100.0)

        self.assertEqual(self.manager.update_open_position_prices(), 1)
        db.session.refresh(position)
        self.assertEqual(position.current_price, 110.0)


class TestModifyPosition(PositionManagerTestCase):

    def setUp(self):
        super().setUp()
        self.admin = self.create_user('boss', role='admin')
        self.mentor = self.create_user('mentor', role='maestro')
        self.position = self.create_position(self.user)

    def test_admin_modification_is_audited(self):
        position = self.manager.modify_position(self.admin, self.position.id,
                                                {'stopLoss': 95, 'currentPrice': '105.5'}, 'Client request')
        self.assertEqual(position.stop_loss, 95.0)
        self.assertEqual(position.current_price, 105.5)

        audits = {m.field: m for m in PositionModification.query.all()}
        self.assertEqual(set(audits), {'stop_loss', 'current_price'})
        self.assertEqual(audits['current_price'].old_value, '100.0')
        self.assertEqual(audits['current_price'].new_value, '105.5')
        self.assertEqual(audits['stop_loss'].old_value, None)
        self.assertEqual(audits['stop_loss'].reason, 'Client request')
        self.assertEqual(audits['stop_loss'].modified_by, self.admin.id)
        self.assertIn('position_updated', self.emitted_events())

    def test_reason_required(self):
        with self.assertRaises(ValidationError):
            self.manager.modify_position(self.admin, self.position.id, {'stopLoss': 95}, '  ')

    def test_unknown_field_rejected(self):
        with self.assertRaises(ValidationError):
            self.manager.modify_position(self.admin, self.position.id, {'status': 'closed'}, 'nope')
        self.assertEqual(PositionModification.query.count(), 0)

    def test_invalid_value_rejected(self):
        with self.assertRaises(ValidationError):
            self.manager.modify_position(self.admin, self.position.id, {'durationUnit': 'week'}, 'longer')
        with self.assertRaises(ValidationError):
            self.manager.modify_position(self.admin, self.position.id, {'amount': -5}, 'bad')

    def test_maestro_needs_assignment(self):
        with self.assertRaises(PositionError) as ctx:
            self.manager.modify_position(self.mentor, self.position.id, {'takeProfit': 120}, 'coaching')
        self.assertEqual(ctx.exception.status_code, 403)

        db.session.add(MentorAssignment(mentor_id=self.mentor.id, user_id=self.user.id))
        db.session.commit()
        position = self.manager.modify_position(self.mentor, self.position.id, {'takeProfit': 120}, 'coaching')
        self.assertEqual(position.take_profit, 120.0)

    def test_client_cannot_modify(self):
        with self.assertRaises(PositionError):
            self.manager.modify_position(self.user, self.position.id, {'takeProfit': 120}, 'mine')

    def test_closed_position_cannot_be_modified(self):
        self.manager.close_position(self.position)
        with self.assertRaises(PositionError) as ctx:
            self.manager.modify_position(self.admin, self.position.id, {'takeProfit': 120}, 'late')
        self.assertEqual(ctx.exception.status_code, 409)

    def test_missing_position(self):
        with self.assertRaises(PositionNotFoundError):
            self.manager.modify_position(self.admin, 'missing', {'takeProfit': 120}, 'why')


if __name__ == '__main__':
    unittest.main()

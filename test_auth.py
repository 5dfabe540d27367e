"""
Tests for auth_service and the authentication endpoints.
"""
import unittest
from datetime import datetime, timedelta
from unittest.mock import patch

import pyotp

from testing_utils import BitPulseTestCase
from models import db, User, PejeCoinTransaction, UserActivity, current_utc
import auth_service
from auth_service import AuthError, LoginRateLimiter
from validators import ValidationError


def registration(**overrides):
    data = {
        'email': 'Ana@Example.com',
        'username': 'ana_trader',
        'password': 'correct-horse',
        'first_name': 'Ana',
        'last_name': 'Perez',
    }
    data.update(overrides)
    return data


class TestLoginRateLimiter(unittest.TestCase):

    def test_blocks_after_max_attempts(self):
        limiter = LoginRateLimiter(max_attempts=5, window=300)
        now = datetime(2024, 1, 1, 12, 0, 0)
        for _ in range(5):
            self.assertEqual(limiter.check('trader1', now), (True, 0))

        allowed, retry_after = limiter.check('trader1', now + timedelta(seconds=60))
        self.assertFalse(allowed)
        self.assertEqual(retry_after, 240)

    def test_window_expiry_resets_count(self):
        limiter = LoginRateLimiter(max_attempts=2, window=60)
        now = datetime(2024, 1, 1, 12, 0, 0)
        limiter.check('trader1', now)
        limiter.check('trader1', now)
        self.assertFalse(limiter.check('trader1', now)[0])
        self.assertTrue(limiter.check('trader1', now + timedelta(seconds=61))[0])

    def test_identifiers_are_case_insensitive(self):
        limiter = LoginRateLimiter(max_attempts=1, window=60)
        limiter.check('Trader1')
        self.assertFalse(limiter.check('TRADER1')[0])
        self.assertTrue(limiter.check('someone_else')[0])

    def test_reset(self):
        limiter = LoginRateLimiter(max_attempts=1, window=60)
        limiter.check('trader1')
        limiter.reset('Trader1')
        self.assertTrue(limiter.check('trader1')[0])


class TestRegistration(BitPulseTestCase):

    def test_register_grants_initial_coins(self):
        user = auth_service.register_user(self.app.config, registration())

        self.assertEqual(user.email, 'ana@example.com')
        self.assertEqual(user.role, 'cliente')
        self.assertEqual(user.pejecoins, 10000.0)
        self.assertFalse(user.email_confirmed)
        self.assertIsNotNone(user.confirmation_token)
        self.assertTrue(user.check_password('correct-horse'))

        grant = PejeCoinTransaction.query.filter_by(to_user_id=user.id).one()
        self.assertEqual(grant.concept, 'initial_grant')
        self.assertEqual(UserActivity.query.filter_by(user_id=user.id, action='user_registered').count(), 1)

    def test_duplicates_rejected(self):
        auth_service.register_user(self.app.config, registration())
        with self.assertRaises(AuthError) as ctx:
            auth_service.register_user(self.app.config, registration(email='ANA@example.com', username='other'))
        self.assertEqual(ctx.exception.status_code, 409)
        with self.assertRaises(AuthError) as ctx:
            auth_service.register_user(self.app.config, registration(email='new@example.com', username='Ana_Trader'))
        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(User.query.count(), 1)

    def test_invalid_fields(self):
        for data in (registration(email='nope'), registration(username='a b'), registration(password='short'), None):
            with self.assertRaises(ValidationError):
                auth_service.register_user(self.app.config, data)

    def test_approval_grace_period_started(self):
        config = {'ADMIN_APPROVAL_REQUIRED': True, 'ADMIN_APPROVAL_GRACE_DAYS': 3, 'INITIAL_PEJECOINS': 500}
        user = auth_service.register_user(config, registration())
        self.assertEqual(user.pejecoins, 500.0)
        self.assertTrue(user.admin_approval_required)
        self.assertFalse(user.admin_approved)
        self.assertEqual(user.admin_approval_expires_at - user.admin_approval_requested_at, timedelta(days=3))


class TestEmailConfirmation(BitPulseTestCase):

    def setUp(self):
        super().setUp()
        self.user = auth_service.register_user(self.app.config, registration())

    def test_confirm(self):
        token = self.user.confirmation_token
        user = auth_service.confirm_email(token)
        self.assertTrue(user.email_confirmed)
        self.assertIsNone(user.confirmation_token)

        with self.assertRaises(AuthError) as ctx:
            auth_service.confirm_email(token)
        self.assertEqual(ctx.exception.status_code, 404)

    def test_expired_token(self):
        self.user.confirmation_expires_at = current_utc() - timedelta(minutes=1)
        db.session.commit()
        with self.assertRaises(AuthError) as ctx:
            auth_service.confirm_email(self.user.confirmation_token)
        self.assertEqual(ctx.exception.status_code, 410)
        self.assertFalse(self.user.email_confirmed)

    def test_missing_token(self):
        with self.assertRaises(AuthError) as ctx:
            auth_service.confirm_email('')
        self.assertEqual(ctx.exception.status_code, 400)

    def test_resend(self):
        old_token = self.user.confirmation_token
        self.assertTrue(auth_service.resend_confirmation(self.app.config, 'ana@example.com'))
        self.assertNotEqual(self.user.confirmation_token, old_token)

        self.assertFalse(auth_service.resend_confirmation(self.app.config, 'ghost@example.com'))
        auth_service.confirm_email(self.user.confirmation_token)
        self.assertFalse(auth_service.resend_confirmation(self.app.config, 'ana@example.com'))

    def test_confirm_endpoint(self):
        response = self.request('GET', f'/api/auth/confirm?token={self.user.confirmation_token}')
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.get_json()['data']['email_confirmed'])

        response = self.request('POST', '/api/auth/confirm', json={'token': 'bogus'})
        self.assertEqual(response.status_code, 404)
        self.assertFalse(response.get_json()['success'])


class TestSendEmail(unittest.TestCase):

    CONFIG = {'MAIL_SERVER': 'smtp.test', 'MAIL_PORT': 587, 'MAIL_USE_TLS': True, 'MAIL_USERNAME': 'bot',
              'MAIL_PASSWORD': 'secret', 'MAIL_DEFAULT_SENDER': 'noreply@bitpulse.test'}

    def test_not_configured(self):
        self.assertFalse(auth_service.send_email({}, 'a@example.com', 'Hi', 'Body'))

    @patch('auth_service.smtplib.SMTP')
    def test_sends_message(self, smtp_class):
        self.assertTrue(auth_service.send_email(self.CONFIG, 'a@example.com', 'Hi', 'Body'))
        smtp_class.assert_called_once_with('smtp.test', 587, timeout=10)
        smtp = smtp_class.return_value.__enter__.return_value
        smtp.starttls.assert_called_once_with()
        smtp.login.assert_called_once_with('bot', 'secret')
        message = smtp.send_message.call_args.args[0]
        self.assertEqual(message['To'], 'a@example.com')
        self.assertEqual(message['Subject'], 'Hi')

    @patch('auth_service.smtplib.SMTP', side_effect=OSError('connection refused'))
    def test_failure_returns_false(self, smtp_class):
        self.assertFalse(auth_service.send_email(self.CONFIG, 'a@example.com', 'Hi', 'Body'))


class TestAccountOperations(BitPulseTestCase):

    def setUp(self):
        super().setUp()
        self.user = self.create_user('trader1')

    def test_authenticate(self):
        self.assertEqual(auth_service.authenticate('trader1@example.com', 'password123').id, self.user.id)
        self.assertEqual(auth_service.authenticate('TRADER1', 'password123').id, self.user.id)

        for identifier, password in (('trader1', 'wrong'), ('ghost', 'password123'), ('trader1', '')):
            with self.assertRaises(AuthError) as ctx:
                auth_service.authenticate(identifier, password)
            self.assertEqual(ctx.exception.status_code, 401)

    def test_authenticate_inactive(self):
        self.user.is_active = False
        db.session.commit()
        with self.assertRaises(AuthError) as ctx:
            auth_service.authenticate('trader1', 'password123')
        self.assertEqual(ctx.exception.status_code, 403)

    def test_change_password(self):
        with self.assertRaises(AuthError):
            auth_service.change_password(self.user, 'wrong', 'new-password')
        with self.assertRaises(ValidationError):
            auth_service.change_password(self.user, 'password123', 'password123')

        auth_service.change_password(self.user, 'password123', 'new-password')
        self.assertTrue(self.user.check_password('new-password'))
        self.assertEqual(UserActivity.query.filter_by(action='password_changed').count(), 1)

    def test_update_profile(self):
        self.create_user('taken')
        with self.assertRaises(AuthError) as ctx:
            auth_service.update_profile(self.user, {'username': 'Taken'})
        self.assertEqual(ctx.exception.status_code, 409)
        with self.assertRaises(ValidationError):
            auth_service.update_profile(self.user, {})

        auth_service.update_profile(self.user, {'first_name': 'Ana Maria', 'username': 'ana_maria'})
        self.assertEqual(self.user.username, 'ana_maria')
        self.assertEqual(self.user.first_name, 'Ana Maria')


class TestTwoFactor(BitPulseTestCase):

    def setUp(self):
        super().setUp()
        self.user = self.create_user('trader1')

    def test_setup_enable_disable(self):
        setup = auth_service.setup_two_factor(self.app.config, self.user)
        self.assertTrue(setup['provisioning_uri'].startswith('otpauth://totp/'))
        self.assertFalse(self.user.two_factor_enabled)

        with self.assertRaises(AuthError) as ctx:
            auth_service.enable_two_factor(self.user, 'abcdef')
        self.assertEqual(ctx.exception.status_code, 401)

        auth_service.enable_two_factor(self.user, pyotp.TOTP(setup['secret']).now())
        self.assertTrue(self.user.two_factor_enabled)

        with self.assertRaises(AuthError) as ctx:
            auth_service.setup_two_factor(self.app.config, self.user)
        self.assertEqual(ctx.exception.status_code, 409)

        auth_service.disable_two_factor(self.user, pyotp.TOTP(setup['secret']).now())
        self.assertFalse(self.user.two_factor_enabled)
        self.assertIsNone(self.user.two_factor_secret)

    def test_enable_without_setup(self):
        with self.assertRaises(AuthError):
            auth_service.enable_two_factor(self.user, '123456')

    def test_verify_totp_rejects_garbage(self):
        secret = pyotp.random_base32()
        self.assertFalse(auth_service.verify_totp(None, '123456'))
        self.assertFalse(auth_service.verify_totp(secret, None))
        self.assertFalse(auth_service.verify_totp(secret, 'abcdef'))
        code = pyotp.TOTP(secret).now()
        self.assertTrue(auth_service.verify_totp(secret, f' {code[:3]} {code[3:]} '))


class TestGracePeriod(BitPulseTestCase):

    def setUp(self):
        super().setUp()
        self.user = self.create_user('trader1')

    def test_not_required(self):
        status = auth_service.get_grace_period_status(self.user)
        self.assertFalse(status['approval_required'])
        self.assertFalse(status['expired'])
        self.assertIsNone(status['days_remaining'])

    def test_remaining_time(self):
        auth_service.start_grace_period(self.user, days=7)
        now = self.user.admin_approval_requested_at + timedelta(days=2, hours=3)
        status = auth_service.get_grace_period_status(self.user, now)
        self.assertTrue(status['approval_required'])
        self.assertFalse(status['expired'])
        self.assertEqual(status['days_remaining'], 4)
        self.assertEqual(status['hours_remaining'], 21)

    def test_expired(self):
        auth_service.start_grace_period(self.user, days=7)
        now = self.user.admin_approval_requested_at + timedelta(days=8)
        status = auth_service.get_grace_period_status(self.user, now)
        self.assertTrue(status['expired'])
        self.assertEqual(status['days_remaining'], 0)

    def test_approved_is_never_expired(self):
        auth_service.start_grace_period(self.user, days=7)
        self.user.admin_approved = True
        now = self.user.admin_approval_requested_at + timedelta(days=30)
        status = auth_service.get_grace_period_status(self.user, now)
        self.assertTrue(status['approved'])
        self.assertFalse(status['expired'])


class TestAuthApi(BitPulseTestCase):

    def test_register_endpoint(self):
        response = self.request('POST', '/api/auth/register', json=registration())
        self.assertEqual(response.status_code, 201)
        body = response.get_json()
        self.assertTrue(body['success'])
        self.assertEqual(body['data']['pejecoins'], 10000.0)
        self.assertFalse(body['data']['email_confirmed'])

        response = self.request('POST', '/api/auth/register', json=registration())
        self.assertEqual(response.status_code, 409)

        response = self.request('POST', '/api/auth/register', json=registration(email='bad'))
        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.get_json()['success'])

    def test_login_and_logout(self):
        user = self.create_user('trader1')
        response = self.login(user)
        self.assertFalse(response.get_json()['data']['requires_2fa'])
        self.assertEqual(UserActivity.query.filter_by(user_id=user.id, action='login').count(), 1)
        self.assertIsNotNone(user.last_login)

        self.assertEqual(self.request('GET', '/api/profile').status_code, 200)
        self.assertEqual(self.logout().status_code, 200)
        self.assertEqual(self.request('GET', '/api/profile').status_code, 401)

    def test_login_requires_fields(self):
        response = self.request('POST', '/api/auth/login', json={'identifier': 'trader1'})
        self.assertEqual(response.status_code, 400)

    def test_wrong_password_and_rate_limit(self):
        self.create_user('trader1')
        for _ in range(5):
            response = self.request('POST', '/api/auth/login', json={'identifier': 'trader1', 'password': 'nope'})
            self.assertEqual(response.status_code, 401)

        response = self.request('POST', '/api/auth/login', json={'identifier': 'trader1', 'password': 'password123'})
        self.assertEqual(response.status_code, 429)
        self.assertGreater(response.get_json()['data']['retry_after'], 0)

    def test_inactive_account(self):
        self.create_user('trader1', is_active=False)
        response = self.request('POST', '/api/auth/login', json={'identifier': 'trader1', 'password': 'password123'})
        self.assertEqual(response.status_code, 403)

    def test_two_factor_login(self):
        secret = pyotp.random_base32()
        self.create_user('trader1', two_factor_secret=secret, two_factor_enabled=True)

        response = self.request('POST', '/api/auth/login', json={'identifier': 'trader1', 'password': 'password123'})
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.get_json()['data']['requires_2fa'])
        self.assertEqual(self.request('GET', '/api/profile').status_code, 401)

        response = self.request('POST', '/api/auth/verify-2fa', json={'code': 'abcdef'})
        self.assertEqual(response.status_code, 401)

        response = self.request('POST', '/api/auth/verify-2fa', json={'code': pyotp.TOTP(secret).now()})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.request('GET', '/api/profile').status_code, 200)

    def test_verify_2fa_without_pending_login(self):
        response = self.request('POST', '/api/auth/verify-2fa', json={'code': '123456'})
        self.assertEqual(response.status_code, 400)

    def test_two_factor_setup_endpoints(self):
        user = self.create_user('trader1')
        self.login(user)
        secret = self.request('POST', '/api/auth/2fa/setup').get_json()['data']['secret']

        response = self.request('POST', '/api/auth/2fa/enable', json={'code': pyotp.TOTP(secret).now()})
        self.assertEqual(response.status_code, 200)
        self.assertTrue(user.two_factor_enabled)

    def test_change_password_endpoint(self):
        user = self.create_user('trader1')
        self.login(user)
        response = self.request('POST', '/api/profile/change-password',
                                json={'current_password': 'wrong', 'new_password': 'another-pass'})
        self.assertEqual(response.status_code, 401)
        response = self.request('POST', '/api/profile/change-password',
                                json={'current_password': 'password123', 'new_password': 'another-pass'})
        self.assertEqual(response.status_code, 200)
        self.assertTrue(user.check_password('another-pass'))

    def test_unauthenticated_envelope(self):
        response = self.request('GET', '/api/positions')
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.get_json(), {'success': False, 'message': 'Authentication required', 'data': None})

    def test_pages_redirect_to_login(self):
        response = self.request('GET', '/dashboard')
        self.assertEqual(response.status_code, 302)
        self.assertIn('/login', response.headers['Location'])

    def test_grace_period_endpoint(self):
        user = self.create_user('trader1')
        self.login(user)
        response = self.request('GET', '/api/auth/grace-period')
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.get_json()['data']['approval_required'])


if __name__ == '__main__':
    unittest.main()

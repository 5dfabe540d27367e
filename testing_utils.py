"""
Shared fixtures for the BitPulse test modules.

Importing this module selects the testing configuration (in-memory SQLite,
no CSRF, no scheduler autostart, no network price sources) before the app
module is loaded.
"""
import os
import unittest
from datetime import timedelta

os.environ['FLASK_ENV'] = 'testing'

from flask import g  # noqa: E402

from app import app, login_limiter  # noqa: E402
from models import db, User, TradePosition, current_utc  # noqa: E402

DEFAULT_PASSWORD = 'password123'


class BitPulseTestCase(unittest.TestCase):
    """Fresh database and test client for every test."""

    def setUp(self):
        self.app = app
        self.ctx = app.app_context()
        self.ctx.push()
        db.create_all()
        self.client = app.test_client()
        login_limiter.clear()

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.ctx.pop()

    def create_user(self, username='trader1', role='cliente', pejecoins=10000.0, password=DEFAULT_PASSWORD,
                    email=None, **fields):
        user = User(
            email=email or f'{username}@example.com',
            username=username,
            first_name=username.title(),
            role=role,
            pejecoins=pejecoins,
            email_confirmed=True,
            **fields
        )
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user

    def create_position(self, user, instrument='BTC/USD', direction='long', amount=1000.0, open_price=100.0,
                        duration_value=5, duration_unit='minute', opened_ago=None, **fields):
        """Insert an open position directly, without touching the balance."""
        open_time = current_utc() - (opened_ago or timedelta(0))
        position = TradePosition(
            user_id=user.id,
            instrument=instrument,
            direction=direction,
            stake=amount,
            amount=amount,
            leverage=fields.pop('leverage', 20),
            open_price=open_price,
            current_price=fields.pop('current_price', open_price),
            duration_value=duration_value,
            duration_unit=duration_unit,
            status=fields.pop('status', 'open'),
            open_time=open_time,
            **fields
        )
        db.session.add(position)
        db.session.commit()
        return position

    def request(self, method, url, **kwargs):
        """Issue a request with the cached Flask-Login user dropped.

        The test keeps one app context pushed, so the per-context user cache
        would otherwise leak between requests.
        """
        g.pop('_login_user', None)
        return self.client.open(url, method=method, **kwargs)

    def login(self, user, password=DEFAULT_PASSWORD):
        response = self.request('POST', '/api/auth/login', json={'identifier': user.username, 'password': password})
        self.assertEqual(response.status_code, 200, response.get_json())
        return response

    def logout(self):
        return self.request('POST', '/api/auth/logout')

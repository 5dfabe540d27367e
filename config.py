"""
Configuration settings for the BitPulse trading simulator.
"""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_flag(name, default):
    return os.environ.get(name, default).lower() in ['true', '1', 'yes']


class Config:
    """Base configuration class."""

    # Flask configuration
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-production'

    # Session security configuration
    SESSION_COOKIE_HTTPONLY = True  # Prevent JavaScript access to session cookie
    SESSION_COOKIE_SAMESITE = 'Lax'  # CSRF protection
    PERMANENT_SESSION_LIFETIME = 86400  # 24 hours

    # CSRF protection for HTML forms (Flask-WTF)
    WTF_CSRF_ENABLED = True
    WTF_CSRF_TIME_LIMIT = None

    # Database configuration
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:///bitpulse.db'
    # Fix for Heroku postgres URL
    if SQLALCHEMY_DATABASE_URI and SQLALCHEMY_DATABASE_URI.startswith('postgres://'):
        SQLALCHEMY_DATABASE_URI = SQLALCHEMY_DATABASE_URI.replace('postgres://', 'postgresql://')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Pejecoins granted to every new account
    INITIAL_PEJECOINS = float(os.environ.get('INITIAL_PEJECOINS', 10000))

    # Scheduler settings (seconds)
    AUTO_CLOSE_INTERVAL = int(os.environ.get('AUTO_CLOSE_INTERVAL', 60))
    PRICE_UPDATE_INTERVAL = int(os.environ.get('PRICE_UPDATE_INTERVAL', 1800))
    SCHEDULER_START_DELAY = int(os.environ.get('SCHEDULER_START_DELAY', 30))
    SCHEDULER_AUTOSTART = _env_flag('SCHEDULER_AUTOSTART', 'True')
    EXPIRING_SOON_MINUTES = int(os.environ.get('EXPIRING_SOON_MINUTES', 10))
    # Max relative gap between a quoted open price and the market price
    OPEN_PRICE_TOLERANCE = float(os.environ.get('OPEN_PRICE_TOLERANCE', 0.02))

    # Market data
    USE_BINANCE = _env_flag('USE_BINANCE', 'True')
    BINANCE_API_URL = os.environ.get('BINANCE_API_URL', 'https://api.binance.com')
    PRICE_SERVICE_URL = os.environ.get('PRICE_SERVICE_URL', 'http://localhost:5001')
    PRICE_REQUEST_TIMEOUT = int(os.environ.get('PRICE_REQUEST_TIMEOUT', 5))

    # Default leverage per market category, overridable from the admin panel
    DEFAULT_LEVERAGE = {
        'acciones': 5,
        'materias-primas': 10,
        'criptomonedas': 20,
        'divisas': 50,
        'indices': 100,
    }

    # Accounts created while approval is required get this many days to be approved
    ADMIN_APPROVAL_REQUIRED = _env_flag('ADMIN_APPROVAL_REQUIRED', 'False')
    ADMIN_APPROVAL_GRACE_DAYS = int(os.environ.get('ADMIN_APPROVAL_GRACE_DAYS', 7))

    # Email confirmation
    EMAIL_CONFIRMATION_HOURS = int(os.environ.get('EMAIL_CONFIRMATION_HOURS', 24))
    MAIL_SERVER = os.environ.get('MAIL_SERVER')
    MAIL_PORT = int(os.environ.get('MAIL_PORT', 587))
    MAIL_USERNAME = os.environ.get('MAIL_USERNAME')
    MAIL_PASSWORD = os.environ.get('MAIL_PASSWORD')
    MAIL_USE_TLS = _env_flag('MAIL_USE_TLS', 'True')
    MAIL_DEFAULT_SENDER = os.environ.get('MAIL_DEFAULT_SENDER', 'no-reply@bitpulse.local')
    APP_BASE_URL = os.environ.get('APP_BASE_URL', 'http://localhost:5000')

    # Login throttling
    LOGIN_RATE_LIMIT_ATTEMPTS = int(os.environ.get('LOGIN_RATE_LIMIT_ATTEMPTS', 5))
    LOGIN_RATE_LIMIT_WINDOW = int(os.environ.get('LOGIN_RATE_LIMIT_WINDOW', 300))

    TOTP_ISSUER = os.environ.get('TOTP_ISSUER', 'BitPulse Trading')


class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True
    FLASK_ENV = 'development'
    SCHEDULER_START_DELAY = int(os.environ.get('SCHEDULER_START_DELAY', 2))


class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False
    FLASK_ENV = 'production'

    # Use secure secret key in production - use fallback if not set (will warn)
    SECRET_KEY = os.environ.get('SECRET_KEY')
    if not SECRET_KEY:
        import warnings
        warnings.warn("SECRET_KEY environment variable not set. Using fallback for development.")
        SECRET_KEY = 'fallback-secret-key-set-proper-key-in-production'

    # Ensure HTTPS in production
    SESSION_COOKIE_SECURE = True
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'


class TestingConfig(Config):
    """Configuration used by the test suite."""
    TESTING = True
    SECRET_KEY = 'testing-secret-key'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    WTF_CSRF_ENABLED = False
    SCHEDULER_AUTOSTART = False
    USE_BINANCE = False
    PRICE_SERVICE_URL = None
    MAIL_SERVER = None
    ADMIN_APPROVAL_REQUIRED = False


# Configuration mapping
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}

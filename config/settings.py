# config/settings.py
"""
Configuration for the review verification service

Values are read from the environment once at import time. ``create_app``
loads one of these classes and then applies explicit overrides, so tests can
point the service at a temporary data directory.
"""

import os
from datetime import timedelta


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


class ReviewSystemConfig:
    """Production configuration"""

    SECRET_KEY = os.environ.get('SECRET_KEY')
    VERSION = os.environ.get('APP_VERSION', '1.0.0')
    ENVIRONMENT = os.environ.get('FLASK_ENV', 'production')

    # Storage
    DATA_DIR = os.environ.get('REVIEW_DATA_DIR', 'data')

    # Site
    SITE_URL = os.environ.get('NEXT_PUBLIC_SITE_URL', 'http://localhost:3000').rstrip('/')
    SITE_NAME = os.environ.get('REVIEW_SITE_NAME', 'Portfolio')
    OWNER_NAME = os.environ.get('REVIEW_OWNER_NAME', 'Site Owner')

    # Email delivery (Resend)
    RESEND_API_KEY = os.environ.get('RESEND_API_KEY')
    REVIEW_FROM_EMAIL = os.environ.get('REVIEW_FROM_EMAIL', 'noreply@resend.dev')
    REVIEW_REPLY_TO_EMAIL = os.environ.get('REVIEW_REPLY_TO_EMAIL', 'noreply@resend.dev')
    REVIEW_ADMIN_EMAIL = os.environ.get('REVIEW_ADMIN_EMAIL')
    EMAIL_DAILY_LIMIT = _env_int('EMAIL_DAILY_LIMIT', 90)
    EMAIL_MONTHLY_LIMIT = _env_int('EMAIL_MONTHLY_LIMIT', 2800)
    EMAIL_SEND_TIMEOUT = _env_int('EMAIL_SEND_TIMEOUT', 10)
    EMAIL_MAX_RETRIES = _env_int('EMAIL_MAX_RETRIES', 0)
    EMAIL_RETRY_DELAY = _env_int('EMAIL_RETRY_DELAY', 5)

    # Verification workflow
    VERIFICATION_EXPIRY_HOURS = _env_int('VERIFICATION_EXPIRY_HOURS', 24)
    TOKEN_MAX_ATTEMPTS = _env_int('TOKEN_MAX_ATTEMPTS', 5)
    TOKEN_MAX_AGE = timedelta(days=_env_int('TOKEN_MAX_AGE_DAYS', 7))
    WORKFLOW_RETENTION_DAYS = _env_int('WORKFLOW_RETENTION_DAYS', 30)
    SEND_ADMIN_NOTIFICATIONS = _env_bool('SEND_ADMIN_NOTIFICATIONS', True)
    SEND_APPROVAL_NOTIFICATIONS = _env_bool('SEND_APPROVAL_NOTIFICATIONS', True)
    SEND_REJECTION_NOTIFICATIONS = _env_bool('SEND_REJECTION_NOTIFICATIONS', False)

    # Admin API
    ADMIN_API_TOKEN = os.environ.get('ADMIN_API_TOKEN')

    # Public display
    DISPLAY_DEFAULT_LIMIT = 12
    DISPLAY_MAX_LIMIT = 50
    DISPLAY_CACHE_CONTROL = 'public, max-age=3600, s-maxage=7200'

    # Rate limiting
    RATELIMIT_ENABLED = True
    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI', 'memory://')
    RATELIMIT_STRATEGY = 'fixed-window'
    RATELIMIT_HEADERS_ENABLED = True
    RATELIMIT_DEFAULT = '1000 per hour'
    RATELIMIT_SUBMIT = '5 per hour'
    RATELIMIT_VERIFY = '10 per hour'

    # CORS
    CORS_ORIGINS = [SITE_URL]

    # Logging
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_FILE = os.environ.get('LOG_FILE')

    MAX_CONTENT_LENGTH = 64 * 1024
    BEHIND_PROXY = _env_bool('BEHIND_PROXY', False)

    # Security headers
    SECURITY_HEADERS = {
        'X-Content-Type-Options': 'nosniff',
        'X-Frame-Options': 'DENY',
        'X-XSS-Protection': '1; mode=block',
        'Referrer-Policy': 'strict-origin-when-cross-origin',
        'Permissions-Policy': 'camera=(), microphone=(), geolocation=()'
    }


class DevelopmentConfig(ReviewSystemConfig):
    """Local development configuration"""

    ENVIRONMENT = 'development'
    DEBUG = True
    LOG_LEVEL = 'DEBUG'
    CORS_ORIGINS = ['http://localhost:3000', 'http://127.0.0.1:3000']


class TestingConfig(ReviewSystemConfig):
    """Configuration used by the test suite"""

    ENVIRONMENT = 'test'
    TESTING = True
    SECRET_KEY = 'testing'
    RESEND_API_KEY = 'test-key'
    SITE_URL = 'https://example.test'
    REVIEW_ADMIN_EMAIL = 'owner@example.test'
    ADMIN_API_TOKEN = None
    RATELIMIT_ENABLED = False
    EMAIL_RETRY_DELAY = 0


CONFIG_BY_NAME = {
    'production': ReviewSystemConfig,
    'development': DevelopmentConfig,
    'testing': TestingConfig,
}

import os
from dotenv import load_dotenv

load_dotenv(override=True)


def _env_bool(name, default='false'):
    return os.getenv(name, default).strip().lower() in {'1', 'true', 'yes'}


class Config:
    """
    Base configuration for the Mailroom delivery engine.
    Projects should provide database paths via environment variables.
    """
    SECRET_KEY = os.getenv('FLASK_SECRET_KEY')

    # Get DB_DIR from environment, or use a default if not set
    DB_DIR = os.getenv('DB_DIR', os.path.join(os.getcwd(), 'databases'))

    # Database paths - use environment variables or fallback to DB_DIR
    USER_DB = os.getenv('USER_DB', os.path.join(DB_DIR, "users.db"))
    ANALYTICS_DB = os.getenv('ANALYTICS_DB', os.path.join(DB_DIR, "analytics_log.db"))

    # Table names
    SUBSCRIBERS = "subscribers"
    CAMPAIGNS_TABLE = "campaigns"
    DELIVERIES_TABLE = "campaign_deliveries"
    SNAPSHOTS_TABLE = "campaign_snapshots"

    # Email settings
    EMAIL_PROVIDER = os.getenv('EMAIL_PROVIDER', 'resend')
    EMAIL_ADDRESS = os.getenv("EMAIL_ADDRESS", "no-reply@example.com")
    EMAIL_PASSWORD = os.getenv("EMAIL_PASSWORD")
    EMAIL_HOST = os.getenv("EMAIL_HOST", "smtp.gmail.com")
    EMAIL_PORT = int(os.getenv("EMAIL_PORT", "587"))
    EMAIL_SEND_TIMEOUT = int(os.getenv("EMAIL_SEND_TIMEOUT", "10"))
    EMAIL_BRAND_NAME = os.getenv('EMAIL_BRAND_NAME', 'Newsletter')
    EMAIL_WEBSITE_URL = os.getenv('EMAIL_WEBSITE_URL', 'http://localhost:5000')
    AWS_REGION = os.getenv('AWS_REGION', 'eu-west-1')

    # Resend API settings
    RESEND_API_KEY = os.getenv('RESEND_API_KEY') or os.getenv('RESEND')

    # Timezones and quiet hours
    DEFAULT_TIMEZONE = os.getenv('DEFAULT_TIMEZONE', 'UTC')
    ENABLE_QUIET_HOURS = _env_bool('ENABLE_QUIET_HOURS')
    QUIET_HOURS_START = int(os.getenv('QUIET_HOURS_START', '22'))
    QUIET_HOURS_END = int(os.getenv('QUIET_HOURS_END', '8'))

    # Dispatch
    DISPATCH_BATCH_SIZE = int(os.getenv('DISPATCH_BATCH_SIZE', '50'))
    DISPATCH_CONCURRENCY = int(os.getenv('DISPATCH_CONCURRENCY', '10'))
    DISPATCH_MAX_ATTEMPTS = int(os.getenv('DISPATCH_MAX_ATTEMPTS', '3'))
    DISPATCH_BACKOFF_BASE_SECONDS = int(os.getenv('DISPATCH_BACKOFF_BASE_SECONDS', '60'))
    DISPATCH_BACKOFF_MAX_SECONDS = int(os.getenv('DISPATCH_BACKOFF_MAX_SECONDS', '3600'))
    DISPATCH_LEASE_SECONDS = int(os.getenv('DISPATCH_LEASE_SECONDS', '900'))

    # Scheduler
    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED')
    SCHEDULER_INTERVAL_SECONDS = int(os.getenv('SCHEDULER_INTERVAL_SECONDS', '60'))
    CRON_SECRET = os.getenv('CRON_SECRET')

    # Shared token expected on provider webhooks (unset = accept all)
    WEBHOOK_SECRET = os.getenv('WEBHOOK_SECRET')

    # Weekly digest (recurring campaign)
    DIGEST_ENABLED = _env_bool('DIGEST_ENABLED')
    DIGEST_WEEKDAY = int(os.getenv('DIGEST_WEEKDAY', '6'))  # Monday=0 .. Sunday=6
    DIGEST_HOUR = int(os.getenv('DIGEST_HOUR', '9'))
    DIGEST_TOP_N = int(os.getenv('DIGEST_TOP_N', '5'))
    DIGEST_WINDOW_DAYS = int(os.getenv('DIGEST_WINDOW_DAYS', '7'))
    DIGEST_LEAD_MINUTES = int(os.getenv('DIGEST_LEAD_MINUTES', '60'))

    # Analytics snapshots
    SNAPSHOT_INTERVAL_MINUTES = int(os.getenv('SNAPSHOT_INTERVAL_MINUTES', '60'))
    SNAPSHOT_TRACKING_DAYS = int(os.getenv('SNAPSHOT_TRACKING_DAYS', '7'))

    # Degraded mode
    DEGRADED_MODE = _env_bool('DEGRADED_MODE')
    ANALYTICS_SYNTHETIC_FALLBACK = _env_bool('ANALYTICS_SYNTHETIC_FALLBACK', 'true')

    # Port for local server (optional, projects can set this)
    port = int(os.getenv('PORT', '5000'))


def get_setting(key, default=None):
    """Resolve a setting: app.config > Config class > env var > default (3-tier pattern)"""
    try:
        from flask import current_app
        if key in current_app.config and current_app.config[key] is not None:
            return current_app.config[key]
    except RuntimeError:
        pass
    if getattr(Config, key, None) is not None:
        return getattr(Config, key)
    return os.getenv(key, default)


def get_int_setting(key, default=0):
    try:
        return int(get_setting(key, default))
    except (TypeError, ValueError):
        return default


def get_bool_setting(key, default=False):
    value = get_setting(key, default)
    if isinstance(value, str):
        return value.strip().lower() in {'1', 'true', 'yes'}
    return bool(value)

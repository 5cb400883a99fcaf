"""
Subscribers Models
==================

Recipient Store: subscriber records, status lifecycle and delivery preferences.
Tables live in USER_DB alongside campaigns.

Status lifecycle:
    PENDING --confirm--> ACTIVE --unsubscribe--> UNSUBSCRIBED --confirm--> ACTIVE
    any --hard bounce / complaint--> SUPPRESSED --resubscribe--> PENDING (full opt-in again)

SUPPRESSED never moves to ACTIVE directly.
"""

import json
import re
import logging

from mailroom.core import Database, get_setting, to_db_time, utcnow

logger = logging.getLogger(__name__)

PENDING = 'PENDING'
ACTIVE = 'ACTIVE'
UNSUBSCRIBED = 'UNSUBSCRIBED'
SUPPRESSED = 'SUPPRESSED'

STATUSES = (PENDING, ACTIVE, UNSUBSCRIBED, SUPPRESSED)

FREQUENCIES = ('daily', 'weekly', 'monthly')

# Rejects consecutive dots, leading/trailing dots in local part
EMAIL_REGEX = re.compile(r'^[a-zA-Z0-9_%+-]+(\.[a-zA-Z0-9_%+-]+)*@[a-zA-Z0-9-]+(\.[a-zA-Z0-9-]+)*\.[a-zA-Z]{2,}$')


def _db_log(level, message, details=None):
    """Log to framework's persistent DB logger"""
    try:
        from mailroom.core import db_log
        db_log(level, 'subscribers', message, details)
    except Exception:
        pass


def get_db_config():
    """Get the database path from config or environment (3-tier pattern)"""
    return get_setting('USER_DB', 'users.db')


def init_subscribers_db():
    """Initialize the subscribers table in the database"""
    db_path = get_db_config()
    Database.ensure_dir(db_path)

    with Database.connect(db_path) as conn:
        cursor = conn.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS subscribers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT UNIQUE NOT NULL,
                status TEXT NOT NULL DEFAULT 'PENDING',
                timezone TEXT,
                frequency TEXT DEFAULT 'weekly',
                feeds TEXT DEFAULT '[]',
                source TEXT DEFAULT 'website',
                ip_address TEXT,
                user_agent TEXT,
                subscribed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                confirmed_at TIMESTAMP,
                unsubscribed_at TIMESTAMP,
                suppressed_at TIMESTAMP,
                suppression_reason TEXT,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE INDEX IF NOT EXISTS idx_subscribers_status
            ON subscribers(status)
        ''')

    logger.info("Subscribers database table created/verified successfully")


def normalize_email(email):
    return (email or '').strip().lower()


def validate_email(email):
    """Validate email format"""
    if not email or len(email) > 255:
        return False
    return EMAIL_REGEX.match(normalize_email(email)) is not None


def add_subscriber(email, timezone=None, feeds=None, frequency='weekly',
                   source='website', ip_address=None, user_agent=None):
    """Create a PENDING subscriber. Returns (subscriber dict, created flag).

    An existing email is returned untouched; status changes go through the
    dedicated lifecycle functions.
    """
    email = normalize_email(email)
    existing = get_subscriber_by_email(email)
    if existing:
        return existing, False

    with Database.connect(get_db_config()) as conn:
        conn.execute('''
            INSERT OR IGNORE INTO subscribers
                (email, status, timezone, frequency, feeds, source, ip_address, user_agent)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            email, PENDING, timezone, frequency or 'weekly',
            json.dumps(feeds or []), source, ip_address, user_agent
        ))

    logger.info(f"New subscriber added: {email}")
    _db_log('info', f'New subscriber: {email}', {'source': source})
    return get_subscriber_by_email(email), True


def confirm_subscriber(email):
    """PENDING or UNSUBSCRIBED -> ACTIVE. Returns True if the status changed."""
    now = to_db_time(utcnow())
    with Database.connect(get_db_config()) as conn:
        cursor = conn.execute('''
            UPDATE subscribers
            SET status = ?, confirmed_at = ?, updated_at = ?
            WHERE email = ? AND status IN (?, ?)
        ''', (ACTIVE, now, now, normalize_email(email), PENDING, UNSUBSCRIBED))
        changed = cursor.rowcount > 0

    if changed:
        logger.info(f"Subscriber confirmed: {email}")
    return changed


def unsubscribe_subscriber(email):
    """ACTIVE or PENDING -> UNSUBSCRIBED. Returns True if the status changed."""
    now = to_db_time(utcnow())
    with Database.connect(get_db_config()) as conn:
        cursor = conn.execute('''
            UPDATE subscribers
            SET status = ?, unsubscribed_at = ?, updated_at = ?
            WHERE email = ? AND status IN (?, ?)
        ''', (UNSUBSCRIBED, now, now, normalize_email(email), ACTIVE, PENDING))
        changed = cursor.rowcount > 0

    if changed:
        logger.info(f"Unsubscribed: {email}")
    return changed


def mark_unsubscribed(subscriber_id):
    """Unsubscribe by id (provider unsubscribe event). Suppressed rows are left alone."""
    now = to_db_time(utcnow())
    with Database.connect(get_db_config()) as conn:
        cursor = conn.execute('''
            UPDATE subscribers
            SET status = ?, unsubscribed_at = ?, updated_at = ?
            WHERE id = ? AND status IN (?, ?)
        ''', (UNSUBSCRIBED, now, now, subscriber_id, ACTIVE, PENDING))
        return cursor.rowcount > 0


def resubscribe(email):
    """Restart the opt-in flow: SUPPRESSED or UNSUBSCRIBED -> PENDING.

    This is the only way out of SUPPRESSED; the subscriber still has to
    confirm before receiving anything.
    """
    now = to_db_time(utcnow())
    with Database.connect(get_db_config()) as conn:
        cursor = conn.execute('''
            UPDATE subscribers
            SET status = ?, updated_at = ?
            WHERE email = ? AND status IN (?, ?)
        ''', (PENDING, now, normalize_email(email), SUPPRESSED, UNSUBSCRIBED))
        changed = cursor.rowcount > 0

    if changed:
        logger.info(f"Resubscription started for: {email}")
        _db_log('info', 'Resubscription started', {'email': email})
    return changed


def suppress_subscriber(subscriber_id, reason):
    """Mark a subscriber SUPPRESSED. Idempotent: returns True only on the first call."""
    now = to_db_time(utcnow())
    with Database.connect(get_db_config()) as conn:
        cursor = conn.execute('''
            UPDATE subscribers
            SET status = ?, suppressed_at = ?, suppression_reason = ?, updated_at = ?
            WHERE id = ? AND status != ?
        ''', (SUPPRESSED, now, reason, now, subscriber_id, SUPPRESSED))
        changed = cursor.rowcount > 0

    if changed:
        logger.warning(f"Subscriber {subscriber_id} suppressed: {reason}")
        _db_log('warning', 'Subscriber suppressed', {'subscriber_id': subscriber_id, 'reason': reason})
    return changed


def update_preferences(email, timezone=None, frequency=None, feeds=None):
    """Update delivery preferences. An invalid timezone is ignored and the stored one kept."""
    from mailroom.modules.campaigns.quiet_hours import is_valid_timezone

    subscriber = get_subscriber_by_email(email)
    if not subscriber:
        return None

    if timezone is not None and not is_valid_timezone(timezone):
        logger.warning(f"Ignoring invalid timezone '{timezone}' for {email}")
        timezone = None
    if frequency is not None and frequency not in FREQUENCIES:
        frequency = subscriber['frequency']

    with Database.connect(get_db_config()) as conn:
        conn.execute('''
            UPDATE subscribers
            SET timezone = ?, frequency = ?, feeds = ?, updated_at = ?
            WHERE id = ?
        ''', (
            timezone if timezone is not None else subscriber['timezone'],
            frequency or subscriber['frequency'],
            json.dumps(feeds if feeds is not None else subscriber['feeds']),
            to_db_time(utcnow()),
            subscriber['id'],
        ))

    return get_subscriber(subscriber['id'])


def get_subscriber(subscriber_id):
    with Database.connect(get_db_config()) as conn:
        row = conn.execute('SELECT * FROM subscribers WHERE id = ?', (subscriber_id,)).fetchone()
        return _row_to_dict(row) if row else None


def get_subscriber_by_email(email):
    with Database.connect(get_db_config()) as conn:
        row = conn.execute(
            'SELECT * FROM subscribers WHERE email = ?', (normalize_email(email),)
        ).fetchone()
        return _row_to_dict(row) if row else None


def get_eligible_subscribers(feeds=None):
    """ACTIVE subscribers matching the campaign's topic filters.

    A subscriber with no feeds receives everything; a campaign with no feeds
    goes to every ACTIVE subscriber.
    """
    with Database.connect(get_db_config()) as conn:
        rows = conn.execute(
            'SELECT * FROM subscribers WHERE status = ? ORDER BY id', (ACTIVE,)
        ).fetchall()

    subscribers = [_row_to_dict(row) for row in rows]
    if not feeds:
        return subscribers

    wanted = set(feeds)
    return [s for s in subscribers if not s['feeds'] or wanted & set(s['feeds'])]


def get_status_counts():
    with Database.connect(get_db_config()) as conn:
        rows = conn.execute('SELECT status, COUNT(*) FROM subscribers GROUP BY status').fetchall()
    counts = {status: 0 for status in STATUSES}
    counts.update({row[0]: row[1] for row in rows})
    return counts


def _row_to_dict(row):
    """Convert a sqlite3.Row to a dict with parsed feeds JSON"""
    d = dict(row)
    if isinstance(d.get('feeds'), str):
        try:
            d['feeds'] = json.loads(d['feeds'])
        except (json.JSONDecodeError, TypeError):
            d['feeds'] = []
    d['feeds'] = d.get('feeds') or []
    return d

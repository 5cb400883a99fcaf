"""
Campaigns Models
================

Campaign Store: campaigns, their lifecycle state and per-recipient delivery
records. Tables live in USER_DB alongside subscribers.

Every state change is a conditional UPDATE (``WHERE state IN (...)``) and the
caller learns whether it won from ``rowcount``. Nothing here reads a row,
decides, then writes it back.
"""

import json
import logging
from datetime import timedelta

from mailroom.core import Database, get_setting, to_db_time, utcnow

logger = logging.getLogger(__name__)


class CampaignState:
    DRAFT = 'DRAFT'
    SCHEDULED = 'SCHEDULED'
    SENDING = 'SENDING'
    SENT = 'SENT'
    CANCELLED = 'CANCELLED'
    FAILED = 'FAILED'

    ALL = (DRAFT, SCHEDULED, SENDING, SENT, CANCELLED, FAILED)
    TERMINAL = (SENT, CANCELLED, FAILED)
    NON_TERMINAL = (DRAFT, SCHEDULED, SENDING)


class DeliveryState:
    QUEUED = 'QUEUED'
    SENT = 'SENT'
    DELIVERED = 'DELIVERED'
    BOUNCED_SOFT = 'BOUNCED_SOFT'
    BOUNCED_HARD = 'BOUNCED_HARD'
    COMPLAINED = 'COMPLAINED'
    FAILED = 'FAILED'
    CANCELLED = 'CANCELLED'

    ALL = (QUEUED, SENT, DELIVERED, BOUNCED_SOFT, BOUNCED_HARD, COMPLAINED, FAILED, CANCELLED)
    TERMINAL = (SENT, DELIVERED, BOUNCED_SOFT, BOUNCED_HARD, COMPLAINED, FAILED, CANCELLED)


# Columns transition_campaign() / update_campaign_content() may write
_CAMPAIGN_FIELDS = {
    'name', 'subject', 'blocks', 'template', 'feeds',
    'scheduled_at', 'started_at', 'sent_at', 'cancelled_at', 'cancel_reason',
    'failed_at', 'failure_reason', 'fanned_out_at',
}

_DELIVERY_TIMESTAMPS = {
    'sent_at', 'delivered_at', 'bounced_at', 'complained_at',
    'opened_at', 'clicked_at', 'unsubscribed_at',
}


def _db_log(level, message, details=None):
    """Log to framework's persistent DB logger"""
    try:
        from mailroom.core import db_log
        db_log(level, 'campaigns', message, details)
    except Exception:
        pass


def get_db_config():
    """Get the database path from config or environment (3-tier pattern)"""
    return get_setting('USER_DB', 'users.db')


def init_campaigns_db():
    """Create campaigns and campaign_deliveries tables in USER_DB"""
    db_path = get_db_config()
    Database.ensure_dir(db_path)

    with Database.connect(db_path) as conn:
        cursor = conn.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS campaigns (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                subject TEXT NOT NULL DEFAULT '',
                blocks TEXT NOT NULL DEFAULT '[]',
                template TEXT,
                feeds TEXT NOT NULL DEFAULT '[]',
                state TEXT NOT NULL DEFAULT 'DRAFT',
                recurrence_key TEXT UNIQUE,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                scheduled_at TEXT,
                started_at TEXT,
                fanned_out_at TEXT,
                sent_at TEXT,
                cancelled_at TEXT,
                cancel_reason TEXT,
                failed_at TEXT,
                failure_reason TEXT
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS campaign_deliveries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                campaign_id INTEGER NOT NULL,
                subscriber_id INTEGER NOT NULL,
                recipient_email TEXT NOT NULL,
                timezone TEXT,
                state TEXT NOT NULL DEFAULT 'QUEUED',
                attempts INTEGER NOT NULL DEFAULT 0,
                last_attempt_at TEXT,
                next_attempt_at TEXT,
                leased_until TEXT,
                error_message TEXT,
                permanent_failure INTEGER NOT NULL DEFAULT 0,
                provider_message_id TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                sent_at TEXT,
                delivered_at TEXT,
                bounced_at TEXT,
                complained_at TEXT,
                opened_at TEXT,
                clicked_at TEXT,
                unsubscribed_at TEXT,
                UNIQUE (campaign_id, subscriber_id),
                FOREIGN KEY (campaign_id) REFERENCES campaigns(id)
            )
        ''')

        cursor.execute('''
            CREATE INDEX IF NOT EXISTS idx_campaigns_state_scheduled
            ON campaigns(state, scheduled_at)
        ''')
        cursor.execute('''
            CREATE INDEX IF NOT EXISTS idx_deliveries_campaign_state
            ON campaign_deliveries(campaign_id, state)
        ''')
        cursor.execute('''
            CREATE INDEX IF NOT EXISTS idx_deliveries_email
            ON campaign_deliveries(recipient_email)
        ''')
        cursor.execute('''
            CREATE INDEX IF NOT EXISTS idx_deliveries_message_id
            ON campaign_deliveries(provider_message_id)
        ''')

    logger.info("Campaigns database tables created/verified successfully")


# ===================
# CAMPAIGNS
# ===================

def create_campaign(data, now=None):
    """Insert a DRAFT campaign. Returns the new id.

    A duplicate ``recurrence_key`` raises sqlite3.IntegrityError.
    """
    stamp = to_db_time(now or utcnow())
    with Database.connect(get_db_config()) as conn:
        cursor = conn.execute('''
            INSERT INTO campaigns
                (name, subject, blocks, template, feeds, state, recurrence_key, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            data.get('name', ''),
            data.get('subject', ''),
            json.dumps(data.get('blocks') or []),
            data.get('template'),
            json.dumps(data.get('feeds') or []),
            CampaignState.DRAFT,
            data.get('recurrence_key'),
            stamp,
            stamp,
        ))
        campaign_id = cursor.lastrowid

    logger.info(f"Created campaign {campaign_id}: {data.get('name')}")
    return campaign_id


def get_campaign(campaign_id):
    with Database.connect(get_db_config()) as conn:
        row = conn.execute('SELECT * FROM campaigns WHERE id = ?', (campaign_id,)).fetchone()
        return _campaign_to_dict(row) if row else None


def get_campaign_by_recurrence_key(recurrence_key):
    with Database.connect(get_db_config()) as conn:
        row = conn.execute(
            'SELECT * FROM campaigns WHERE recurrence_key = ?', (recurrence_key,)
        ).fetchone()
        return _campaign_to_dict(row) if row else None


def list_campaigns(state=None, limit=100):
    """Campaigns, most recently updated first"""
    with Database.connect(get_db_config()) as conn:
        if state:
            rows = conn.execute(
                'SELECT * FROM campaigns WHERE state = ? ORDER BY updated_at DESC, id DESC LIMIT ?',
                (state, limit)
            ).fetchall()
        else:
            rows = conn.execute(
                'SELECT * FROM campaigns ORDER BY updated_at DESC, id DESC LIMIT ?', (limit,)
            ).fetchall()
        return [_campaign_to_dict(row) for row in rows]


def transition_campaign(campaign_id, from_states, to_state, now=None, **fields):
    """
    Conditionally move a campaign between states.

    Only succeeds while the campaign is still in one of ``from_states``; this is
    the claim primitive. Extra keyword fields are written in the same UPDATE.

    Returns:
        bool: True if this caller performed the transition
    """
    unknown = set(fields) - _CAMPAIGN_FIELDS
    if unknown:
        raise ValueError(f"Unknown campaign fields: {sorted(unknown)}")

    stamp = to_db_time(now or utcnow())
    assignments = ['state = ?', 'updated_at = ?']
    params = [to_state, stamp]
    for column, value in fields.items():
        assignments.append(f'{column} = ?')
        params.append(_encode_field(column, value))

    placeholders = ', '.join('?' for _ in from_states)
    params.append(campaign_id)
    params.extend(from_states)

    with Database.connect(get_db_config()) as conn:
        cursor = conn.execute(
            f'UPDATE campaigns SET {", ".join(assignments)} '
            f'WHERE id = ? AND state IN ({placeholders})',
            params
        )
        won = cursor.rowcount == 1

    if won:
        logger.info(f"Campaign {campaign_id}: -> {to_state}")
        _db_log('info', f'Campaign {campaign_id} -> {to_state}', {'from': list(from_states)})
    return won


def update_campaign_content(campaign_id, fields, now=None):
    """Write content fields while ``sent_at`` is unset. Returns True on success."""
    unknown = set(fields) - {'name', 'subject', 'blocks', 'template', 'feeds'}
    if unknown:
        raise ValueError(f"Unknown campaign fields: {sorted(unknown)}")
    if not fields:
        return True

    assignments = ['updated_at = ?']
    params = [to_db_time(now or utcnow())]
    for column, value in fields.items():
        assignments.append(f'{column} = ?')
        params.append(_encode_field(column, value))
    params.append(campaign_id)

    with Database.connect(get_db_config()) as conn:
        cursor = conn.execute(
            f'UPDATE campaigns SET {", ".join(assignments)} WHERE id = ? AND sent_at IS NULL',
            params
        )
        return cursor.rowcount == 1


def get_due_campaigns(now):
    """SCHEDULED campaigns whose time has come"""
    with Database.connect(get_db_config()) as conn:
        rows = conn.execute('''
            SELECT * FROM campaigns
            WHERE state = ? AND scheduled_at IS NOT NULL AND scheduled_at <= ?
            ORDER BY scheduled_at, id
        ''', (CampaignState.SCHEDULED, to_db_time(now))).fetchall()
        return [_campaign_to_dict(row) for row in rows]


def get_resumable_campaigns(now):
    """SENDING campaigns with work to do: fan-out never finished, or a QUEUED delivery is ready."""
    stamp = to_db_time(now)
    with Database.connect(get_db_config()) as conn:
        rows = conn.execute('''
            SELECT * FROM campaigns c
            WHERE c.state = ?
              AND (
                c.fanned_out_at IS NULL
                OR EXISTS (
                    SELECT 1 FROM campaign_deliveries d
                    WHERE d.campaign_id = c.id
                      AND d.state = ?
                      AND (d.next_attempt_at IS NULL OR d.next_attempt_at <= ?)
                      AND (d.leased_until IS NULL OR d.leased_until <= ?)
                )
                OR NOT EXISTS (
                    SELECT 1 FROM campaign_deliveries d
                    WHERE d.campaign_id = c.id AND d.state = ?
                )
              )
            ORDER BY c.id
        ''', (
            CampaignState.SENDING, DeliveryState.QUEUED, stamp, stamp, DeliveryState.QUEUED
        )).fetchall()
        return [_campaign_to_dict(row) for row in rows]


def get_campaign_state(campaign_id):
    with Database.connect(get_db_config()) as conn:
        row = conn.execute('SELECT state FROM campaigns WHERE id = ?', (campaign_id,)).fetchone()
        return row['state'] if row else None


def get_recently_sent_campaigns(since):
    """SENT campaigns whose sent_at is at or after ``since``"""
    with Database.connect(get_db_config()) as conn:
        rows = conn.execute('''
            SELECT * FROM campaigns
            WHERE state = ? AND sent_at IS NOT NULL AND sent_at >= ?
            ORDER BY sent_at DESC, id DESC
        ''', (CampaignState.SENT, to_db_time(since))).fetchall()
        return [_campaign_to_dict(row) for row in rows]


# ===================
# DELIVERIES
# ===================

def create_deliveries(campaign_id, entries, now=None):
    """Insert QUEUED deliveries, skipping pairs that already have one.

    Args:
        entries: iterable of (subscriber dict, next_attempt_at or None)

    Returns:
        int: number of rows actually created
    """
    stamp = to_db_time(now or utcnow())
    created = 0
    with Database.connect(get_db_config()) as conn:
        for subscriber, next_attempt_at in entries:
            cursor = conn.execute('''
                INSERT OR IGNORE INTO campaign_deliveries
                    (campaign_id, subscriber_id, recipient_email, timezone, state,
                     next_attempt_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                campaign_id, subscriber['id'], subscriber['email'], subscriber.get('timezone'),
                DeliveryState.QUEUED, to_db_time(next_attempt_at), stamp, stamp
            ))
            created += cursor.rowcount
    return created


def get_delivery(delivery_id):
    with Database.connect(get_db_config()) as conn:
        row = conn.execute('SELECT * FROM campaign_deliveries WHERE id = ?', (delivery_id,)).fetchone()
        return dict(row) if row else None


def get_deliveries(campaign_id, state=None):
    with Database.connect(get_db_config()) as conn:
        if state:
            rows = conn.execute(
                'SELECT * FROM campaign_deliveries WHERE campaign_id = ? AND state = ? ORDER BY id',
                (campaign_id, state)
            ).fetchall()
        else:
            rows = conn.execute(
                'SELECT * FROM campaign_deliveries WHERE campaign_id = ? ORDER BY id', (campaign_id,)
            ).fetchall()
        return [dict(row) for row in rows]


def claim_deliveries(campaign_id, now, limit, lease_seconds=300):
    """
    Lease up to ``limit`` ready QUEUED deliveries for sending.

    A delivery is ready when its next_attempt_at has passed and nobody else
    holds a live lease on it. The lease is taken with a conditional UPDATE per
    row inside one transaction, so two dispatchers never get the same row. An
    expired lease (crashed worker) makes the row claimable again.
    """
    stamp = to_db_time(now)
    # Leases run on the wall clock even when `now` is pinned
    lease = to_db_time(max(now, utcnow()) + timedelta(seconds=lease_seconds))
    claimed = []

    with Database.connect(get_db_config()) as conn:
        candidates = conn.execute('''
            SELECT id FROM campaign_deliveries
            WHERE campaign_id = ? AND state = ?
              AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
              AND (leased_until IS NULL OR leased_until <= ?)
            ORDER BY id
            LIMIT ?
        ''', (campaign_id, DeliveryState.QUEUED, stamp, stamp, limit)).fetchall()

        for row in candidates:
            cursor = conn.execute('''
                UPDATE campaign_deliveries
                SET leased_until = ?, updated_at = ?
                WHERE id = ? AND state = ?
                  AND (leased_until IS NULL OR leased_until <= ?)
            ''', (lease, stamp, row['id'], DeliveryState.QUEUED, stamp))
            if cursor.rowcount == 1:
                claimed.append(row['id'])

        if not claimed:
            return []

        placeholders = ', '.join('?' for _ in claimed)
        rows = conn.execute(
            f'SELECT * FROM campaign_deliveries WHERE id IN ({placeholders}) ORDER BY id', claimed
        ).fetchall()
        return [dict(r) for r in rows]


def mark_delivery_sent(delivery_id, provider_message_id=None, now=None):
    """
    Record a send accepted by the transport.

    The sender still holds the lease, so the row is normally QUEUED. It may
    have been cancelled mid-send, or a bounce or complaint may have arrived
    before this write; the send is recorded either way. Cancelled rows
    become SENT and provider outcomes keep their state.
    """
    stamp = to_db_time(now or utcnow())
    with Database.connect(get_db_config()) as conn:
        cursor = conn.execute('''
            UPDATE campaign_deliveries
            SET state = CASE WHEN state IN (?, ?) THEN ? ELSE state END,
                sent_at = ?, last_attempt_at = ?, leased_until = NULL,
                error_message = NULL, provider_message_id = ?, updated_at = ?
            WHERE id = ?
              AND (state = ? OR (leased_until IS NOT NULL AND state IN (?, ?, ?, ?)))
        ''', (
            DeliveryState.QUEUED, DeliveryState.CANCELLED, DeliveryState.SENT,
            stamp, stamp, provider_message_id, stamp,
            delivery_id, DeliveryState.QUEUED,
            DeliveryState.CANCELLED, DeliveryState.BOUNCED_SOFT,
            DeliveryState.BOUNCED_HARD, DeliveryState.COMPLAINED,
        ))
        return cursor.rowcount == 1


def mark_delivery_retry(delivery_id, attempts, next_attempt_at, error_message, now=None):
    """Record a transient failure and push the delivery back with a later next_attempt_at"""
    stamp = to_db_time(now or utcnow())
    with Database.connect(get_db_config()) as conn:
        cursor = conn.execute('''
            UPDATE campaign_deliveries
            SET attempts = ?, next_attempt_at = ?, last_attempt_at = ?, leased_until = NULL,
                error_message = ?, updated_at = ?
            WHERE id = ? AND state = ?
        ''', (
            attempts, to_db_time(next_attempt_at), stamp, error_message, stamp,
            delivery_id, DeliveryState.QUEUED
        ))
        return cursor.rowcount == 1


def defer_delivery(delivery_id, next_attempt_at, now=None):
    """Release a lease without counting an attempt (recipient is in quiet hours)"""
    stamp = to_db_time(now or utcnow())
    with Database.connect(get_db_config()) as conn:
        cursor = conn.execute('''
            UPDATE campaign_deliveries
            SET next_attempt_at = ?, leased_until = NULL, updated_at = ?
            WHERE id = ? AND state = ?
        ''', (to_db_time(next_attempt_at), stamp, delivery_id, DeliveryState.QUEUED))
        return cursor.rowcount == 1


def mark_delivery_failed(delivery_id, attempts, error_message, now=None, permanent=False):
    """QUEUED -> FAILED. Permanent failures are never requeued."""
    stamp = to_db_time(now or utcnow())
    with Database.connect(get_db_config()) as conn:
        cursor = conn.execute('''
            UPDATE campaign_deliveries
            SET state = ?, attempts = ?, last_attempt_at = ?, leased_until = NULL,
                error_message = ?, permanent_failure = ?, updated_at = ?
            WHERE id = ? AND state = ?
        ''', (
            DeliveryState.FAILED, attempts, stamp, error_message, int(permanent), stamp,
            delivery_id, DeliveryState.QUEUED
        ))
        return cursor.rowcount == 1


def update_delivery_state(delivery_id, from_states, to_state, now=None, in_flight=False, **timestamps):
    """Conditional delivery transition used by the webhook ingestor. Returns True if applied.

    With ``in_flight`` the row must also hold a live send lease.
    """
    unknown = set(timestamps) - _DELIVERY_TIMESTAMPS
    if unknown:
        raise ValueError(f"Unknown delivery fields: {sorted(unknown)}")

    stamp = to_db_time(now or utcnow())
    assignments = ['state = ?', 'updated_at = ?']
    params = [to_state, stamp]
    for column, value in timestamps.items():
        assignments.append(f'{column} = ?')
        params.append(to_db_time(value))

    placeholders = ', '.join('?' for _ in from_states)
    params.append(delivery_id)
    params.extend(from_states)
    where = f'id = ? AND state IN ({placeholders})'
    if in_flight:
        where += ' AND leased_until > ?'
        params.append(to_db_time(utcnow()))

    with Database.connect(get_db_config()) as conn:
        cursor = conn.execute(
            f'UPDATE campaign_deliveries SET {", ".join(assignments)} WHERE {where}',
            params
        )
        return cursor.rowcount == 1


def set_delivery_timestamp(delivery_id, column, value):
    """Set an engagement timestamp the first time only. Returns True if it was unset."""
    if column not in _DELIVERY_TIMESTAMPS:
        raise ValueError(f"Unknown delivery timestamp: {column}")

    with Database.connect(get_db_config()) as conn:
        cursor = conn.execute(
            f'UPDATE campaign_deliveries SET {column} = ?, updated_at = ? '
            f'WHERE id = ? AND {column} IS NULL',
            (to_db_time(value), to_db_time(utcnow()), delivery_id)
        )
        return cursor.rowcount == 1


def find_delivery_for_recipient(email, campaign_id=None, provider_message_id=None):
    """Delivery an event refers to: by provider message id, else the most recent
    delivery for the address (optionally within one campaign)"""
    with Database.connect(get_db_config()) as conn:
        if provider_message_id:
            row = conn.execute(
                'SELECT * FROM campaign_deliveries WHERE provider_message_id = ? LIMIT 1',
                (provider_message_id,)
            ).fetchone()
            if row:
                return dict(row)
        if campaign_id is not None:
            row = conn.execute('''
                SELECT * FROM campaign_deliveries
                WHERE recipient_email = ? AND campaign_id = ?
                ORDER BY id DESC LIMIT 1
            ''', (email, campaign_id)).fetchone()
        else:
            row = conn.execute('''
                SELECT * FROM campaign_deliveries
                WHERE recipient_email = ?
                ORDER BY COALESCE(sent_at, created_at) DESC, id DESC LIMIT 1
            ''', (email,)).fetchone()
        return dict(row) if row else None


def cancel_queued_deliveries(campaign_id, now=None):
    """QUEUED -> CANCELLED for every delivery of one campaign.

    Leased rows are cancelled too. Their lease is left in place so a send
    already in flight can still be recorded by mark_delivery_sent().
    Returns the number of deliveries cancelled.
    """
    stamp = to_db_time(now or utcnow())
    with Database.connect(get_db_config()) as conn:
        cursor = conn.execute('''
            UPDATE campaign_deliveries
            SET state = ?, updated_at = ?
            WHERE campaign_id = ? AND state = ?
        ''', (DeliveryState.CANCELLED, stamp, campaign_id, DeliveryState.QUEUED))
        return cursor.rowcount


def cancel_orphaned_deliveries(now=None):
    """QUEUED deliveries left behind in CANCELLED or FAILED campaigns -> CANCELLED"""
    stamp = to_db_time(now or utcnow())
    with Database.connect(get_db_config()) as conn:
        cursor = conn.execute('''
            UPDATE campaign_deliveries
            SET state = ?, updated_at = ?
            WHERE state = ?
              AND campaign_id IN (SELECT id FROM campaigns WHERE state IN (?, ?))
        ''', (
            DeliveryState.CANCELLED, stamp, DeliveryState.QUEUED,
            CampaignState.CANCELLED, CampaignState.FAILED,
        ))
        if cursor.rowcount:
            logger.warning(f"Cancelled {cursor.rowcount} deliveries left in finished campaigns")
        return cursor.rowcount


def count_pending_deliveries(campaign_id):
    """QUEUED deliveries, ready or not"""
    with Database.connect(get_db_config()) as conn:
        return conn.execute(
            'SELECT COUNT(*) FROM campaign_deliveries WHERE campaign_id = ? AND state = ?',
            (campaign_id, DeliveryState.QUEUED)
        ).fetchone()[0]


def count_deliveries_by_state(campaign_id):
    """Delivery counts per state plus engagement counts for one campaign"""
    with Database.connect(get_db_config()) as conn:
        rows = conn.execute('''
            SELECT state, COUNT(*) FROM campaign_deliveries
            WHERE campaign_id = ? GROUP BY state
        ''', (campaign_id,)).fetchall()
        engagement = conn.execute('''
            SELECT
                COUNT(opened_at),
                COUNT(clicked_at),
                COUNT(unsubscribed_at),
                COUNT(*)
            FROM campaign_deliveries WHERE campaign_id = ?
        ''', (campaign_id,)).fetchone()

    counts = {state: 0 for state in DeliveryState.ALL}
    counts.update({row[0]: row[1] for row in rows})
    counts['opened'] = engagement[0]
    counts['clicked'] = engagement[1]
    counts['unsubscribed'] = engagement[2]
    counts['total'] = engagement[3]
    return counts


def list_dead_letters(campaign_id=None, max_attempts=None, limit=100):
    """FAILED deliveries that will not be retried: attempts used up, or rejected permanently"""
    if max_attempts is None:
        max_attempts = int(get_setting('DISPATCH_MAX_ATTEMPTS', 3))

    with Database.connect(get_db_config()) as conn:
        if campaign_id is not None:
            rows = conn.execute('''
                SELECT * FROM campaign_deliveries
                WHERE state = ? AND (attempts >= ? OR permanent_failure = 1) AND campaign_id = ?
                ORDER BY last_attempt_at DESC LIMIT ?
            ''', (DeliveryState.FAILED, max_attempts, campaign_id, limit)).fetchall()
        else:
            rows = conn.execute('''
                SELECT * FROM campaign_deliveries
                WHERE state = ? AND (attempts >= ? OR permanent_failure = 1)
                ORDER BY last_attempt_at DESC LIMIT ?
            ''', (DeliveryState.FAILED, max_attempts, limit)).fetchall()
        return [dict(row) for row in rows]


def requeue_failed_deliveries(campaign_id, max_attempts, now=None):
    """Transient FAILED deliveries below the attempt cap go back to QUEUED. Returns the count."""
    stamp = to_db_time(now or utcnow())
    with Database.connect(get_db_config()) as conn:
        cursor = conn.execute('''
            UPDATE campaign_deliveries
            SET state = ?, next_attempt_at = NULL, leased_until = NULL,
                error_message = NULL, updated_at = ?
            WHERE campaign_id = ? AND state = ? AND attempts < ? AND permanent_failure = 0
        ''', (DeliveryState.QUEUED, stamp, campaign_id, DeliveryState.FAILED, max_attempts))
        return cursor.rowcount


def _encode_field(column, value):
    if column in ('blocks', 'feeds'):
        return json.dumps(value or [])
    if column.endswith('_at'):
        return to_db_time(value)
    return value


def _campaign_to_dict(row):
    """Convert a sqlite3.Row to a dict with parsed blocks/feeds JSON"""
    d = dict(row)
    for key in ('blocks', 'feeds'):
        if isinstance(d.get(key), str):
            try:
                d[key] = json.loads(d[key])
            except (json.JSONDecodeError, TypeError):
                d[key] = []
    return d

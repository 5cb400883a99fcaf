"""
Analytics Aggregator
====================

Point-in-time delivery metrics per campaign.

A snapshot counts a campaign's deliveries by state, derives the rates and is
stored in ANALYTICS_DB. Snapshots are insert-only; the newest one for a
campaign is what every rollup reads. Dashboard figures (top performers,
trends, summary averages) are recomputed from the latest snapshot of each
campaign on every call, so there is no running total to drift.

Rates are percentages rounded to two places:

    delivery_rate    = delivered / sent
    open_rate        = opened / delivered
    click_rate       = clicked / opened
    bounce_rate      = bounced / sent
    unsubscribe_rate = unsubscribed / sent
    complaint_rate   = complained / sent

A zero denominator gives 0.

Read functions fall back to a sample dataset tagged ``synthetic: True`` when
DEGRADED_MODE is on, or when the store is unavailable and
ANALYTICS_SYNTHETIC_FALLBACK is enabled.
"""

import json
import logging
from datetime import timedelta

from mailroom.core import (
    Database, get_setting, get_int_setting, get_bool_setting,
    utcnow, as_utc, to_db_time,
)
from mailroom.core.errors import CampaignNotFoundError, StoreUnavailableError
from mailroom.modules.campaigns import models as campaign_models
from mailroom.modules.campaigns.models import DeliveryState

logger = logging.getLogger(__name__)

COUNT_FIELDS = ('sent', 'delivered', 'opened', 'clicked', 'bounced', 'complained', 'unsubscribed')
RATE_FIELDS = (
    'delivery_rate', 'open_rate', 'click_rate', 'bounce_rate', 'unsubscribe_rate', 'complaint_rate',
)

# Delivery states that mean the transport accepted the message
_SENT_STATES = (
    DeliveryState.SENT, DeliveryState.DELIVERED, DeliveryState.BOUNCED_SOFT,
    DeliveryState.BOUNCED_HARD, DeliveryState.COMPLAINED,
)

# Sample campaigns served in degraded mode
SAMPLE_CAMPAIGNS = [
    {
        'campaign_id': 1,
        'campaign_name': 'Weekly Newsletter #1',
        'age_days': 2,
        'counts': {'sent': 1250, 'delivered': 1198, 'opened': 456, 'clicked': 89,
                   'bounced': 52, 'complained': 3, 'unsubscribed': 12},
    },
    {
        'campaign_id': 2,
        'campaign_name': 'Product Update',
        'age_days': 5,
        'counts': {'sent': 890, 'delivered': 867, 'opened': 312, 'clicked': 67,
                   'bounced': 23, 'complained': 1, 'unsubscribed': 8},
    },
]


def _db_log(level, message, details=None):
    """Log to framework's persistent DB logger"""
    try:
        from mailroom.core import db_log
        db_log(level, 'analytics', message, details)
    except Exception:
        pass


def get_db_config():
    """Snapshots live in ANALYTICS_DB (3-tier pattern)"""
    return get_setting('ANALYTICS_DB', 'analytics_log.db')


def init_analytics_db():
    """Create the campaign_snapshots table"""
    db_path = get_db_config()
    Database.ensure_dir(db_path)

    with Database.connect(db_path) as conn:
        conn.execute('''
            CREATE TABLE IF NOT EXISTS campaign_snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                campaign_id INTEGER NOT NULL,
                campaign_name TEXT,
                campaign_sent_at TEXT,
                captured_at TEXT NOT NULL,
                sent INTEGER NOT NULL DEFAULT 0,
                delivered INTEGER NOT NULL DEFAULT 0,
                opened INTEGER NOT NULL DEFAULT 0,
                clicked INTEGER NOT NULL DEFAULT 0,
                bounced INTEGER NOT NULL DEFAULT 0,
                complained INTEGER NOT NULL DEFAULT 0,
                unsubscribed INTEGER NOT NULL DEFAULT 0,
                delivery_rate REAL NOT NULL DEFAULT 0,
                open_rate REAL NOT NULL DEFAULT 0,
                click_rate REAL NOT NULL DEFAULT 0,
                bounce_rate REAL NOT NULL DEFAULT 0,
                unsubscribe_rate REAL NOT NULL DEFAULT 0,
                complaint_rate REAL NOT NULL DEFAULT 0,
                state_counts TEXT,
                UNIQUE(campaign_id, captured_at)
            )
        ''')
        conn.execute(
            'CREATE INDEX IF NOT EXISTS idx_snapshots_campaign ON campaign_snapshots(campaign_id, captured_at)'
        )
        conn.execute(
            'CREATE INDEX IF NOT EXISTS idx_snapshots_sent ON campaign_snapshots(campaign_sent_at)'
        )

    logger.info("Analytics snapshot table created/verified successfully")


# ===================
# METRICS
# ===================

def _rate(numerator, denominator):
    if not denominator:
        return 0.0
    return round(numerator / denominator * 100, 2)


def compute_rates(metrics):
    """Derived rates for a dict holding the COUNT_FIELDS"""
    return {
        'delivery_rate': _rate(metrics['delivered'], metrics['sent']),
        'open_rate': _rate(metrics['opened'], metrics['delivered']),
        'click_rate': _rate(metrics['clicked'], metrics['opened']),
        'bounce_rate': _rate(metrics['bounced'], metrics['sent']),
        'unsubscribe_rate': _rate(metrics['unsubscribed'], metrics['sent']),
        'complaint_rate': _rate(metrics['complained'], metrics['sent']),
    }


def compute_snapshot_metrics(counts):
    """
    Snapshot metrics from ``count_deliveries_by_state()`` output.

    ``sent`` counts every delivery the transport accepted, whatever happened
    to it afterwards. A complaint implies the message was delivered.
    """
    def count(key):
        return int(counts.get(key) or 0)

    metrics = {
        'sent': sum(count(state) for state in _SENT_STATES),
        'delivered': count(DeliveryState.DELIVERED) + count(DeliveryState.COMPLAINED),
        'opened': count('opened'),
        'clicked': count('clicked'),
        'bounced': count(DeliveryState.BOUNCED_SOFT) + count(DeliveryState.BOUNCED_HARD),
        'complained': count(DeliveryState.COMPLAINED),
        'unsubscribed': count('unsubscribed'),
    }
    metrics.update(compute_rates(metrics))
    return metrics


# ===================
# SNAPSHOTS
# ===================

def capture_snapshot(campaign_id, now=None):
    """
    Count the campaign's deliveries now and persist a new snapshot.

    Returns:
        dict: the stored snapshot

    Raises:
        CampaignNotFoundError: unknown campaign
        StoreUnavailableError: either store is unreachable
    """
    now = as_utc(now) or utcnow()
    campaign = campaign_models.get_campaign(campaign_id)
    if not campaign:
        raise CampaignNotFoundError(f"Campaign {campaign_id} not found", campaign_id=campaign_id)

    counts = campaign_models.count_deliveries_by_state(campaign_id)
    metrics = compute_snapshot_metrics(counts)
    captured_at = to_db_time(now)

    columns = ['campaign_id', 'campaign_name', 'campaign_sent_at', 'captured_at']
    columns += list(COUNT_FIELDS) + list(RATE_FIELDS) + ['state_counts']
    values = [campaign_id, campaign['name'], campaign.get('sent_at'), captured_at]
    values += [metrics[key] for key in COUNT_FIELDS + RATE_FIELDS]
    values.append(json.dumps(counts))

    with Database.connect(get_db_config()) as conn:
        # Same campaign and instant means the same counts; keep the first row
        conn.execute(
            f'INSERT OR IGNORE INTO campaign_snapshots ({", ".join(columns)}) '
            f'VALUES ({", ".join("?" for _ in columns)})',
            values
        )
        row = conn.execute(
            'SELECT * FROM campaign_snapshots WHERE campaign_id = ? AND captured_at = ?',
            (campaign_id, captured_at)
        ).fetchone()

    logger.info(
        f"Snapshot for campaign {campaign_id}: sent={metrics['sent']} "
        f"open_rate={metrics['open_rate']} bounce_rate={metrics['bounce_rate']}"
    )
    return _snapshot_to_dict(row)


def get_latest_snapshot(campaign_id):
    with Database.connect(get_db_config()) as conn:
        row = conn.execute('''
            SELECT * FROM campaign_snapshots
            WHERE campaign_id = ?
            ORDER BY captured_at DESC, id DESC LIMIT 1
        ''', (campaign_id,)).fetchone()
        return _snapshot_to_dict(row) if row else None


def get_snapshot_history(campaign_id, since=None):
    """Snapshots for one campaign, oldest first"""
    with Database.connect(get_db_config()) as conn:
        if since is not None:
            rows = conn.execute('''
                SELECT * FROM campaign_snapshots
                WHERE campaign_id = ? AND captured_at >= ?
                ORDER BY captured_at, id
            ''', (campaign_id, to_db_time(since))).fetchall()
        else:
            rows = conn.execute(
                'SELECT * FROM campaign_snapshots WHERE campaign_id = ? ORDER BY captured_at, id',
                (campaign_id,)
            ).fetchall()
        return [_snapshot_to_dict(row) for row in rows]


def get_latest_snapshots(days=7, now=None):
    """
    Latest snapshot of every campaign sent within the last ``days`` days,
    newest campaign first. Campaigns without a send time are placed by
    their capture time.
    """
    now = as_utc(now) or utcnow()
    cutoff = to_db_time(now - timedelta(days=days))
    with Database.connect(get_db_config()) as conn:
        rows = conn.execute('''
            SELECT s.* FROM campaign_snapshots s
            JOIN (
                SELECT campaign_id, MAX(captured_at) AS latest
                FROM campaign_snapshots GROUP BY campaign_id
            ) l ON s.campaign_id = l.campaign_id AND s.captured_at = l.latest
            WHERE COALESCE(s.campaign_sent_at, s.captured_at) >= ?
            ORDER BY COALESCE(s.campaign_sent_at, s.captured_at) DESC, s.campaign_id DESC
        ''', (cutoff,)).fetchall()
        return [_snapshot_to_dict(row) for row in rows]


def capture_due_snapshots(now=None):
    """
    Periodic capture: every SENT campaign still inside SNAPSHOT_TRACKING_DAYS
    gets a new snapshot once its latest one is SNAPSHOT_INTERVAL_MINUTES old.
    Late webhook events (opens, bounces) keep changing the numbers after send.

    Returns:
        int: snapshots captured
    """
    now = as_utc(now) or utcnow()
    tracking = timedelta(days=get_int_setting('SNAPSHOT_TRACKING_DAYS', 7))
    interval = timedelta(minutes=get_int_setting('SNAPSHOT_INTERVAL_MINUTES', 60))

    captured = 0
    for campaign in campaign_models.get_recently_sent_campaigns(now - tracking):
        latest = get_latest_snapshot(campaign['id'])
        if latest and as_utc(latest['captured_at']) > now - interval:
            continue
        capture_snapshot(campaign['id'], now=now)
        captured += 1

    if captured:
        logger.info(f"Captured {captured} periodic snapshots")
    return captured


def _snapshot_to_dict(row):
    d = dict(row)
    raw = d.pop('state_counts', None)
    try:
        d['state_counts'] = json.loads(raw) if raw else {}
    except (json.JSONDecodeError, TypeError):
        d['state_counts'] = {}
    return d


# ===================
# ROLLUPS
# ===================

def build_top_performers(snapshots, limit=5, metric='open_rate'):
    if metric not in RATE_FIELDS + COUNT_FIELDS:
        raise ValueError(f"Unknown metric: {metric}")
    ranked = sorted(snapshots, key=lambda s: (s[metric], s['sent']), reverse=True)
    return ranked[:limit]


def build_trend_series(snapshots, days=7, now=None):
    """Per-day totals of sent/opened/clicked, keyed by the day each campaign went out (UTC)"""
    now = as_utc(now) or utcnow()
    dates = [(now - timedelta(days=offset)).date().isoformat() for offset in range(days - 1, -1, -1)]
    totals = {date: {'sent': 0, 'opened': 0, 'clicked': 0} for date in dates}

    for snapshot in snapshots:
        day = (snapshot.get('campaign_sent_at') or snapshot['captured_at'])[:10]
        if day in totals:
            for key in ('sent', 'opened', 'clicked'):
                totals[day][key] += snapshot[key]

    return {
        'dates': dates,
        'sent': [totals[date]['sent'] for date in dates],
        'opened': [totals[date]['opened'] for date in dates],
        'clicked': [totals[date]['clicked'] for date in dates],
    }


def build_dashboard(snapshots, days=7, now=None):
    def average(field):
        if not snapshots:
            return 0.0
        return round(sum(s[field] for s in snapshots) / len(snapshots), 2)

    summary = {'total_campaigns': len(snapshots)}
    for key in COUNT_FIELDS:
        summary[f'total_{key}'] = sum(s[key] for s in snapshots)
    summary['average_open_rate'] = average('open_rate')
    summary['average_click_rate'] = average('click_rate')
    summary['average_delivery_rate'] = average('delivery_rate')
    summary['average_bounce_rate'] = average('bounce_rate')

    return {
        'summary': summary,
        'recent_campaigns': snapshots[:5],
        'top_performers': build_top_performers(snapshots, limit=3),
        'trends': build_trend_series(snapshots, days, now),
        'period_days': days,
    }


# ===================
# DEGRADED MODE
# ===================

def synthetic_snapshots(now=None):
    """Clearly tagged sample snapshots used when real data cannot be read"""
    now = as_utc(now) or utcnow()
    snapshots = []
    for sample in SAMPLE_CAMPAIGNS:
        sent_at = to_db_time(now - timedelta(days=sample['age_days']))
        snapshot = {
            'id': None,
            'campaign_id': sample['campaign_id'],
            'campaign_name': sample['campaign_name'],
            'campaign_sent_at': sent_at,
            'captured_at': to_db_time(now),
            'state_counts': {},
            'synthetic': True,
        }
        snapshot.update(sample['counts'])
        snapshot.update(compute_rates(sample['counts']))
        snapshots.append(snapshot)
    return snapshots


def _tag(result, synthetic, reason=None):
    result['synthetic'] = synthetic
    if reason:
        result['synthetic_reason'] = reason
    return result


def _degraded(read, build, label):
    """
    Run ``read()`` then ``build(data)``; serve ``build(sample)`` instead when in
    degraded mode or when the store is down and fallback is enabled.
    """
    if get_bool_setting('DEGRADED_MODE', False):
        logger.warning(f"Degraded mode: serving synthetic {label}")
        return _tag(build(None), synthetic=True, reason='degraded_mode')

    try:
        data = read()
    except StoreUnavailableError as e:
        if not get_bool_setting('ANALYTICS_SYNTHETIC_FALLBACK', True):
            raise
        logger.warning(f"Analytics store unavailable, serving synthetic {label}: {e}")
        _db_log('warning', f'Synthetic {label} served', {'error': str(e)})
        return _tag(build(None), synthetic=True, reason='store_unavailable')

    return _tag(build(data), synthetic=False)


# ===================
# READ API
# ===================

def get_campaign_analytics(campaign_id, days=7, now=None):
    """
    Latest metrics for one campaign plus its snapshot history over ``days``.

    A campaign that has never been snapshotted reports live counts without
    storing them (``live: True``).

    Raises:
        CampaignNotFoundError: unknown campaign (not masked by the fallback)
    """
    now = as_utc(now) or utcnow()

    def read():
        campaign = campaign_models.get_campaign(campaign_id)
        if not campaign:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found", campaign_id=campaign_id)
        latest = get_latest_snapshot(campaign_id)
        history = get_snapshot_history(campaign_id, since=now - timedelta(days=days))
        return campaign, latest, history

    def build(data):
        if data is None:
            samples = synthetic_snapshots(now)
            sample = next((s for s in samples if s['campaign_id'] == campaign_id), samples[0])
            return {
                'campaign_id': campaign_id,
                'campaign_name': sample['campaign_name'],
                'state': None,
                'metrics': _metrics_of(sample),
                'captured_at': sample['captured_at'],
                'history': [sample],
                'live': False,
                'period_days': days,
            }

        campaign, latest, history = data
        live = latest is None
        if live:
            metrics = compute_snapshot_metrics(campaign_models.count_deliveries_by_state(campaign_id))
        else:
            metrics = _metrics_of(latest)
        return {
            'campaign_id': campaign_id,
            'campaign_name': campaign['name'],
            'state': campaign['state'],
            'metrics': metrics,
            'captured_at': None if live else latest['captured_at'],
            'history': history,
            'live': live,
            'period_days': days,
        }

    return _degraded(read, build, 'campaign analytics')


def get_top_performers(days=7, limit=5, metric='open_rate', now=None):
    if metric not in RATE_FIELDS + COUNT_FIELDS:
        raise ValueError(f"Unknown metric: {metric}")

    def build(snapshots):
        if snapshots is None:
            snapshots = synthetic_snapshots(now)
        return {
            'metric': metric,
            'period_days': days,
            'campaigns': build_top_performers(snapshots, limit, metric),
        }

    return _degraded(lambda: get_latest_snapshots(days, now), build, 'top performers')


def get_trend_series(days=7, now=None):
    def build(snapshots):
        if snapshots is None:
            snapshots = synthetic_snapshots(now)
        series = build_trend_series(snapshots, days, now)
        series['period_days'] = days
        return series

    return _degraded(lambda: get_latest_snapshots(days, now), build, 'trend series')


def get_dashboard(days=7, now=None):
    def build(snapshots):
        if snapshots is None:
            snapshots = synthetic_snapshots(now)
        return build_dashboard(snapshots, days, now)

    return _degraded(lambda: get_latest_snapshots(days, now), build, 'dashboard')


def _metrics_of(snapshot):
    return {key: snapshot[key] for key in COUNT_FIELDS + RATE_FIELDS}

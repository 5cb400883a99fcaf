"""Analytics snapshots, rate math, rollups and degraded mode."""

from datetime import datetime, timedelta, timezone

import pytest

from mailroom.core.errors import CampaignNotFoundError, StoreUnavailableError
from mailroom.modules.analytics import aggregator
from mailroom.modules.analytics.aggregator import (
    build_top_performers, capture_due_snapshots, capture_snapshot, compute_rates,
    compute_snapshot_metrics, get_campaign_analytics, get_dashboard, get_latest_snapshot,
    get_latest_snapshots, get_snapshot_history, get_top_performers, get_trend_series,
)
from mailroom.modules.campaigns import models
from mailroom.modules.campaigns.controls import send_now
from mailroom.modules.campaigns.dispatcher import Dispatcher
from mailroom.modules.campaigns.models import DeliveryState
from mailroom.modules.webhooks.ingestor import ingest_event

T0 = datetime(2025, 2, 10, 9, 0, tzinfo=timezone.utc)


def sent_campaign(make_campaign, make_subscribers, transport, name='Spring Issue', count=4, now=T0):
    emails = [f"{name.split()[0].lower()}{i}@example.com" for i in range(count)]
    make_subscribers(emails)
    cid = make_campaign(name)
    send_now(cid, now=now)
    Dispatcher(transport=transport).dispatch(cid, now=now)
    return cid, emails


def test_rate_math():
    metrics = {'sent': 1250, 'delivered': 1198, 'opened': 456, 'clicked': 89,
               'bounced': 52, 'complained': 3, 'unsubscribed': 12}
    rates = compute_rates(metrics)
    assert rates == {
        'delivery_rate': 95.84,
        'open_rate': 38.06,
        'click_rate': 19.52,
        'bounce_rate': 4.16,
        'unsubscribe_rate': 0.96,
        'complaint_rate': 0.24,
    }


def test_rates_with_nothing_sent_are_zero():
    rates = compute_rates({key: 0 for key in aggregator.COUNT_FIELDS})
    assert set(rates.values()) == {0.0}


def test_snapshot_metrics_from_state_counts():
    counts = {
        DeliveryState.QUEUED: 1, DeliveryState.SENT: 5, DeliveryState.DELIVERED: 3,
        DeliveryState.BOUNCED_SOFT: 1, DeliveryState.BOUNCED_HARD: 1, DeliveryState.COMPLAINED: 1,
        DeliveryState.FAILED: 2, DeliveryState.CANCELLED: 4,
        'opened': 2, 'clicked': 1, 'unsubscribed': 1,
    }
    metrics = compute_snapshot_metrics(counts)
    assert metrics['sent'] == 11
    assert metrics['delivered'] == 4
    assert metrics['bounced'] == 2
    assert metrics['complained'] == 1
    assert metrics['open_rate'] == 50.0
    assert metrics['click_rate'] == 50.0
    assert metrics['bounce_rate'] == 18.18


def test_snapshots_are_immutable(make_campaign, make_subscribers, transport):
    cid, emails = sent_campaign(make_campaign, make_subscribers, transport)
    first = get_latest_snapshot(cid)
    assert first['sent'] == 4
    assert first['opened'] == 0

    ingest_event({'event_type': 'open', 'recipient': emails[0], 'timestamp': T0})
    ingest_event({'event_type': 'bounce', 'recipient': emails[1], 'bounce_type': 'permanent'})
    later = capture_snapshot(cid, now=T0 + timedelta(hours=1))

    assert later['opened'] == 1
    assert later['delivered'] == 1
    assert later['open_rate'] == 100.0
    assert later['bounce_rate'] == 25.0
    history = get_snapshot_history(cid)
    assert [s['opened'] for s in history] == [0, 1]
    assert history[0] == first
    assert get_latest_snapshot(cid)['id'] == later['id']


def test_capture_same_instant_keeps_first(make_campaign, make_subscribers, transport):
    cid, _ = sent_campaign(make_campaign, make_subscribers, transport)
    again = capture_snapshot(cid, now=T0)
    assert again['id'] == get_snapshot_history(cid)[0]['id']
    assert len(get_snapshot_history(cid)) == 1


def test_capture_unknown_campaign(app):
    with pytest.raises(CampaignNotFoundError):
        capture_snapshot(404)


def test_due_snapshots_follow_interval(app, make_campaign, make_subscribers, transport):
    app.config['SNAPSHOT_INTERVAL_MINUTES'] = 60
    cid, _ = sent_campaign(make_campaign, make_subscribers, transport)

    assert capture_due_snapshots(T0 + timedelta(minutes=30)) == 0
    assert capture_due_snapshots(T0 + timedelta(minutes=61)) == 1
    # Past the tracking window nothing more is captured
    assert capture_due_snapshots(T0 + timedelta(days=8)) == 0
    assert len(get_snapshot_history(cid)) == 2


def test_latest_snapshots_window(make_campaign, make_subscribers, transport):
    old, _ = sent_campaign(make_campaign, make_subscribers, transport, 'Old News', now=T0 - timedelta(days=10))
    new, _ = sent_campaign(make_campaign, make_subscribers, transport, 'Fresh News', now=T0)

    assert [s['campaign_id'] for s in get_latest_snapshots(days=7, now=T0)] == [new]
    assert [s['campaign_id'] for s in get_latest_snapshots(days=30, now=T0)] == [new, old]


def test_top_performers_ranking():
    snapshots = [
        {'campaign_id': 1, 'open_rate': 20.0, 'sent': 100},
        {'campaign_id': 2, 'open_rate': 45.5, 'sent': 50},
        {'campaign_id': 3, 'open_rate': 45.5, 'sent': 80},
    ]
    assert [s['campaign_id'] for s in build_top_performers(snapshots, limit=2)] == [3, 2]
    with pytest.raises(ValueError):
        build_top_performers(snapshots, metric='vibes')


def test_dashboard_from_real_data(make_campaign, make_subscribers, transport):
    cid, emails = sent_campaign(make_campaign, make_subscribers, transport)
    ingest_event({'event_type': 'click', 'recipient': emails[0], 'timestamp': T0})
    capture_snapshot(cid, now=T0 + timedelta(hours=1))

    dashboard = get_dashboard(days=7, now=T0 + timedelta(hours=2))

    assert dashboard['synthetic'] is False
    assert dashboard['summary']['total_campaigns'] == 1
    assert dashboard['summary']['total_sent'] == 4
    assert dashboard['summary']['total_clicked'] == 1
    assert dashboard['summary']['average_open_rate'] == 100.0
    assert dashboard['recent_campaigns'][0]['campaign_id'] == cid
    trends = dashboard['trends']
    assert len(trends['dates']) == 7
    assert trends['dates'][-1] == '2025-02-10'
    assert trends['sent'][-1] == 4
    assert trends['clicked'][-1] == 1


def test_campaign_analytics_live_before_first_snapshot(make_campaign, make_subscribers):
    subscribers = make_subscribers(2)
    cid = make_campaign()
    send_now(cid, now=T0)
    models.create_deliveries(cid, [(s, None) for s in subscribers], now=T0)
    first = models.get_deliveries(cid)[0]
    models.mark_delivery_sent(first['id'], 'msg-1', now=T0)

    result = get_campaign_analytics(cid, now=T0)

    assert result['live'] is True
    assert result['metrics']['sent'] == 1
    assert result['history'] == []
    assert get_latest_snapshot(cid) is None


def test_campaign_analytics_unknown(app):
    with pytest.raises(CampaignNotFoundError):
        get_campaign_analytics(12345)


def test_degraded_mode_serves_tagged_samples(app):
    app.config['DEGRADED_MODE'] = True

    dashboard = get_dashboard(now=T0)
    assert dashboard['synthetic'] is True
    assert dashboard['synthetic_reason'] == 'degraded_mode'
    assert dashboard['summary']['total_sent'] == 2140
    assert dashboard['summary']['total_campaigns'] == 2

    top = get_top_performers(now=T0)
    assert top['synthetic'] is True
    assert top['campaigns'][0]['campaign_name'] == 'Weekly Newsletter #1'
    assert top['campaigns'][0]['open_rate'] == 38.06


def test_store_outage_falls_back_to_samples(app, tmp_db_dir, make_campaign):
    cid = make_campaign()
    # A directory cannot be opened as a database
    app.config['ANALYTICS_DB'] = tmp_db_dir

    trends = get_trend_series(now=T0)
    assert trends['synthetic'] is True
    assert trends['synthetic_reason'] == 'store_unavailable'
    assert sum(trends['sent']) == 2140

    result = get_campaign_analytics(cid, now=T0)
    assert result['synthetic'] is True


def test_store_outage_without_fallback_raises(app, tmp_db_dir):
    app.config['ANALYTICS_DB'] = tmp_db_dir
    app.config['ANALYTICS_SYNTHETIC_FALLBACK'] = False
    with pytest.raises(StoreUnavailableError):
        get_dashboard(now=T0)

"""HTTP surface: admin campaign API, cron trigger, webhooks, analytics, subscribers."""

from datetime import timedelta

import pytest

from mailroom.core import utcnow
from mailroom.modules.campaigns.dispatcher import Dispatcher
from mailroom.modules.campaigns.models import CampaignState


def iso_z(dt):
    return dt.strftime('%Y-%m-%dT%H:%M:%S.000Z')


def create(admin_client, **fields):
    body = {'name': 'April Issue', 'subject': 'News for {{EMAIL}}',
            'blocks': [{'type': 'paragraph', 'content': 'Hello'}]}
    body.update(fields)
    return admin_client.post('/admin/campaigns', json=body)


@pytest.fixture
def inline_transport(app, transport):
    app.extensions['mailroom'].dispatcher = Dispatcher(transport=transport)
    return transport


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("method,path", [
    ('get', '/admin/campaigns'),
    ('post', '/admin/campaigns'),
    ('post', '/admin/campaigns/1/send-now'),
    ('get', '/admin/campaigns/dead-letters'),
    ('get', '/admin/analytics/dashboard'),
    ('get', '/admin/analytics/logs'),
    ('post', '/admin/email/test'),
    ('get', '/api/subscribers/stats'),
])
def test_admin_routes_require_session(client, method, path):
    assert getattr(client, method)(path).status_code == 401


# ---------------------------------------------------------------------------
# Campaigns
# ---------------------------------------------------------------------------

def test_create_and_fetch(admin_client):
    resp = create(admin_client)
    assert resp.status_code == 201
    campaign = resp.get_json()
    assert campaign['state'] == CampaignState.DRAFT
    assert campaign['blocks'][0]['content'] == 'Hello'

    detail = admin_client.get(f"/admin/campaigns/{campaign['id']}").get_json()
    assert detail['deliveries']['total'] == 0

    listing = admin_client.get('/admin/campaigns?state=DRAFT').get_json()
    assert [c['id'] for c in listing['campaigns']] == [campaign['id']]
    assert admin_client.get('/admin/campaigns?state=LIMBO').status_code == 400


@pytest.mark.parametrize("body", [
    {'name': '', 'subject': 'x'},
    {'name': 'x'},
    {'name': 'x', 'subject': 'y', 'blocks': 'not a list'},
])
def test_create_validation(admin_client, body):
    assert admin_client.post('/admin/campaigns', json=body).status_code == 400


def test_create_with_schedule(admin_client):
    when = utcnow() + timedelta(days=1)
    resp = create(admin_client, scheduled_at=iso_z(when))
    assert resp.status_code == 201
    assert resp.get_json()['state'] == CampaignState.SCHEDULED


def test_schedule_errors(admin_client):
    cid = create(admin_client).get_json()['id']
    past = admin_client.post(f'/admin/campaigns/{cid}/schedule',
                             json={'scheduled_at': iso_z(utcnow() - timedelta(hours=1))})
    assert past.status_code == 400
    assert admin_client.post(f'/admin/campaigns/{cid}/schedule', json={}).status_code == 400
    assert admin_client.post('/admin/campaigns/999/schedule',
                             json={'scheduled_at': iso_z(utcnow() + timedelta(hours=1))}).status_code == 404


def test_lifecycle(admin_client):
    cid = create(admin_client).get_json()['id']

    resp = admin_client.post(f'/admin/campaigns/{cid}/schedule',
                             json={'scheduled_at': iso_z(utcnow() + timedelta(hours=2))})
    assert resp.status_code == 200
    assert resp.get_json()['state'] == CampaignState.SCHEDULED

    resp = admin_client.post(f'/admin/campaigns/{cid}/send-now')
    assert resp.status_code == 202
    assert resp.get_json()['state'] == CampaignState.SENDING

    resp = admin_client.post(f'/admin/campaigns/{cid}/send-now')
    assert resp.status_code == 409
    assert resp.get_json()['state'] == CampaignState.SENDING

    assert admin_client.put(f'/admin/campaigns/{cid}', json={'subject': 'Late edit'}).status_code == 409

    resp = admin_client.post(f'/admin/campaigns/{cid}/cancel', json={'reason': 'oops'})
    assert resp.status_code == 200
    assert resp.get_json() == {'campaign_id': cid, 'state': CampaignState.CANCELLED, 'cancelled_deliveries': 0}

    assert admin_client.post(f'/admin/campaigns/{cid}/cancel').status_code == 409
    assert admin_client.post(f'/admin/campaigns/{cid}/retry-failed').status_code == 409


def test_edit_draft(admin_client):
    cid = create(admin_client).get_json()['id']
    resp = admin_client.put(f'/admin/campaigns/{cid}', json={'subject': 'Sharper subject'})
    assert resp.status_code == 200
    assert resp.get_json()['subject'] == 'Sharper subject'
    assert admin_client.put('/admin/campaigns/404', json={'subject': 'x'}).status_code == 404


def test_send_now_inline_dispatch(admin_client, make_subscribers, inline_transport):
    make_subscribers(['a@example.com', 'b@example.com'])
    cid = create(admin_client).get_json()['id']

    resp = admin_client.post(f'/admin/campaigns/{cid}/send-now?dispatch=true')

    assert resp.status_code == 200
    assert resp.get_json()['state'] == CampaignState.SENT
    assert sorted(inline_transport.calls) == ['a@example.com', 'b@example.com']
    detail = admin_client.get(f'/admin/campaigns/{cid}').get_json()
    assert detail['deliveries']['SENT'] == 2

    deliveries = admin_client.get(f'/admin/campaigns/{cid}/deliveries?state=SENT').get_json()
    assert len(deliveries['deliveries']) == 2
    assert admin_client.get(f'/admin/campaigns/{cid}/deliveries?state=LOST').status_code == 400
    assert admin_client.get('/admin/campaigns/999/deliveries').status_code == 404


def test_dead_letters_listing(admin_client, make_subscribers, inline_transport):
    from mailroom.core.errors import PermanentDeliveryError

    make_subscribers(['bad@example.com'])
    inline_transport.fail('bad@example.com', PermanentDeliveryError('no such mailbox'))
    cid = create(admin_client).get_json()['id']
    admin_client.post(f'/admin/campaigns/{cid}/send-now?dispatch=true')

    dead = admin_client.get(f'/admin/campaigns/dead-letters?campaign_id={cid}').get_json()
    assert [d['recipient_email'] for d in dead['deliveries']] == ['bad@example.com']


def test_preview(admin_client):
    cid = create(admin_client).get_json()['id']
    resp = admin_client.post(f'/admin/campaigns/{cid}/preview', json={'email': 'me@example.com'})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['subject'] == 'News for me@example.com'
    assert 'Hello' in body['html']
    assert admin_client.post('/admin/campaigns/77/preview').status_code == 404


def test_scheduler_status(admin_client):
    status = admin_client.get('/admin/campaigns/scheduler/status').get_json()
    assert status['configured'] is True
    assert status['running'] is False


# ---------------------------------------------------------------------------
# Cron
# ---------------------------------------------------------------------------

def test_cron_requires_configured_secret(client):
    assert client.post('/api/cron/campaigns').status_code == 503


def test_cron_auth(app, client):
    app.config['CRON_SECRET'] = 's3cret'
    assert client.post('/api/cron/campaigns').status_code == 401
    assert client.post('/api/cron/campaigns', headers={'Authorization': 'Bearer nope'}).status_code == 401

    resp = client.post('/api/cron/campaigns', headers={'Authorization': 'Bearer s3cret'})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['success'] is True
    assert body['claimed'] == []


def test_cron_dispatches_due_campaign(app, client, make_campaign, make_subscribers, inline_transport):
    from mailroom.modules.campaigns.controls import schedule_campaign

    app.extensions['mailroom'].scheduler.dispatcher = app.extensions['mailroom'].dispatcher
    app.config['CRON_SECRET'] = 's3cret'
    make_subscribers(['a@example.com'])
    cid = make_campaign()
    # Scheduled an hour ago for a minute ago
    schedule_campaign(cid, utcnow() - timedelta(minutes=1), now=utcnow() - timedelta(hours=1))

    body = client.post('/api/cron/campaigns', headers={'Authorization': 'Bearer s3cret'}).get_json()

    assert body['claimed'] == [cid]
    assert inline_transport.calls == ['a@example.com']


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

def test_webhook_bounce(client, make_subscribers):
    from mailroom.modules.subscribers.models import get_subscriber_by_email

    make_subscribers(['gone@example.com'])
    payload = [{'event': 'bounce', 'type': 'bounce', 'email': 'gone@example.com',
                'reason': '550 5.1.1 unknown user', 'sg_event_id': 'sg-1', 'timestamp': 1739178000}]

    resp = client.post('/api/webhooks/sendgrid', json=payload)
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['success'] is True
    assert body['applied'] == 1
    assert get_subscriber_by_email('gone@example.com')['status'] == 'SUPPRESSED'

    again = client.post('/api/webhooks/sendgrid', json=payload).get_json()
    assert again['duplicate'] == 1


def test_webhook_unmatched_is_acknowledged(client):
    resp = client.post('/api/webhooks/generic', json={'event_type': 'complaint', 'recipient': 'who@example.com'})
    assert resp.status_code == 200
    assert resp.get_json()['unmatched'] == 1


def test_webhook_rejects_bad_requests(client):
    assert client.post('/api/webhooks/pigeon', json={}).status_code == 404
    assert client.post('/api/webhooks/sendgrid', data='not json', content_type='text/plain').status_code == 400


def test_webhook_token(app, client):
    app.config['WEBHOOK_SECRET'] = 'hook-token'
    event = {'event_type': 'open', 'recipient': 'x@example.com'}
    assert client.post('/api/webhooks/generic', json=event).status_code == 401
    assert client.post('/api/webhooks/generic?token=hook-token', json=event).status_code == 200
    assert client.post('/api/webhooks/generic', json=event,
                       headers={'X-Webhook-Token': 'hook-token'}).status_code == 200


def test_webhook_store_outage_asks_for_redelivery(app, client, tmp_db_dir):
    app.config['USER_DB'] = tmp_db_dir
    resp = client.post('/api/webhooks/generic', json={'event_type': 'bounce', 'recipient': 'x@example.com'})
    assert resp.status_code == 503


def test_webhook_health(client):
    assert client.get('/api/webhooks/resend').get_json()['status'] == 'healthy'
    assert client.get('/api/webhooks/pigeon').status_code == 404


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------

def test_analytics_endpoints(admin_client, make_subscribers, inline_transport):
    make_subscribers(['a@example.com'])
    cid = create(admin_client).get_json()['id']
    admin_client.post(f'/admin/campaigns/{cid}/send-now?dispatch=true')

    dashboard = admin_client.get('/admin/analytics/dashboard').get_json()
    assert dashboard['synthetic'] is False
    assert dashboard['summary']['total_sent'] == 1

    detail = admin_client.get(f'/admin/analytics/campaigns/{cid}?days=30').get_json()
    assert detail['metrics']['sent'] == 1
    assert detail['period_days'] == 30

    assert admin_client.post(f'/admin/analytics/campaigns/{cid}/snapshot').status_code == 201
    assert admin_client.get('/admin/analytics/campaigns/999').status_code == 404
    assert admin_client.post('/admin/analytics/campaigns/999/snapshot').status_code == 404

    top = admin_client.get('/admin/analytics/top?metric=sent&limit=1').get_json()
    assert top['campaigns'][0]['campaign_id'] == cid
    assert admin_client.get('/admin/analytics/top?metric=vibes').status_code == 400

    trends = admin_client.get('/admin/analytics/trends?days=0').get_json()
    assert len(trends['dates']) == 1


def test_analytics_degraded(app, admin_client):
    app.config['DEGRADED_MODE'] = True
    body = admin_client.get('/admin/analytics/dashboard').get_json()
    assert body['synthetic'] is True
    assert body['synthetic_reason'] == 'degraded_mode'


def test_persisted_logs(admin_client):
    from mailroom.core import db_log

    db_log('warning', 'route-tests', 'something to look at')
    body = admin_client.get('/admin/analytics/logs?source=route-tests').get_json()
    assert body['count'] == 1
    assert body['logs'][0]['level'] == 'WARNING'

    cleaned = admin_client.post('/admin/analytics/logs/cleanup', json={'days_to_keep': 30})
    assert cleaned.status_code == 200
    assert cleaned.get_json()['deleted'] == 0
    assert admin_client.post('/admin/analytics/logs/cleanup', json={'days_to_keep': 'x'}).status_code == 400


# ---------------------------------------------------------------------------
# Subscribers
# ---------------------------------------------------------------------------

def test_subscribe_confirm_unsubscribe(client, admin_client):
    resp = client.post('/api/subscribers', json={'email': 'New@Example.com', 'timezone': 'Europe/Paris'})
    assert resp.status_code == 201
    assert resp.get_json()['status'] == 'PENDING'
    assert client.post('/api/subscribers', json={'email': 'new@example.com'}).status_code == 200

    assert client.post('/api/subscribers/confirm', json={'email': 'new@example.com'}).status_code == 200
    stats = admin_client.get('/api/subscribers/stats').get_json()
    assert stats['count'] == 1

    assert client.post('/api/subscribers/unsubscribe', json={'email': 'new@example.com'}).status_code == 200
    assert client.post('/api/subscribers/unsubscribe', json={'email': 'nobody@example.com'}).status_code == 404


def test_subscribe_validation(client):
    assert client.post('/api/subscribers', json={}).status_code == 400
    assert client.post('/api/subscribers', json={'email': 'not-an-email'}).status_code == 400


def test_preferences_keep_timezone_on_invalid_value(client):
    client.post('/api/subscribers', json={'email': 'tz@example.com', 'timezone': 'Europe/Paris'})

    resp = client.post('/api/subscribers/preferences', json={'email': 'tz@example.com', 'timezone': 'Mars/Base'})
    assert resp.status_code == 200
    assert resp.get_json()['timezone'] == 'Europe/Paris'

    resp = client.post('/api/subscribers/preferences', json={'email': 'tz@example.com', 'timezone': 'Asia/Tokyo'})
    assert resp.get_json()['timezone'] == 'Asia/Tokyo'
    assert client.post('/api/subscribers/preferences', json={'email': 'nobody@example.com'}).status_code == 404

"""
Bounce/Complaint Ingestor
=========================

Applies delivery-provider events to deliveries and subscribers.

Internal event shape (see parsers.py for provider payloads):

    {
        'event_type': 'bounce' | 'complaint' | 'delivered' | 'open' | 'click' | 'unsubscribe',
        'recipient': 'someone@example.com',
        'bounce_type': 'permanent' | 'transient',     # bounces only
        'timestamp': datetime | ISO string | epoch seconds,
        'campaign_id': 12,                            # optional
        'provider_message_id': '...',                 # optional
        'event_id': '...',                            # optional, used for de-duplication
        'reason': '...',                              # optional
    }

Providers deliver at least once. Every mutation here is conditional
(state transitions from explicit source states, timestamps set only while
NULL, suppression only while not already SUPPRESSED), so replaying an event
changes nothing. Events with an ``event_id`` are additionally recorded in
``webhook_events`` and skipped when seen again.
"""

import logging

from mailroom.core import Database, get_setting, utcnow, as_utc, to_db_time
from mailroom.core.errors import StoreUnavailableError
from mailroom.modules.campaigns import models as campaign_models
from mailroom.modules.campaigns.models import DeliveryState
from mailroom.modules.subscribers import models as subscriber_models
from .parsers import parse_timestamp

logger = logging.getLogger(__name__)

BOUNCE = 'bounce'
COMPLAINT = 'complaint'
DELIVERED = 'delivered'
OPEN = 'open'
CLICK = 'click'
UNSUBSCRIBE = 'unsubscribe'
EVENT_TYPES = (BOUNCE, COMPLAINT, DELIVERED, OPEN, CLICK, UNSUBSCRIBE)

PERMANENT = 'permanent'
TRANSIENT = 'transient'

# Outcomes reported per event
APPLIED = 'applied'
NOOP = 'noop'
DUPLICATE = 'duplicate'
UNMATCHED = 'unmatched'
IGNORED = 'ignored'
ERROR = 'error'

# Delivery states each event may move a delivery out of
_BOUNCEABLE = (DeliveryState.SENT, DeliveryState.DELIVERED)
_HARD_BOUNCEABLE = (DeliveryState.SENT, DeliveryState.DELIVERED, DeliveryState.BOUNCED_SOFT)
_COMPLAINABLE = (DeliveryState.SENT, DeliveryState.DELIVERED, DeliveryState.BOUNCED_SOFT)
# A provider can report on a message before the dispatcher has recorded the send
_IN_FLIGHT = (DeliveryState.QUEUED, DeliveryState.CANCELLED)


def _db_log(level, message, details=None):
    """Log to framework's persistent DB logger"""
    try:
        from mailroom.core import db_log
        db_log(level, 'webhooks', message, details)
    except Exception:
        pass


def get_db_config():
    return get_setting('USER_DB', 'users.db')


def init_webhooks_db():
    """Create the webhook_events de-duplication table in USER_DB"""
    db_path = get_db_config()
    Database.ensure_dir(db_path)

    with Database.connect(db_path) as conn:
        conn.execute('''
            CREATE TABLE IF NOT EXISTS webhook_events (
                event_id TEXT PRIMARY KEY,
                provider TEXT,
                event_type TEXT,
                recipient TEXT,
                outcome TEXT,
                received_at TEXT NOT NULL
            )
        ''')

    logger.info("Webhook events table created/verified successfully")


def _already_processed(event_id):
    with Database.connect(get_db_config()) as conn:
        row = conn.execute('SELECT 1 FROM webhook_events WHERE event_id = ?', (event_id,)).fetchone()
        return row is not None


def _remember(event, outcome):
    with Database.connect(get_db_config()) as conn:
        conn.execute('''
            INSERT OR IGNORE INTO webhook_events (event_id, provider, event_type, recipient, outcome, received_at)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', (
            event['event_id'], event.get('provider'), event.get('event_type'),
            event.get('recipient'), outcome, to_db_time(utcnow()),
        ))


def normalize_bounce_type(value):
    """Map provider bounce classifications onto permanent/transient"""
    value = (value or '').strip().lower()
    if value in ('permanent', 'hard', 'hardbounce', 'bounce', 'undetermined_permanent'):
        return PERMANENT
    return TRANSIENT


def _campaign_id(value):
    try:
        return int(value) if value not in (None, '') else None
    except (TypeError, ValueError):
        return None


def ingest_event(event, now=None):
    """
    Apply one event.

    Returns:
        str: APPLIED, NOOP (matched, nothing left to change), DUPLICATE,
            UNMATCHED or IGNORED

    Raises:
        StoreUnavailableError: the provider should redeliver later
    """
    event_type = (event.get('event_type') or '').lower()
    recipient = subscriber_models.normalize_email(event.get('recipient') or '')
    if event_type not in EVENT_TYPES or not recipient:
        logger.debug(f"Ignoring webhook event {event_type or '?'} for {recipient or '?'}")
        return IGNORED

    event_id = event.get('event_id')
    if event_id and _already_processed(event_id):
        logger.debug(f"Webhook event {event_id} already processed")
        return DUPLICATE

    at = parse_timestamp(event.get('timestamp')) or as_utc(now) or utcnow()
    delivery = campaign_models.find_delivery_for_recipient(
        recipient,
        campaign_id=_campaign_id(event.get('campaign_id')),
        provider_message_id=event.get('provider_message_id'),
    )
    if delivery:
        subscriber = subscriber_models.get_subscriber(delivery['subscriber_id'])
    else:
        subscriber = subscriber_models.get_subscriber_by_email(recipient)

    if not delivery and not subscriber:
        logger.info(f"Unmatched {event_type} event for {recipient}; discarded")
        _db_log('info', 'Unmatched webhook event discarded', {
            'event_type': event_type, 'recipient': recipient, 'campaign_id': event.get('campaign_id'),
        })
        outcome = UNMATCHED
    else:
        handler = _HANDLERS[event_type]
        changed = handler(event, delivery, subscriber, at)
        outcome = APPLIED if changed else NOOP

    if event_id:
        _remember(dict(event, event_type=event_type, recipient=recipient), outcome)
    return outcome


def ingest_events(events, now=None):
    """
    Apply a batch of events. One bad event never stops the rest; a store
    outage does, so the provider redelivers the whole batch.

    Returns:
        dict: count per outcome plus 'received'
    """
    summary = {'received': 0, APPLIED: 0, NOOP: 0, DUPLICATE: 0, UNMATCHED: 0, IGNORED: 0, ERROR: 0}
    for event in events:
        summary['received'] += 1
        try:
            outcome = ingest_event(event, now=now)
        except StoreUnavailableError:
            raise
        except Exception as e:
            logger.exception(f"Failed to process webhook event for {event.get('recipient')}: {e}")
            _db_log('error', 'Webhook event failed', {'event': _loggable(event), 'error': str(e)})
            outcome = ERROR
        summary[outcome] += 1

    if summary[APPLIED]:
        logger.info(f"Webhook batch: {summary}")
    return summary


def _loggable(event):
    return {key: str(value) for key, value in event.items() if key != 'raw'}


# ===================
# EVENT HANDLERS
# ===================
# Each returns True when it changed anything.

def _transition(delivery, from_states, to_state, **timestamps):
    if campaign_models.update_delivery_state(delivery['id'], from_states, to_state, **timestamps):
        return True
    return campaign_models.update_delivery_state(
        delivery['id'], _IN_FLIGHT, to_state, in_flight=True, **timestamps
    )


def _on_bounce(event, delivery, subscriber, at):
    permanent = normalize_bounce_type(event.get('bounce_type')) == PERMANENT
    changed = False

    if delivery:
        if permanent:
            changed = _transition(delivery, _HARD_BOUNCEABLE, DeliveryState.BOUNCED_HARD, bounced_at=at)
        else:
            changed = _transition(delivery, _BOUNCEABLE, DeliveryState.BOUNCED_SOFT, bounced_at=at)

    if permanent and subscriber:
        reason = f"hard_bounce: {event['reason']}" if event.get('reason') else 'hard_bounce'
        changed = subscriber_models.suppress_subscriber(subscriber['id'], reason) or changed
    elif not permanent:
        logger.info(f"Soft bounce for {event.get('recipient')}: {event.get('reason') or 'no reason given'}")
    return changed


def _on_complaint(event, delivery, subscriber, at):
    changed = False
    if delivery:
        changed = _transition(delivery, _COMPLAINABLE, DeliveryState.COMPLAINED, complained_at=at)
    if subscriber:
        changed = subscriber_models.suppress_subscriber(subscriber['id'], 'complaint') or changed
    return changed


def _promote_delivered(delivery, at):
    return campaign_models.update_delivery_state(
        delivery['id'], (DeliveryState.SENT,), DeliveryState.DELIVERED, delivered_at=at
    )


def _on_delivered(event, delivery, subscriber, at):
    if not delivery:
        return False
    return _promote_delivered(delivery, at)


def _on_open(event, delivery, subscriber, at):
    if not delivery:
        return False
    # An open proves delivery even if the delivered event is late or missing
    promoted = _promote_delivered(delivery, at)
    return campaign_models.set_delivery_timestamp(delivery['id'], 'opened_at', at) or promoted


def _on_click(event, delivery, subscriber, at):
    if not delivery:
        return False
    promoted = _promote_delivered(delivery, at)
    opened = campaign_models.set_delivery_timestamp(delivery['id'], 'opened_at', at)
    clicked = campaign_models.set_delivery_timestamp(delivery['id'], 'clicked_at', at)
    return clicked or opened or promoted


def _on_unsubscribe(event, delivery, subscriber, at):
    changed = False
    if delivery:
        changed = campaign_models.set_delivery_timestamp(delivery['id'], 'unsubscribed_at', at)
    if subscriber:
        if subscriber_models.mark_unsubscribed(subscriber['id']):
            _db_log('info', 'Unsubscribed via provider event', {'subscriber_id': subscriber['id']})
            changed = True
    return changed


_HANDLERS = {
    BOUNCE: _on_bounce,
    COMPLAINT: _on_complaint,
    DELIVERED: _on_delivered,
    OPEN: _on_open,
    CLICK: _on_click,
    UNSUBSCRIBE: _on_unsubscribe,
}

"""
Provider webhook payloads -> internal events.

Each parser returns a list of event dicts in the shape ingest_event()
expects. Event kinds the ingestor does not handle come back with
``event_type`` None and are ignored downstream.
"""

import logging
from datetime import datetime, timezone

from mailroom.core import as_utc

logger = logging.getLogger(__name__)


RESEND_EVENTS = {
    'email.delivered': 'delivered',
    'email.opened': 'open',
    'email.clicked': 'click',
    'email.bounced': 'bounce',
    'email.complained': 'complaint',
    'email.unsubscribed': 'unsubscribe',
}

SENDGRID_EVENTS = {
    'delivered': 'delivered',
    'open': 'open',
    'click': 'click',
    'bounce': 'bounce',
    'dropped': 'bounce',
    'spamreport': 'complaint',
    'unsubscribe': 'unsubscribe',
    'group_unsubscribe': 'unsubscribe',
}

MAILGUN_EVENTS = {
    'delivered': 'delivered',
    'opened': 'open',
    'clicked': 'click',
    'failed': 'bounce',
    'bounced': 'bounce',
    'complained': 'complaint',
    'unsubscribed': 'unsubscribe',
}

POSTMARK_EVENTS = {
    'Delivery': 'delivered',
    'Open': 'open',
    'Click': 'click',
    'Bounce': 'bounce',
    'HardBounce': 'bounce',
    'SoftBounce': 'bounce',
    'SpamComplaint': 'complaint',
    'SubscriptionChange': 'unsubscribe',
}


class UnsupportedProviderError(ValueError):
    pass


def parse_timestamp(value):
    """datetime, ISO-8601 string (``Z`` suffix allowed) or epoch seconds -> aware UTC"""
    if value in (None, ''):
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = str(value).strip()
    try:
        return datetime.fromtimestamp(float(text), tz=timezone.utc)
    except ValueError:
        pass
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        logger.warning(f"Unparseable webhook timestamp: {value}")
        return None


def _event(provider, event_type, recipient, **fields):
    event = {
        'provider': provider,
        'event_type': event_type,
        'recipient': recipient,
        'bounce_type': None,
        'timestamp': None,
        'campaign_id': None,
        'provider_message_id': None,
        'event_id': None,
        'reason': None,
    }
    event.update(fields)
    return event


def parse_resend(payload, headers=None):
    data = payload.get('data') or {}
    recipients = data.get('to') or []
    if isinstance(recipients, str):
        recipients = [recipients]
    event_type = RESEND_EVENTS.get(payload.get('type'))

    bounce = data.get('bounce') or {}
    tags = data.get('tags') or {}
    if isinstance(tags, list):
        tags = {tag.get('name'): tag.get('value') for tag in tags if isinstance(tag, dict)}

    message_id = data.get('email_id')
    event_id = (headers or {}).get('svix-id')
    if not event_id and message_id:
        event_id = f"resend:{message_id}:{payload.get('type')}"

    return [
        _event(
            'resend', event_type, recipient,
            bounce_type=bounce.get('type') or data.get('bounce_type'),
            reason=bounce.get('message') or data.get('bounce_reason'),
            timestamp=payload.get('created_at'),
            campaign_id=tags.get('campaign_id'),
            provider_message_id=message_id,
            event_id=event_id if len(recipients) == 1 else None,
        )
        for recipient in recipients
    ]


def parse_sendgrid(payload, headers=None):
    events = payload if isinstance(payload, list) else [payload]
    parsed = []
    for item in events:
        kind = item.get('event')
        if kind == 'dropped':
            bounce_type = 'permanent'
        elif kind == 'bounce':
            # SendGrid reports blocks (temporary refusals) as bounce type "blocked"
            bounce_type = 'transient' if item.get('type') == 'blocked' else 'permanent'
        else:
            bounce_type = None
        unique_args = item.get('unique_args') or {}
        parsed.append(_event(
            'sendgrid', SENDGRID_EVENTS.get(kind), item.get('email'),
            bounce_type=bounce_type,
            reason=item.get('reason'),
            timestamp=item.get('timestamp'),
            campaign_id=item.get('campaign_id') or unique_args.get('campaign_id'),
            provider_message_id=item.get('sg_message_id'),
            event_id=item.get('sg_event_id'),
        ))
    return parsed


def parse_mailgun(payload, headers=None):
    data = payload.get('event-data') or {}
    kind = data.get('event')
    severity = data.get('severity')
    if kind == 'failed' and severity is None:
        severity = 'permanent'
    message_headers = (data.get('message') or {}).get('headers') or {}
    status = data.get('delivery-status') or {}

    return [_event(
        'mailgun', MAILGUN_EVENTS.get(kind), data.get('recipient'),
        bounce_type=severity if kind in ('failed', 'bounced') else None,
        reason=data.get('reason') or status.get('description') or status.get('message'),
        timestamp=data.get('timestamp'),
        campaign_id=(data.get('user-variables') or {}).get('campaign_id'),
        provider_message_id=message_headers.get('message-id'),
        event_id=data.get('id'),
    )]


def parse_postmark(payload, headers=None):
    kind = payload.get('RecordType') or payload.get('Type')
    if kind == 'SubscriptionChange' and not payload.get('SuppressSending', True):
        # Reactivation, not an unsubscribe
        kind = None

    bounce_type = None
    if kind in ('Bounce', 'HardBounce', 'SoftBounce'):
        bounce_type = 'permanent' if payload.get('Type') == 'HardBounce' or kind == 'HardBounce' else 'transient'

    message_id = payload.get('MessageID')
    event_id = payload.get('ID')
    event_id = f"postmark:{kind}:{event_id}" if event_id else (
        f"postmark:{kind}:{message_id}" if message_id else None
    )

    return [_event(
        'postmark', POSTMARK_EVENTS.get(kind), payload.get('Email') or payload.get('Recipient'),
        bounce_type=bounce_type,
        reason=payload.get('Description') or payload.get('Details'),
        timestamp=(
            payload.get('BouncedAt') or payload.get('DeliveredAt') or payload.get('ReceivedAt')
            or payload.get('ChangedAt')
        ),
        campaign_id=(payload.get('Metadata') or {}).get('campaign_id'),
        provider_message_id=message_id,
        event_id=event_id,
    )]


def parse_generic(payload, headers=None):
    """Already in the internal shape (or the camelCase variant), single event or list"""
    events = payload if isinstance(payload, list) else [payload]
    return [
        _event(
            item.get('provider', 'generic'),
            item.get('event_type') or item.get('eventType'),
            item.get('recipient'),
            bounce_type=item.get('bounce_type') or item.get('bounceType'),
            reason=item.get('reason'),
            timestamp=item.get('timestamp'),
            campaign_id=item.get('campaign_id') or item.get('campaignId'),
            provider_message_id=item.get('provider_message_id'),
            event_id=item.get('event_id'),
        )
        for item in events
    ]


PARSERS = {
    'resend': parse_resend,
    'sendgrid': parse_sendgrid,
    'mailgun': parse_mailgun,
    'postmark': parse_postmark,
    'generic': parse_generic,
}


def parse_payload(provider, payload, headers=None):
    """
    Raises:
        UnsupportedProviderError: unknown provider name
        ValueError: payload is not a JSON object/array
    """
    parser = PARSERS.get((provider or '').lower())
    if parser is None:
        raise UnsupportedProviderError(f"Unsupported provider: {provider}")
    if not isinstance(payload, (dict, list)):
        raise ValueError("Webhook payload must be a JSON object or array")
    if isinstance(payload, list) and not all(isinstance(item, dict) for item in payload):
        raise ValueError("Webhook payload array must contain objects")
    if isinstance(payload, list) and parser not in (parse_sendgrid, parse_generic):
        return [event for item in payload for event in parser(item, headers)]
    return parser(payload, headers)

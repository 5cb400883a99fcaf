"""
Weekly Digest
=============

Recurring campaign rule: one digest per week, sent on DIGEST_WEEKDAY at
DIGEST_HOUR (DEFAULT_TIMEZONE), built from the top DIGEST_TOP_N content items
of the trailing DIGEST_WINDOW_DAYS.

Each instance carries a recurrence key derived from its send slot
(``weekly-digest-2025-W07``). The key is UNIQUE in the store, so a second
check in the same period finds the existing instance instead of creating one.

Content comes from a provider callable supplied by the host application:

    provider(since, until, limit) -> [{'title', 'summary', 'link', 'published_at'}, ...]
"""

import sqlite3
import logging
from datetime import datetime, timedelta

from mailroom.core import as_utc, utcnow, get_setting, get_int_setting
from mailroom.core.errors import CampaignControlError
from .models import CampaignState, create_campaign, get_campaign_by_recurrence_key
from .controls import schedule_campaign
from .quiet_hours import resolve_timezone

logger = logging.getLogger(__name__)

RECURRENCE_PREFIX = 'weekly-digest'


def next_digest_slot(now, weekday, hour, tz):
    """First weekly slot strictly after ``now``, as aware UTC"""
    local_now = now.astimezone(tz)
    days_ahead = (weekday - local_now.weekday()) % 7
    target = local_now.date() + timedelta(days=days_ahead)

    slot = tz.normalize(tz.localize(datetime(target.year, target.month, target.day, hour)))
    if slot <= local_now:
        target += timedelta(days=7)
        slot = tz.normalize(tz.localize(datetime(target.year, target.month, target.day, hour)))
    return as_utc(slot)


def recurrence_key_for(slot, tz):
    iso_year, iso_week, _ = slot.astimezone(tz).isocalendar()
    return f"{RECURRENCE_PREFIX}-{iso_year}-W{iso_week:02d}"


def build_digest_blocks(items, slot, tz):
    local = slot.astimezone(tz)
    blocks = [{
        'type': 'heading',
        'text': 'This Week\'s Highlights',
        'subtitle': local.strftime('%d %B %Y'),
    }]
    for item in items:
        published = item.get('published_at')
        if isinstance(published, datetime):
            published = published.strftime('%d %b %Y')
        blocks.append({
            'type': 'article',
            'title': item.get('title', ''),
            'summary': item.get('summary', ''),
            'link': item.get('link', '#'),
            'published_at': published or '',
        })
    return blocks


def ensure_weekly_digest(now=None, content_provider=None):
    """
    Create and schedule this period's digest if it is due and missing.

    Returns:
        dict describing the instance, or None when nothing is due / no content
    """
    now = as_utc(now) or utcnow()
    content_provider = content_provider or get_setting('DIGEST_CONTENT_PROVIDER', None)
    if not callable(content_provider):
        logger.debug("No digest content provider configured")
        return None

    tz = resolve_timezone(get_setting('DEFAULT_TIMEZONE', 'UTC'))
    slot = next_digest_slot(
        now, get_int_setting('DIGEST_WEEKDAY', 6), get_int_setting('DIGEST_HOUR', 9), tz
    )
    lead = timedelta(minutes=get_int_setting('DIGEST_LEAD_MINUTES', 60))
    if now < slot - lead:
        return None

    key = recurrence_key_for(slot, tz)
    existing = get_campaign_by_recurrence_key(key)
    if existing:
        return _existing_instance(existing, key, slot, now)

    window = timedelta(days=get_int_setting('DIGEST_WINDOW_DAYS', 7))
    top_n = get_int_setting('DIGEST_TOP_N', 5)
    items = list(content_provider(since=slot - window, until=slot, limit=top_n) or [])[:top_n]
    if not items:
        logger.info(f"No content for {key}; digest skipped")
        return None

    brand = get_setting('EMAIL_BRAND_NAME', 'Newsletter')
    try:
        campaign_id = create_campaign({
            'name': f"Weekly Digest {key[len(RECURRENCE_PREFIX) + 1:]}",
            'subject': f"{brand}: this week's top {len(items)}",
            'blocks': build_digest_blocks(items, slot, tz),
            'template': 'digest',
            'recurrence_key': key,
        }, now=now)
    except sqlite3.IntegrityError:
        # Another scheduler created it first
        existing = get_campaign_by_recurrence_key(key)
        if not existing:
            raise
        return _existing_instance(existing, key, slot, now)

    schedule_campaign(campaign_id, slot, now=now)
    logger.info(f"Digest {key} created as campaign {campaign_id}, scheduled for {slot.isoformat()}")
    return {'campaign_id': campaign_id, 'recurrence_key': key, 'created': True, 'scheduled_at': slot.isoformat()}


def _existing_instance(campaign, key, slot, now):
    """This period's instance already exists. One left in DRAFT (the schedule
    step failed after the insert) is scheduled now."""
    if campaign['state'] == CampaignState.DRAFT:
        try:
            schedule_campaign(campaign['id'], slot, now=now)
            logger.warning(f"Digest {key} was left in DRAFT; scheduled campaign {campaign['id']}")
        except CampaignControlError as e:
            logger.warning(f"Could not schedule leftover digest {key}: {e}")
    return {'campaign_id': campaign['id'], 'recurrence_key': key, 'created': False}

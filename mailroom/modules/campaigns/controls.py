"""
Campaign Controls
=================

The campaign state machine. Every operation validates the current state for
a useful error message, then performs the transition as a conditional update
so concurrent callers cannot both win.

    DRAFT      --schedule-->      SCHEDULED
    DRAFT      --send_now-->      SENDING
    SCHEDULED  --scheduler fires-> SENDING
    SCHEDULED  --cancel-->        CANCELLED
    SENDING    --dispatch done--> SENT
    SENDING    --cancel-->        CANCELLED
    non-terminal --fatal error--> FAILED
"""

import logging

from mailroom.core import utcnow, as_utc, get_int_setting
from mailroom.core.errors import (
    CampaignNotFoundError, InvalidScheduleError, AlreadySentError,
    NotCancellableError, ImmutableCampaignError, InvalidStateError,
)
from .models import (
    CampaignState, get_campaign, transition_campaign, cancel_queued_deliveries,
    requeue_failed_deliveries,
)
from .models import update_campaign_content as _write_content

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ('name', 'subject', 'blocks', 'template', 'feeds')


def _db_log(level, message, details=None):
    """Log to framework's persistent DB logger"""
    try:
        from mailroom.core import db_log
        db_log(level, 'campaigns', message, details)
    except Exception:
        pass


def _require_campaign(campaign_id):
    campaign = get_campaign(campaign_id)
    if not campaign:
        raise CampaignNotFoundError(f"Campaign {campaign_id} not found", campaign_id=campaign_id)
    return campaign


def schedule_campaign(campaign_id, scheduled_at, now=None):
    """DRAFT (or SCHEDULED, to reschedule) -> SCHEDULED at a future instant"""
    now = as_utc(now) or utcnow()
    try:
        scheduled_at = as_utc(scheduled_at)
    except (TypeError, ValueError) as e:
        raise InvalidScheduleError(f"Invalid schedule time: {scheduled_at}", campaign_id=campaign_id) from e

    campaign = _require_campaign(campaign_id)
    state = campaign['state']

    if state in (CampaignState.SENDING, CampaignState.SENT, CampaignState.CANCELLED):
        raise AlreadySentError(f"Campaign {campaign_id} is already {state}", campaign_id, state)
    if state == CampaignState.FAILED:
        raise InvalidStateError(f"Campaign {campaign_id} has failed and cannot be scheduled", campaign_id, state)
    if scheduled_at is None or scheduled_at <= now:
        raise InvalidScheduleError("Scheduled time must be in the future", campaign_id, state)

    if not transition_campaign(
        campaign_id, (CampaignState.DRAFT, CampaignState.SCHEDULED), CampaignState.SCHEDULED,
        now=now, scheduled_at=scheduled_at
    ):
        # Lost a race with send_now / cancel
        current = get_campaign(campaign_id)
        raise AlreadySentError(
            f"Campaign {campaign_id} changed state while scheduling", campaign_id, current and current['state']
        )

    logger.info(f"Campaign {campaign_id} scheduled for {scheduled_at.isoformat()}")
    return get_campaign(campaign_id)


def claim_campaign(campaign_id, from_states=(CampaignState.SCHEDULED,), now=None):
    """Exclusive claim into SENDING. Returns False when someone else got there first."""
    now = as_utc(now) or utcnow()
    return transition_campaign(
        campaign_id, from_states, CampaignState.SENDING,
        now=now, started_at=now, scheduled_at=None
    )


def send_now(campaign_id, dispatcher=None, now=None):
    """
    DRAFT or SCHEDULED -> SENDING, then dispatch if a dispatcher is given.

    Raises AlreadySentError for SENDING/SENT/CANCELLED; a duplicate request is
    answered with that error rather than a second dispatch.
    """
    now = as_utc(now) or utcnow()
    campaign = _require_campaign(campaign_id)
    state = campaign['state']

    if state in (CampaignState.SENDING, CampaignState.SENT, CampaignState.CANCELLED):
        raise AlreadySentError(f"Campaign {campaign_id} is already {state}", campaign_id, state)
    if state == CampaignState.FAILED:
        raise InvalidStateError(f"Campaign {campaign_id} has failed and cannot be sent", campaign_id, state)

    if not claim_campaign(campaign_id, (CampaignState.DRAFT, CampaignState.SCHEDULED), now=now):
        current = get_campaign(campaign_id)
        raise AlreadySentError(
            f"Campaign {campaign_id} was claimed by another sender", campaign_id, current and current['state']
        )

    _db_log('info', f'Campaign {campaign_id} sent now', {'from': state})

    if dispatcher is None:
        return {'campaign_id': campaign_id, 'state': CampaignState.SENDING}
    return dispatcher.dispatch(campaign_id, now=now)


def cancel_campaign(campaign_id, reason=None, now=None):
    """
    SCHEDULED or SENDING -> CANCELLED.

    Every QUEUED delivery becomes CANCELLED, including ones leased by a
    running or crashed dispatcher. Deliveries in a terminal state keep it.
    A send already in flight is still recorded as SENT.

    Returns:
        int: number of deliveries cancelled
    """
    now = as_utc(now) or utcnow()
    campaign = _require_campaign(campaign_id)
    state = campaign['state']

    if state not in (CampaignState.SCHEDULED, CampaignState.SENDING):
        raise NotCancellableError(f"Campaign {campaign_id} cannot be cancelled from {state}", campaign_id, state)

    if not transition_campaign(
        campaign_id, (CampaignState.SCHEDULED, CampaignState.SENDING), CampaignState.CANCELLED,
        now=now, cancelled_at=now, cancel_reason=reason, scheduled_at=None
    ):
        current = get_campaign(campaign_id)
        raise NotCancellableError(
            f"Campaign {campaign_id} finished before it could be cancelled", campaign_id, current and current['state']
        )

    cancelled = cancel_queued_deliveries(campaign_id, now=now)
    logger.info(f"Campaign {campaign_id} cancelled ({reason}); {cancelled} deliveries cancelled")
    _db_log('warning', f'Campaign {campaign_id} cancelled', {'reason': reason, 'cancelled_deliveries': cancelled})
    return cancelled


def update_campaign_content(campaign_id, data, now=None):
    """Edit name/subject/blocks/template/feeds. Rejected once the campaign has been sent."""
    campaign = _require_campaign(campaign_id)
    if campaign['sent_at'] or campaign['state'] in (CampaignState.SENDING, CampaignState.SENT):
        raise ImmutableCampaignError(
            f"Campaign {campaign_id} can no longer be edited", campaign_id, campaign['state']
        )

    fields = {key: data[key] for key in EDITABLE_FIELDS if key in data}
    if not _write_content(campaign_id, fields, now=as_utc(now)):
        raise ImmutableCampaignError(f"Campaign {campaign_id} can no longer be edited", campaign_id)
    return get_campaign(campaign_id)


def fail_campaign(campaign_id, reason, now=None):
    """Any non-terminal state -> FAILED. Remaining QUEUED deliveries are cancelled."""
    now = as_utc(now) or utcnow()
    if not transition_campaign(
        campaign_id, CampaignState.NON_TERMINAL, CampaignState.FAILED,
        now=now, failed_at=now, failure_reason=reason, scheduled_at=None
    ):
        return False

    cancel_queued_deliveries(campaign_id, now=now)
    logger.error(f"Campaign {campaign_id} failed: {reason}")
    _db_log('error', f'Campaign {campaign_id} failed', {'reason': reason})
    return True


def retry_failed_deliveries(campaign_id, now=None):
    """Requeue FAILED deliveries that still have attempts left. Only while SENDING."""
    campaign = _require_campaign(campaign_id)
    if campaign['state'] != CampaignState.SENDING:
        raise InvalidStateError(
            f"Failed deliveries can only be retried while the campaign is sending (state: {campaign['state']})",
            campaign_id, campaign['state']
        )

    max_attempts = get_int_setting('DISPATCH_MAX_ATTEMPTS', 3)
    retried = requeue_failed_deliveries(campaign_id, max_attempts, now=as_utc(now))
    logger.info(f"Campaign {campaign_id}: {retried} failed deliveries requeued")
    return retried

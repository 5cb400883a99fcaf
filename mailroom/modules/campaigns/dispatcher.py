"""
Campaign Dispatcher
===================

Fans a SENDING campaign out into per-recipient deliveries and pushes them
through the email transport.

One ``dispatch()`` run:
    1. fan-out (once per campaign): one QUEUED delivery per eligible
       subscriber; recipients inside quiet hours get a next_attempt_at
    2. repeatedly lease a batch of ready deliveries, send it with at most
       DISPATCH_CONCURRENCY transport calls in flight, record the outcomes
    3. check the campaign state between batches and stop on cancellation
    4. mark the campaign SENT once no QUEUED delivery is left

Only transport calls run on worker threads. Rendering and every store write
happen on the calling thread.
"""

import logging
from datetime import timedelta
from concurrent.futures import ThreadPoolExecutor, as_completed

from mailroom.core import utcnow, as_utc, get_int_setting
from mailroom.core.errors import (
    CampaignNotFoundError, StoreUnavailableError, SuppressedRecipientError,
    TransientDeliveryError, PermanentDeliveryError,
)
from mailroom.modules.subscribers.models import get_eligible_subscribers, ACTIVE
from . import models
from .models import CampaignState
from .quiet_hours import check_recipient
from .renderer import render_for_recipient

logger = logging.getLogger(__name__)


def _db_log(level, message, details=None):
    """Log to framework's persistent DB logger"""
    try:
        from mailroom.core import db_log
        db_log(level, 'dispatcher', message, details)
    except Exception:
        pass


def backoff_delay(attempts, base_seconds, max_seconds):
    """Delay before retry number ``attempts`` (1-based): base * 2^(attempts-1), capped"""
    return timedelta(seconds=min(base_seconds * (2 ** max(attempts - 1, 0)), max_seconds))


def ensure_sendable(subscriber):
    if subscriber.get('status') != ACTIVE:
        raise SuppressedRecipientError(
            f"Subscriber {subscriber.get('id')} is {subscriber.get('status')}", subscriber_id=subscriber.get('id')
        )


class Dispatcher:
    """
    Campaign dispatcher.

    Args:
        transport: object with ``send(recipient, subject, html_body, text_body, campaign_id)``;
            defaults to the configured email service
        batch_size, concurrency, max_attempts, backoff_base, backoff_max, lease_seconds:
            override the DISPATCH_* settings
    """

    def __init__(self, transport=None, batch_size=None, concurrency=None, max_attempts=None,
                 backoff_base=None, backoff_max=None, lease_seconds=None):
        if transport is None:
            from mailroom.modules.email.email_service import email_service
            transport = email_service
        self.transport = transport
        self._overrides = {
            'DISPATCH_BATCH_SIZE': batch_size,
            'DISPATCH_CONCURRENCY': concurrency,
            'DISPATCH_MAX_ATTEMPTS': max_attempts,
            'DISPATCH_BACKOFF_BASE_SECONDS': backoff_base,
            'DISPATCH_BACKOFF_MAX_SECONDS': backoff_max,
            'DISPATCH_LEASE_SECONDS': lease_seconds,
        }

    def _setting(self, key, default):
        if self._overrides.get(key) is not None:
            return self._overrides[key]
        return get_int_setting(key, default)

    def dispatch(self, campaign_id, now=None):
        """
        Run (or resume) dispatch for a SENDING campaign.

        Safe to call repeatedly: fan-out skips recipients that already have a
        delivery, and only QUEUED deliveries whose time has come are sent.

        Returns:
            dict: run summary (counts and resulting campaign state)

        Raises:
            CampaignNotFoundError: unknown campaign
            StoreUnavailableError: the store went away; the cycle should be retried later
        """
        now = as_utc(now) or utcnow()
        campaign = models.get_campaign(campaign_id)
        if not campaign:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found", campaign_id=campaign_id)

        summary = {
            'campaign_id': campaign_id,
            'created': 0,
            'delayed': 0,
            'skipped': 0,
            'sent': 0,
            'retried': 0,
            'failed': 0,
            'deferred': 0,
            'batches': 0,
            'state': campaign['state'],
        }

        if campaign['state'] != CampaignState.SENDING:
            logger.info(f"Campaign {campaign_id} is {campaign['state']}, nothing to dispatch")
            return summary

        try:
            if not campaign.get('fanned_out_at'):
                self._fan_out(campaign, now, summary)
            self._send_ready(campaign, now, summary)
            self._complete_if_done(campaign_id, now, summary)
        except StoreUnavailableError:
            logger.error(f"Store unavailable while dispatching campaign {campaign_id}; will resume next cycle")
            raise
        except Exception as e:
            logger.exception(f"Fatal error dispatching campaign {campaign_id}: {e}")
            from .controls import fail_campaign
            fail_campaign(campaign_id, f"Dispatch error: {type(e).__name__}: {e}", now=now)
            summary['state'] = CampaignState.FAILED
            return summary

        logger.info(
            f"Dispatch campaign {campaign_id}: sent={summary['sent']} retried={summary['retried']} "
            f"failed={summary['failed']} delayed={summary['delayed']} state={summary['state']}"
        )
        _db_log('info', f'Dispatch run for campaign {campaign_id}', summary)
        return summary

    def _fan_out(self, campaign, now, summary):
        entries = []
        for subscriber in get_eligible_subscribers(campaign.get('feeds')):
            try:
                ensure_sendable(subscriber)
            except SuppressedRecipientError as e:
                logger.debug(f"Skipping recipient: {e}")
                summary['skipped'] += 1
                continue

            quiet = check_recipient(now, subscriber.get('timezone'))
            if quiet.is_quiet:
                summary['delayed'] += 1
                entries.append((subscriber, quiet.next_send_at))
            else:
                entries.append((subscriber, None))

        summary['created'] = models.create_deliveries(campaign['id'], entries, now=now)
        models.transition_campaign(
            campaign['id'], (CampaignState.SENDING,), CampaignState.SENDING, now=now, fanned_out_at=now
        )
        logger.info(
            f"Campaign {campaign['id']} fanned out: {summary['created']} deliveries "
            f"({summary['delayed']} delayed by quiet hours)"
        )

    def _send_ready(self, campaign, now, summary):
        campaign_id = campaign['id']
        batch_size = max(1, self._setting('DISPATCH_BATCH_SIZE', 50))
        lease_seconds = self._setting('DISPATCH_LEASE_SECONDS', 900)

        while True:
            state = models.get_campaign_state(campaign_id)
            if state != CampaignState.SENDING:
                logger.info(f"Campaign {campaign_id} is now {state}; stopping before next batch")
                if state == CampaignState.CANCELLED:
                    # Deliveries created or requeued while the cancel ran
                    models.cancel_queued_deliveries(campaign_id, now=now)
                summary['state'] = state
                return

            batch = models.claim_deliveries(campaign_id, now, batch_size, lease_seconds)
            if not batch:
                return
            summary['batches'] += 1

            ready = []
            for delivery in batch:
                quiet = check_recipient(now, delivery.get('timezone'))
                if quiet.is_quiet:
                    models.defer_delivery(delivery['id'], quiet.next_send_at, now=now)
                    summary['deferred'] += 1
                else:
                    ready.append(delivery)

            for delivery, message_id, error in self._send_batch(campaign, ready):
                self._record(delivery, message_id, error, now, summary)

    def _send_batch(self, campaign, deliveries):
        """Transport calls for one batch, bounded by DISPATCH_CONCURRENCY. Yields outcomes."""
        if not deliveries:
            return []

        messages = []
        for delivery in deliveries:
            recipient = {
                'id': delivery['subscriber_id'],
                'email': delivery['recipient_email'],
                'timezone': delivery.get('timezone'),
            }
            messages.append((delivery, render_for_recipient(campaign, recipient)))

        workers = max(1, min(self._setting('DISPATCH_CONCURRENCY', 10), len(messages)))
        outcomes = []
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='mailroom-send') as pool:
            futures = {
                pool.submit(
                    self.transport.send, delivery['recipient_email'], subject, html_body, text_body, campaign['id']
                ): delivery
                for delivery, (subject, html_body, text_body) in messages
            }
            for future in as_completed(futures):
                delivery = futures[future]
                try:
                    outcomes.append((delivery, future.result(), None))
                except (TransientDeliveryError, PermanentDeliveryError) as e:
                    outcomes.append((delivery, None, e))
                except Exception as e:
                    # Unknown transport failure: retry up to DISPATCH_MAX_ATTEMPTS
                    outcomes.append((delivery, None, TransientDeliveryError(str(e), recipient=delivery['recipient_email'])))
        return outcomes

    def _record(self, delivery, message_id, error, now, summary):
        if error is None:
            models.mark_delivery_sent(delivery['id'], provider_message_id=message_id, now=now)
            summary['sent'] += 1
            return

        if isinstance(error, PermanentDeliveryError):
            logger.warning(f"Permanent failure for {delivery['recipient_email']}: {error}")
            models.mark_delivery_failed(delivery['id'], delivery['attempts'], str(error), now=now, permanent=True)
            summary['failed'] += 1
            return

        attempts = delivery['attempts'] + 1
        max_attempts = self._setting('DISPATCH_MAX_ATTEMPTS', 3)
        if attempts >= max_attempts:
            logger.warning(
                f"Giving up on {delivery['recipient_email']} after {attempts} attempts: {error}"
            )
            models.mark_delivery_failed(delivery['id'], attempts, str(error), now=now)
            summary['failed'] += 1
            return

        delay = backoff_delay(
            attempts,
            self._setting('DISPATCH_BACKOFF_BASE_SECONDS', 60),
            self._setting('DISPATCH_BACKOFF_MAX_SECONDS', 3600),
        )
        logger.info(f"Transient failure for {delivery['recipient_email']}, retry {attempts} in {delay}")
        models.mark_delivery_retry(delivery['id'], attempts, now + delay, str(error), now=now)
        summary['retried'] += 1

    def _complete_if_done(self, campaign_id, now, summary):
        if summary['state'] != CampaignState.SENDING:
            return
        if models.count_pending_deliveries(campaign_id) > 0:
            return

        if models.transition_campaign(
            campaign_id, (CampaignState.SENDING,), CampaignState.SENT, now=now, sent_at=now
        ):
            summary['state'] = CampaignState.SENT
            self._capture_snapshot(campaign_id, now)
        else:
            summary['state'] = models.get_campaign_state(campaign_id)

    def _capture_snapshot(self, campaign_id, now):
        from mailroom.modules.analytics.aggregator import capture_snapshot
        try:
            capture_snapshot(campaign_id, now=now)
        except StoreUnavailableError as e:
            logger.warning(f"Could not capture completion snapshot for campaign {campaign_id}: {e}")

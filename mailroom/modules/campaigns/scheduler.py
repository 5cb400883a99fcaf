"""
Campaign Scheduler
==================

``run_scheduler_tick()`` is one pass of the periodic scheduler:

    1. claim every SCHEDULED campaign whose time has come (conditional
       SCHEDULED -> SENDING; a lost claim is skipped silently)
    2. dispatch the claimed campaigns
    3. resume SENDING campaigns with deliveries that became ready
       (quiet hours over, retry backoff elapsed, crashed run)
    4. cancel QUEUED deliveries left behind by cancelled or failed campaigns
    5. evaluate the weekly digest rule
    6. capture fresh analytics snapshots for recently sent campaigns

A failure inside a tick is logged and recorded in the tick summary; the next
tick runs normally. ``SchedulerWorker`` runs ticks on a fixed interval in a
daemon thread, and the cron route runs single ticks on demand.
"""

import logging
import threading
from datetime import timedelta

from mailroom.core import utcnow, as_utc, to_db_time, get_bool_setting
from mailroom.core.errors import StoreUnavailableError
from . import models
from .controls import claim_campaign
from .dispatcher import Dispatcher

logger = logging.getLogger(__name__)


def _db_log(level, message, details=None):
    """Log to framework's persistent DB logger"""
    try:
        from mailroom.core import db_log
        db_log(level, 'scheduler', message, details)
    except Exception:
        pass


def run_scheduler_tick(now=None, dispatcher=None, content_provider=None):
    """
    Run one scheduler pass.

    Returns:
        dict: summary with claimed / lost / resumed campaign ids, digest result and errors
    """
    now = as_utc(now) or utcnow()
    summary = {
        'ran_at': to_db_time(now),
        'claimed': [],
        'lost': [],
        'resumed': [],
        'swept': 0,
        'dispatch': {},
        'digest': None,
        'snapshots': 0,
        'errors': [],
    }

    if get_bool_setting('DEGRADED_MODE', False):
        logger.warning("Degraded mode enabled: scheduler tick skipped")
        summary.update({'degraded': True, 'synthetic': True})
        return summary

    dispatcher = dispatcher or Dispatcher()

    try:
        due = models.get_due_campaigns(now)
        for campaign in due:
            if claim_campaign(campaign['id'], now=now):
                summary['claimed'].append(campaign['id'])
            else:
                logger.debug(f"Campaign {campaign['id']} claimed elsewhere, skipping")
                summary['lost'].append(campaign['id'])

        for campaign_id in summary['claimed']:
            _dispatch(dispatcher, campaign_id, now, summary)

        for campaign in models.get_resumable_campaigns(now):
            if campaign['id'] in summary['dispatch']:
                continue
            summary['resumed'].append(campaign['id'])
            _dispatch(dispatcher, campaign['id'], now, summary)

        summary['swept'] = models.cancel_orphaned_deliveries(now=now)

    except StoreUnavailableError as e:
        logger.error(f"Store unavailable, aborting scheduler tick: {e}")
        _db_log('error', 'Scheduler tick aborted: store unavailable', {'error': str(e)})
        summary['errors'].append({'stage': 'dispatch', 'error': str(e)})
        return summary

    if get_bool_setting('DIGEST_ENABLED', False):
        from .digest import ensure_weekly_digest
        try:
            summary['digest'] = ensure_weekly_digest(now, content_provider)
        except Exception as e:
            logger.exception(f"Weekly digest evaluation failed: {e}")
            summary['errors'].append({'stage': 'digest', 'error': str(e)})

    from mailroom.modules.analytics.aggregator import capture_due_snapshots
    try:
        summary['snapshots'] = capture_due_snapshots(now)
    except StoreUnavailableError as e:
        logger.warning(f"Snapshot capture skipped: {e}")
        summary['errors'].append({'stage': 'snapshots', 'error': str(e)})

    if summary['claimed'] or summary['resumed'] or summary['errors']:
        _db_log('info', 'Scheduler tick', summary)
    return summary


def _dispatch(dispatcher, campaign_id, now, summary):
    """Dispatch one campaign; store failures propagate to abort the tick, anything else is recorded"""
    try:
        result = dispatcher.dispatch(campaign_id, now=now)
        summary['dispatch'][campaign_id] = result.get('state')
    except StoreUnavailableError:
        raise
    except Exception as e:
        logger.exception(f"Dispatch of campaign {campaign_id} failed: {e}")
        summary['errors'].append({'stage': 'dispatch', 'campaign_id': campaign_id, 'error': str(e)})


class SchedulerWorker:
    """
    Background scheduler: runs ``run_scheduler_tick`` every ``interval`` seconds
    inside an application context, on a daemon thread.
    """

    def __init__(self, app, interval=None, dispatcher=None, content_provider=None):
        self.app = app
        self.interval = interval or int(app.config.get('SCHEDULER_INTERVAL_SECONDS') or 60)
        self.dispatcher = dispatcher
        self.content_provider = content_provider
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._thread = None
        self._status = {
            'last_run_at': None,
            'next_run_at': None,
            'last_result': None,
            'last_error': None,
            'ticks': 0,
            'failed_ticks': 0,
        }

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name='mailroom-scheduler', daemon=True)
        self._thread.start()
        logger.info(f"Scheduler worker started (interval {self.interval}s)")

    def stop(self, timeout=5):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout)
        logger.info("Scheduler worker stopped")

    @property
    def running(self):
        return bool(self._thread and self._thread.is_alive() and not self._stop_event.is_set())

    def run_once(self, now=None):
        """One tick in an app context, recorded in status(). Never raises."""
        started = utcnow()
        try:
            with self.app.app_context():
                result = run_scheduler_tick(
                    now=now, dispatcher=self.dispatcher, content_provider=self.content_provider
                )
            error = None
        except Exception as e:
            logger.exception(f"Scheduler tick failed: {e}")
            result, error = None, str(e)

        with self._lock:
            self._status['ticks'] += 1
            self._status['last_run_at'] = to_db_time(started)
            self._status['last_result'] = result
            if error or (result and result['errors']):
                self._status['failed_ticks'] += 1
                self._status['last_error'] = error or result['errors'][-1]['error']
        return result

    def _run(self):
        while not self._stop_event.is_set():
            self.run_once()
            with self._lock:
                self._status['next_run_at'] = to_db_time(
                    utcnow() + timedelta(seconds=self.interval)
                )
            self._stop_event.wait(self.interval)

    def status(self):
        with self._lock:
            status = dict(self._status)
        status['running'] = self.running
        status['interval_seconds'] = self.interval
        return status

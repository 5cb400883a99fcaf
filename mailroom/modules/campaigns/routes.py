"""
Campaigns Routes
================

Admin API (admin session required):
- GET  /admin/campaigns                         -- list (?state=, ?limit=)
- POST /admin/campaigns                         -- create a DRAFT (optionally scheduled)
- GET  /admin/campaigns/<id>                    -- detail with delivery counts
- PUT  /admin/campaigns/<id>                    -- edit content
- POST /admin/campaigns/<id>/preview            -- rendered HTML for a sample recipient
- POST /admin/campaigns/<id>/schedule           -- {scheduled_at}
- POST /admin/campaigns/<id>/send-now           -- ?dispatch=true to send inline
- POST /admin/campaigns/<id>/cancel             -- {reason}
- POST /admin/campaigns/<id>/retry-failed
- GET  /admin/campaigns/<id>/deliveries         -- ?state=
- GET  /admin/campaigns/dead-letters            -- ?campaign_id=
- GET  /admin/campaigns/scheduler/status

Cron (Authorization: Bearer CRON_SECRET):
- POST /api/cron/campaigns                      -- run one scheduler tick
"""

import hmac
import logging
from flask import request, jsonify, session, current_app

from mailroom.core import get_setting
from mailroom.core.errors import CampaignControlError, StoreUnavailableError
from . import campaigns_bp, cron_bp
from . import controls, models
from .models import CampaignState, DeliveryState
from .renderer import render_for_recipient
from .scheduler import run_scheduler_tick

logger = logging.getLogger(__name__)


def _db_log(level, message, details=None):
    """Log to framework's persistent DB logger"""
    try:
        from mailroom.core import db_log
        db_log(level, 'campaigns', message, details)
    except Exception:
        pass


def _require_admin():
    if 'admin_id' not in session:
        return jsonify({'error': 'Authentication required'}), 401
    return None


def _extension():
    return current_app.extensions.get('mailroom')


def _dispatcher():
    ext = _extension()
    if ext is not None:
        return ext.dispatcher
    from .dispatcher import Dispatcher
    return Dispatcher()


def _error(e):
    """Map engine errors to JSON responses"""
    if isinstance(e, CampaignControlError):
        body = {'error': str(e)}
        if e.state:
            body['state'] = e.state
        return jsonify(body), e.status_code
    if isinstance(e, StoreUnavailableError):
        logger.error(f"Store unavailable: {e}")
        return jsonify({'error': 'Database temporarily unavailable'}), 503
    logger.exception(f"Unexpected campaign API error: {e}")
    _db_log('error', 'Campaign API error', {'error': str(e), 'path': request.path})
    return jsonify({'error': 'Internal error'}), 500


def _timestamp(value):
    # Accept the JavaScript toISOString() form
    if isinstance(value, str) and value.endswith('Z'):
        return value[:-1] + '+00:00'
    return value


# ===================
# CRUD
# ===================

@campaigns_bp.route('', methods=['GET'])
def list_campaigns():
    denied = _require_admin()
    if denied:
        return denied

    state = request.args.get('state')
    if state and state not in CampaignState.ALL:
        return jsonify({'error': f'Unknown state: {state}'}), 400
    try:
        limit = min(max(int(request.args.get('limit', 100)), 1), 500)
    except (TypeError, ValueError):
        limit = 100

    try:
        return jsonify({'campaigns': models.list_campaigns(state=state, limit=limit)}), 200
    except Exception as e:
        return _error(e)


@campaigns_bp.route('', methods=['POST'])
def create_campaign():
    denied = _require_admin()
    if denied:
        return denied

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'No data provided'}), 400
    if not (data.get('name') or '').strip() or not (data.get('subject') or '').strip():
        return jsonify({'error': 'Name and subject are required'}), 400
    if not isinstance(data.get('blocks', []), list):
        return jsonify({'error': 'blocks must be a list'}), 400

    try:
        campaign_id = models.create_campaign({
            key: data.get(key) for key in controls.EDITABLE_FIELDS
        })
        campaign = models.get_campaign(campaign_id)
        if data.get('scheduled_at'):
            campaign = controls.schedule_campaign(campaign_id, _timestamp(data['scheduled_at']))
    except Exception as e:
        return _error(e)

    _db_log('info', f'Campaign {campaign_id} created', {'name': data.get('name')})
    return jsonify(campaign), 201


@campaigns_bp.route('/<int:campaign_id>', methods=['GET'])
def get_campaign(campaign_id):
    denied = _require_admin()
    if denied:
        return denied

    try:
        campaign = models.get_campaign(campaign_id)
        if not campaign:
            return jsonify({'error': 'Campaign not found'}), 404
        campaign['deliveries'] = models.count_deliveries_by_state(campaign_id)
        return jsonify(campaign), 200
    except Exception as e:
        return _error(e)


@campaigns_bp.route('/<int:campaign_id>', methods=['PUT'])
def update_campaign(campaign_id):
    denied = _require_admin()
    if denied:
        return denied

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'No data provided'}), 400

    try:
        return jsonify(controls.update_campaign_content(campaign_id, data)), 200
    except Exception as e:
        return _error(e)


@campaigns_bp.route('/<int:campaign_id>/preview', methods=['POST'])
def preview(campaign_id):
    """Render the campaign for a sample (or given) recipient without sending"""
    denied = _require_admin()
    if denied:
        return denied

    data = request.get_json(silent=True) or {}
    try:
        campaign = models.get_campaign(campaign_id)
        if not campaign:
            return jsonify({'error': 'Campaign not found'}), 404
        subject, html, text = render_for_recipient(campaign, {
            'id': 0,
            'email': data.get('email') or 'subscriber@example.com',
            'timezone': None,
        })
        return jsonify({'subject': subject, 'html': html, 'text': text}), 200
    except Exception as e:
        return _error(e)


# ===================
# STATE MACHINE
# ===================

@campaigns_bp.route('/<int:campaign_id>/schedule', methods=['POST'])
def schedule(campaign_id):
    denied = _require_admin()
    if denied:
        return denied

    data = request.get_json(silent=True) or {}
    if not data.get('scheduled_at'):
        return jsonify({'error': 'scheduled_at is required'}), 400

    try:
        campaign = controls.schedule_campaign(campaign_id, _timestamp(data['scheduled_at']))
        return jsonify(campaign), 200
    except Exception as e:
        return _error(e)


@campaigns_bp.route('/<int:campaign_id>/send-now', methods=['POST'])
def send_now(campaign_id):
    """Start sending. Without ?dispatch=true the scheduler picks the campaign up on its next tick."""
    denied = _require_admin()
    if denied:
        return denied

    inline = request.args.get('dispatch', '').lower() in ('1', 'true', 'yes')
    try:
        result = controls.send_now(campaign_id, dispatcher=_dispatcher() if inline else None)
    except Exception as e:
        return _error(e)

    return jsonify(result), 200 if inline else 202


@campaigns_bp.route('/<int:campaign_id>/cancel', methods=['POST'])
def cancel(campaign_id):
    denied = _require_admin()
    if denied:
        return denied

    data = request.get_json(silent=True) or {}
    try:
        cancelled = controls.cancel_campaign(campaign_id, reason=data.get('reason'))
        return jsonify({
            'campaign_id': campaign_id,
            'state': CampaignState.CANCELLED,
            'cancelled_deliveries': cancelled,
        }), 200
    except Exception as e:
        return _error(e)


@campaigns_bp.route('/<int:campaign_id>/retry-failed', methods=['POST'])
def retry_failed(campaign_id):
    denied = _require_admin()
    if denied:
        return denied

    try:
        return jsonify({
            'campaign_id': campaign_id,
            'requeued': controls.retry_failed_deliveries(campaign_id),
        }), 200
    except Exception as e:
        return _error(e)


# ===================
# DELIVERIES
# ===================

@campaigns_bp.route('/<int:campaign_id>/deliveries', methods=['GET'])
def deliveries(campaign_id):
    denied = _require_admin()
    if denied:
        return denied

    state = request.args.get('state')
    if state and state not in DeliveryState.ALL:
        return jsonify({'error': f'Unknown delivery state: {state}'}), 400

    try:
        if not models.get_campaign(campaign_id):
            return jsonify({'error': 'Campaign not found'}), 404
        return jsonify({'deliveries': models.get_deliveries(campaign_id, state=state)}), 200
    except Exception as e:
        return _error(e)


@campaigns_bp.route('/dead-letters', methods=['GET'])
def dead_letters():
    """FAILED deliveries that used up their attempts"""
    denied = _require_admin()
    if denied:
        return denied

    campaign_id = request.args.get('campaign_id', type=int)
    try:
        return jsonify({'deliveries': models.list_dead_letters(campaign_id=campaign_id)}), 200
    except Exception as e:
        return _error(e)


# ===================
# SCHEDULER
# ===================

@campaigns_bp.route('/scheduler/status', methods=['GET'])
def scheduler_status():
    denied = _require_admin()
    if denied:
        return denied

    ext = _extension()
    if ext is None or ext.scheduler is None:
        return jsonify({'running': False, 'configured': False}), 200
    status = ext.scheduler.status()
    status['configured'] = True
    return jsonify(status), 200


@cron_bp.route('/campaigns', methods=['POST'])
def cron_campaigns():
    """External cron trigger: one scheduler tick"""
    secret = get_setting('CRON_SECRET')
    if not secret:
        logger.error("CRON_SECRET not configured; refusing cron request")
        return jsonify({'error': 'Cron not configured'}), 503

    supplied = request.headers.get('Authorization', '')
    if not hmac.compare_digest(supplied.encode(), f'Bearer {secret}'.encode()):
        return jsonify({'error': 'Unauthorized'}), 401

    ext = _extension()
    if ext is not None and ext.scheduler is not None:
        result = ext.scheduler.run_once()
        if result is None:
            return jsonify({'success': False, 'error': ext.scheduler.status()['last_error']}), 500
    else:
        try:
            result = run_scheduler_tick(dispatcher=_dispatcher())
        except Exception as e:
            return _error(e)

    return jsonify({'success': not result['errors'], **result}), 200

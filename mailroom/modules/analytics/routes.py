"""
Analytics Routes
================

Admin auth required on every route.

- GET  /campaigns/<id>?days=7           -- latest metrics and snapshot history
- POST /campaigns/<id>/snapshot         -- capture a snapshot now
- GET  /dashboard?days=7                -- summary, recent campaigns, top performers, trends
- GET  /top?days=7&limit=5&metric=open_rate
- GET  /trends?days=7
- GET  /logs?source=dispatcher&limit=100 -- persisted log lines
- POST /logs/cleanup                    -- drop log lines older than days_to_keep
"""

import logging
from flask import request, jsonify, session

from mailroom.core import LoggingService
from mailroom.core.errors import CampaignNotFoundError, StoreUnavailableError
from . import analytics_bp
from .aggregator import (
    capture_snapshot, get_campaign_analytics, get_dashboard, get_top_performers,
    get_trend_series,
)

logger = logging.getLogger(__name__)

MAX_DAYS = 365


def _days():
    """Parse ?days= (1..365, default 7)"""
    try:
        days = int(request.args.get('days', 7))
    except (TypeError, ValueError):
        return 7
    return min(max(days, 1), MAX_DAYS)


def _require_admin():
    if 'admin_id' not in session:
        return jsonify({'error': 'Authentication required'}), 401
    return None


@analytics_bp.route('/campaigns/<int:campaign_id>', methods=['GET'])
def campaign_analytics(campaign_id):
    denied = _require_admin()
    if denied:
        return denied

    try:
        return jsonify(get_campaign_analytics(campaign_id, _days())), 200
    except CampaignNotFoundError as e:
        return jsonify({'error': str(e)}), 404
    except StoreUnavailableError as e:
        logger.error(f"Analytics store unavailable: {e}")
        return jsonify({'error': 'Analytics temporarily unavailable'}), 503


@analytics_bp.route('/campaigns/<int:campaign_id>/snapshot', methods=['POST'])
def snapshot_campaign(campaign_id):
    denied = _require_admin()
    if denied:
        return denied

    try:
        return jsonify(capture_snapshot(campaign_id)), 201
    except CampaignNotFoundError as e:
        return jsonify({'error': str(e)}), 404
    except StoreUnavailableError as e:
        logger.error(f"Could not capture snapshot for campaign {campaign_id}: {e}")
        return jsonify({'error': 'Database error occurred'}), 503


@analytics_bp.route('/dashboard', methods=['GET'])
def dashboard():
    denied = _require_admin()
    if denied:
        return denied

    try:
        return jsonify(get_dashboard(_days())), 200
    except StoreUnavailableError as e:
        logger.error(f"Analytics store unavailable: {e}")
        return jsonify({'error': 'Analytics temporarily unavailable'}), 503


@analytics_bp.route('/top', methods=['GET'])
def top_performers():
    denied = _require_admin()
    if denied:
        return denied

    try:
        limit = min(max(int(request.args.get('limit', 5)), 1), 50)
    except (TypeError, ValueError):
        limit = 5

    try:
        return jsonify(get_top_performers(_days(), limit, request.args.get('metric', 'open_rate'))), 200
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    except StoreUnavailableError as e:
        logger.error(f"Analytics store unavailable: {e}")
        return jsonify({'error': 'Analytics temporarily unavailable'}), 503


@analytics_bp.route('/trends', methods=['GET'])
def trends():
    denied = _require_admin()
    if denied:
        return denied

    try:
        return jsonify(get_trend_series(_days())), 200
    except StoreUnavailableError as e:
        logger.error(f"Analytics store unavailable: {e}")
        return jsonify({'error': 'Analytics temporarily unavailable'}), 503


@analytics_bp.route('/logs', methods=['GET'])
def recent_logs():
    """Persisted engine log lines, optionally filtered by ?source="""
    denied = _require_admin()
    if denied:
        return denied

    try:
        limit = min(max(int(request.args.get('limit', 100)), 1), 1000)
    except (TypeError, ValueError):
        limit = 100
    logs = LoggingService.get_recent_logs(request.args.get('source'), limit)
    return jsonify({'logs': logs, 'count': len(logs)}), 200


@analytics_bp.route('/logs/cleanup', methods=['POST'])
def cleanup_logs():
    denied = _require_admin()
    if denied:
        return denied

    data = request.get_json(silent=True) or {}
    try:
        days_to_keep = max(int(data.get('days_to_keep', 30)), 1)
    except (TypeError, ValueError):
        return jsonify({'error': 'days_to_keep must be an integer'}), 400
    return jsonify({'deleted': LoggingService.cleanup_old_logs(days_to_keep)}), 200

"""
Webhook Routes
==============

- POST /api/webhooks/<provider>   -- ingest provider events
- GET  /api/webhooks/<provider>   -- health check for provider dashboards

Signature verification belongs in front of this endpoint. When
WEBHOOK_SECRET is set, requests must also carry it as ``?token=`` or an
``X-Webhook-Token`` header.

Unmatched or unknown events are acknowledged with 200 so providers do not
retry them. A store outage answers 503 so they do.
"""

import hmac
import logging
from datetime import datetime, timezone
from flask import request, jsonify

from mailroom.core import get_setting
from mailroom.core.errors import StoreUnavailableError
from . import webhooks_bp
from .ingestor import ingest_events
from .parsers import parse_payload, UnsupportedProviderError, PARSERS

logger = logging.getLogger(__name__)


def _db_log(level, message, details=None):
    """Log to framework's persistent DB logger"""
    try:
        from mailroom.core import db_log
        db_log(level, 'webhooks', message, details)
    except Exception:
        pass


def _token_ok():
    secret = get_setting('WEBHOOK_SECRET')
    if not secret:
        return True
    supplied = request.args.get('token') or request.headers.get('X-Webhook-Token') or ''
    return hmac.compare_digest(supplied.encode(), str(secret).encode())


@webhooks_bp.route('/<provider>', methods=['POST'])
def receive(provider):
    if not _token_ok():
        logger.warning(f"Rejected {provider} webhook: bad token")
        return jsonify({'error': 'Unauthorized'}), 401

    payload = request.get_json(silent=True)
    try:
        events = parse_payload(provider, payload, request.headers)
    except UnsupportedProviderError as e:
        return jsonify({'error': str(e)}), 404
    except ValueError as e:
        logger.warning(f"Malformed {provider} webhook: {e}")
        return jsonify({'error': str(e)}), 400

    try:
        summary = ingest_events(events)
    except StoreUnavailableError as e:
        logger.error(f"Store unavailable while ingesting {provider} webhook: {e}")
        _db_log('error', 'Webhook ingestion deferred: store unavailable', {'provider': provider})
        return jsonify({'error': 'Temporarily unavailable'}), 503

    return jsonify({'success': True, 'provider': provider, **summary}), 200


@webhooks_bp.route('/<provider>', methods=['GET'])
def health(provider):
    if provider not in PARSERS:
        return jsonify({'error': f"Unsupported provider: {provider}"}), 404
    return jsonify({
        'status': 'healthy',
        'provider': provider,
        'timestamp': datetime.now(timezone.utc).isoformat(),
    }), 200

"""
Subscribers Routes
==================

Provides:
- POST /              -- subscribe (creates a PENDING subscriber)
- POST /confirm       -- confirm opt-in (PENDING/UNSUBSCRIBED -> ACTIVE)
- POST /unsubscribe   -- unsubscribe
- POST /resubscribe   -- restart opt-in (SUPPRESSED/UNSUBSCRIBED -> PENDING)
- POST /preferences   -- timezone, frequency, feeds
- GET  /stats         -- counts per status (admin auth required)
"""

import logging
from flask import request, jsonify, session

from mailroom.core.errors import StoreUnavailableError
from . import subscribers_bp
from .models import (
    add_subscriber, confirm_subscriber, unsubscribe_subscriber, resubscribe,
    update_preferences, get_subscriber_by_email, get_status_counts,
    validate_email, normalize_email, SUPPRESSED,
)

logger = logging.getLogger(__name__)


def _db_log(level, message, details=None):
    """Log to framework's persistent DB logger"""
    try:
        from mailroom.core import db_log
        db_log(level, 'subscribers', message, details)
    except Exception:
        pass


def get_client_ip():
    """Get client IP address from request"""
    if request.headers.get('X-Forwarded-For'):
        return request.headers.get('X-Forwarded-For').split(',')[0].strip()
    elif request.headers.get('X-Real-IP'):
        return request.headers.get('X-Real-IP')
    else:
        return request.remote_addr


def _read_email():
    """Pull and validate the email field. Returns (email, error_response)."""
    data = request.get_json(silent=True)
    if not data or 'email' not in data:
        return None, (jsonify({'error': 'Email address is required'}), 400)
    email = normalize_email(data['email'])
    if not validate_email(email):
        return None, (jsonify({'error': 'Please enter a valid email address'}), 400)
    return email, None


def _clean_feeds(data):
    # Accept either 'feeds' (array) or 'feed' (string)
    feeds_input = data.get('feeds')
    feed = (data.get('feed') or '').strip()
    if feed and not feeds_input:
        feeds_input = [feed]
    if feeds_input is None:
        return None
    return [f.strip() for f in feeds_input if isinstance(f, str) and f.strip()]


@subscribers_bp.route('', methods=['POST'])
def subscribe():
    """Handle new subscription requests"""
    email, error = _read_email()
    if error:
        return error
    data = request.get_json(silent=True) or {}

    try:
        subscriber, created = add_subscriber(
            email,
            timezone=data.get('timezone'),
            feeds=_clean_feeds(data),
            frequency=data.get('frequency', 'weekly'),
            source=data.get('source', 'website'),
            ip_address=get_client_ip(),
            user_agent=request.headers.get('User-Agent', '')[:500],
        )
    except StoreUnavailableError as e:
        logger.error(f"Database error in subscribe: {e}")
        return jsonify({'error': 'Database error occurred'}), 503

    if not created:
        return jsonify({
            'message': 'This email address is already registered.',
            'status': subscriber['status']
        }), 200

    return jsonify({
        'message': 'Please confirm your subscription.',
        'status': subscriber['status']
    }), 201


@subscribers_bp.route('/confirm', methods=['POST'])
def confirm():
    email, error = _read_email()
    if error:
        return error

    try:
        subscriber = get_subscriber_by_email(email)
        if not subscriber:
            return jsonify({'error': 'Email address not found'}), 404
        if subscriber['status'] == SUPPRESSED:
            return jsonify({
                'error': 'This address is suppressed. Resubscribe to restart opt-in.'
            }), 409
        confirm_subscriber(email)
        return jsonify({'message': 'Subscription confirmed.', 'status': 'ACTIVE'}), 200
    except StoreUnavailableError as e:
        logger.error(f"Database error in confirm: {e}")
        return jsonify({'error': 'Database error occurred'}), 503


@subscribers_bp.route('/unsubscribe', methods=['POST'])
def unsubscribe():
    """Handle unsubscribe requests"""
    email, error = _read_email()
    if error:
        return error

    try:
        if unsubscribe_subscriber(email):
            _db_log('info', 'Unsubscribed via API', {'email': email})
            return jsonify({'message': 'Successfully unsubscribed.'}), 200
        return jsonify({'message': 'Email address not found in our subscriber list.'}), 404
    except StoreUnavailableError as e:
        logger.error(f"Database error in unsubscribe: {e}")
        _db_log('error', 'Database error in unsubscribe', {'error': str(e)})
        return jsonify({'error': 'Database error occurred'}), 503


@subscribers_bp.route('/resubscribe', methods=['POST'])
def resubscribe_route():
    email, error = _read_email()
    if error:
        return error

    try:
        if resubscribe(email):
            return jsonify({'message': 'Please confirm your subscription.', 'status': 'PENDING'}), 200
        subscriber = get_subscriber_by_email(email)
        if not subscriber:
            return jsonify({'error': 'Email address not found'}), 404
        return jsonify({'message': 'Nothing to do.', 'status': subscriber['status']}), 200
    except StoreUnavailableError as e:
        logger.error(f"Database error in resubscribe: {e}")
        return jsonify({'error': 'Database error occurred'}), 503


@subscribers_bp.route('/preferences', methods=['POST'])
def preferences():
    email, error = _read_email()
    if error:
        return error
    data = request.get_json(silent=True) or {}

    try:
        subscriber = update_preferences(
            email,
            timezone=data.get('timezone'),
            frequency=data.get('frequency'),
            feeds=_clean_feeds(data),
        )
    except StoreUnavailableError as e:
        logger.error(f"Database error in preferences: {e}")
        return jsonify({'error': 'Database error occurred'}), 503

    if not subscriber:
        return jsonify({'error': 'Email address not found'}), 404

    return jsonify({
        'message': 'Preferences updated.',
        'timezone': subscriber['timezone'],
        'frequency': subscriber['frequency'],
        'feeds': subscriber['feeds'],
    }), 200


@subscribers_bp.route('/stats', methods=['GET'])
def get_subscriber_stats():
    """Get subscriber statistics"""
    if 'admin_id' not in session:
        return jsonify({'error': 'Authentication required'}), 401

    try:
        counts = get_status_counts()
        return jsonify({'count': counts['ACTIVE'], 'by_status': counts}), 200
    except StoreUnavailableError as e:
        logger.error(f"Database error in get_subscriber_stats: {e}")
        return jsonify({'error': 'Database error occurred'}), 503

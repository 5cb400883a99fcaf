"""
Email Routes
============

Admin-only transport check. POST /admin/email/test sends a one-off message
through the configured provider and reports how it was classified.
"""

import logging
from flask import Blueprint, request, jsonify, session

from mailroom.core.errors import DeliveryError, TransientDeliveryError
from .email_service import email_service

logger = logging.getLogger(__name__)

email_bp = Blueprint('email', __name__, url_prefix='/admin/email')


@email_bp.route('/test', methods=['POST'])
def send_test_email():
    if 'admin_id' not in session:
        return jsonify({'error': 'Authentication required'}), 401

    data = request.get_json(silent=True) or {}
    recipient = (data.get('email') or '').strip().lower()
    if not recipient:
        return jsonify({'error': 'Email address is required'}), 400

    try:
        message_id = email_service.send(
            recipient,
            data.get('subject', 'Mailroom test message'),
            '<p>This is a test message from Mailroom.</p>',
            'This is a test message from Mailroom.',
        )
    except DeliveryError as e:
        kind = 'transient' if isinstance(e, TransientDeliveryError) else 'permanent'
        logger.warning(f"Test email to {recipient} failed ({kind}): {e}")
        return jsonify({'success': False, 'failure': kind, 'error': str(e)}), 502

    return jsonify({'success': True, 'provider': email_service.provider, 'message_id': message_id}), 200

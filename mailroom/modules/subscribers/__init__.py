"""
Subscribers Module
==================

Provides:
- Recipient Store (models.py): subscriber records, status lifecycle, preferences
- Public API for subscribe / confirm / unsubscribe / resubscribe / preferences
- Subscriber stats (admin)
"""

from flask import Blueprint

subscribers_bp = Blueprint('subscribers', __name__, url_prefix='/api/subscribers')

from . import routes

"""
Webhooks Module
===============

Provides:
- Bounce/Complaint Ingestor (ingestor.py)
- Provider payload parsers for Resend, SendGrid, Mailgun and Postmark (parsers.py)
- POST /api/webhooks/<provider>
"""

from flask import Blueprint

webhooks_bp = Blueprint('webhooks', __name__, url_prefix='/api/webhooks')

from . import routes

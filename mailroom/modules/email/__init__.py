"""
Email Module
============

External transport adapter (Resend, SES, SMTP) used by the dispatcher,
plus an admin test-send endpoint.
"""

from .email_service import EmailService, email_service
from .routes import email_bp

__all__ = ['email_bp', 'EmailService', 'email_service']

"""
Email Service Module
====================

External transport adapter. Sends one rendered message to one recipient via
Resend, Amazon SES, or SMTP, selected by EMAIL_PROVIDER.

``send()`` returns the provider's message id on success and otherwise raises:
    TransientDeliveryError  timeouts, connection errors, throttling, provider 5xx, SMTP 4xx
    PermanentDeliveryError  invalid address, other 4xx, SMTP 5xx refusals, missing config
"""

import re
import logging
import smtplib
import socket
from typing import Optional
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from email.utils import make_msgid

import requests

from mailroom.core.errors import TransientDeliveryError, PermanentDeliveryError

# Rejects consecutive dots, leading/trailing dots in local part
_VALID_EMAIL = re.compile(r'^[a-zA-Z0-9_%+-]+(\.[a-zA-Z0-9_%+-]+)*@[a-zA-Z0-9-]+(\.[a-zA-Z0-9-]+)*\.[a-zA-Z]{2,}$')

# SES error codes worth retrying
_SES_TRANSIENT_CODES = {'Throttling', 'ThrottlingException', 'ServiceUnavailable', 'InternalFailure', 'RequestTimeout'}

logger = logging.getLogger(__name__)

# Try to import resend - it's optional
try:
    import resend
    from resend.exceptions import ResendError
    RESEND_AVAILABLE = True
except ImportError:
    RESEND_AVAILABLE = False
    logger.info("resend package not installed.")

# Try to import boto3 for SES - it's optional
try:
    import boto3
    from botocore.exceptions import ClientError, BotoCoreError
    BOTO3_AVAILABLE = True
except ImportError:
    BOTO3_AVAILABLE = False
    logger.info("boto3 package not installed.")


def _resend_status(error):
    """HTTP status carried by a ResendError, 0 when absent"""
    try:
        return int(getattr(error, 'code', 0) or 0)
    except (TypeError, ValueError):
        return 0


class EmailService:
    """
    Configurable single-recipient transport.

    Configuration (read from Flask app.config in init_app):
        EMAIL_PROVIDER: 'resend' (default), 'ses', or 'smtp'
        EMAIL_ADDRESS: sender address
        EMAIL_SEND_TIMEOUT: per-call timeout in seconds
        RESEND_API_KEY: required for 'resend'
        AWS_REGION: region for 'ses'
        EMAIL_HOST / EMAIL_PORT / EMAIL_PASSWORD: for 'smtp'
    """

    def __init__(self, app=None):
        self.provider = 'resend'
        self.sender_email = None
        self.timeout = 10
        self.api_key = None
        self.ses_client = None
        self.smtp_host = None
        self.smtp_port = 587
        self.smtp_password = None

        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        """Initialize email service with Flask app configuration"""
        self.provider = (app.config.get('EMAIL_PROVIDER') or 'resend').lower()
        self.sender_email = app.config.get('EMAIL_ADDRESS')
        self.timeout = int(app.config.get('EMAIL_SEND_TIMEOUT') or 10)
        self.api_key = None
        self.ses_client = None
        self.smtp_password = None
        logger.info(f"Initializing email transport (provider: {self.provider}, sender: {self.sender_email})")

        if self.provider == 'ses':
            self._init_ses(app)
        elif self.provider == 'smtp':
            self._init_smtp(app)
        else:
            self._init_resend(app)

    def _init_resend(self, app):
        self.api_key = app.config.get('RESEND_API_KEY')
        if not self.api_key:
            logger.warning("RESEND_API_KEY not configured - email sending disabled")
            return

        if not RESEND_AVAILABLE:
            logger.error("resend package not installed")
            return

        resend.api_key = self.api_key
        if hasattr(resend, 'RequestsClient'):
            resend.default_http_client = resend.RequestsClient(timeout=self.timeout)
        logger.info("Resend API client initialized successfully")

    def _init_ses(self, app):
        if not BOTO3_AVAILABLE:
            logger.error("boto3 package not installed - SES email sending disabled")
            return

        aws_region = app.config.get('AWS_REGION', 'eu-west-1')
        try:
            self.ses_client = boto3.client('ses', region_name=aws_region)
            logger.info(f"SES client initialized (region: {aws_region})")
        except BotoCoreError as e:
            logger.error(f"Failed to initialize SES client: {e}")

    def _init_smtp(self, app):
        self.smtp_host = app.config.get('EMAIL_HOST', 'smtp.gmail.com')
        self.smtp_port = int(app.config.get('EMAIL_PORT') or 587)
        self.smtp_password = app.config.get('EMAIL_PASSWORD')
        if not self.smtp_password:
            logger.warning("EMAIL_PASSWORD not configured - SMTP email sending disabled")
            return
        logger.info(f"SMTP configured: {self.smtp_host}:{self.smtp_port}")

    def is_configured(self):
        if not self.sender_email:
            return False
        if self.provider == 'ses':
            return self.ses_client is not None
        if self.provider == 'smtp':
            return bool(self.smtp_password)
        return RESEND_AVAILABLE and bool(self.api_key)

    def send(self, recipient: str, subject: str, html_body: str,
             text_body: Optional[str] = None, campaign_id=None) -> str:
        """
        Send one message.

        Returns:
            str: provider message id
        """
        if not _VALID_EMAIL.match(recipient or ''):
            raise PermanentDeliveryError(f"Invalid email address: {recipient}", recipient=recipient)
        if not self.is_configured():
            raise PermanentDeliveryError(f"Email provider '{self.provider}' is not configured", recipient=recipient)

        if self.provider == 'ses':
            return self._send_via_ses(recipient, subject, html_body, text_body, campaign_id)
        if self.provider == 'smtp':
            return self._send_via_smtp(recipient, subject, html_body, text_body, campaign_id)
        return self._send_via_resend(recipient, subject, html_body, text_body, campaign_id)

    def _send_via_resend(self, recipient, subject, html_body, text_body=None, campaign_id=None):
        """Send a single email via the Resend API"""
        email_params = {
            'from': self.sender_email,
            'to': [recipient],
            'subject': subject,
            'html': html_body,
        }
        if text_body:
            email_params['text'] = text_body
        if campaign_id is not None:
            email_params['tags'] = [{'name': 'campaign_id', 'value': str(campaign_id)}]

        try:
            r = resend.Emails.send(email_params)
        except ResendError as e:
            status = _resend_status(e)
            if status == 429 or status >= 500:
                raise TransientDeliveryError(f"Resend returned {status}: {e}", recipient=recipient) from e
            raise PermanentDeliveryError(f"Resend rejected message ({status}): {e}", recipient=recipient) from e
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientDeliveryError(f"Resend unreachable: {e}", recipient=recipient) from e

        message_id = (r or {}).get('id')
        if not message_id:
            raise PermanentDeliveryError(f"Resend returned no message id: {r}", recipient=recipient)
        logger.debug(f"Resend accepted message for {recipient}, ID: {message_id}")
        return message_id

    def _send_via_ses(self, recipient, subject, html_body, text_body=None, campaign_id=None):
        """Send a single email via Amazon SES"""
        body = {'Html': {'Charset': 'UTF-8', 'Data': html_body}}
        if text_body:
            body['Text'] = {'Charset': 'UTF-8', 'Data': text_body}

        kwargs = {
            'Source': self.sender_email,
            'Destination': {'ToAddresses': [recipient]},
            'Message': {'Subject': {'Charset': 'UTF-8', 'Data': subject}, 'Body': body},
        }
        if campaign_id is not None:
            kwargs['Tags'] = [{'Name': 'campaign_id', 'Value': str(campaign_id)}]

        try:
            response = self.ses_client.send_email(**kwargs)
        except ClientError as e:
            code = e.response.get('Error', {}).get('Code', '')
            message = e.response.get('Error', {}).get('Message', str(e))
            if code in _SES_TRANSIENT_CODES:
                raise TransientDeliveryError(f"SES {code}: {message}", recipient=recipient) from e
            raise PermanentDeliveryError(f"SES {code}: {message}", recipient=recipient) from e
        except BotoCoreError as e:
            raise TransientDeliveryError(f"SES unreachable: {e}", recipient=recipient) from e

        return response.get('MessageId', '')

    def _send_via_smtp(self, recipient, subject, html_body, text_body=None, campaign_id=None):
        """Send a single email via SMTP (e.g. Gmail)"""
        msg = MIMEMultipart('alternative')
        msg['From'] = self.sender_email
        msg['To'] = recipient
        msg['Subject'] = subject
        msg['Message-ID'] = make_msgid()
        if campaign_id is not None:
            msg['X-Campaign-Id'] = str(campaign_id)

        if text_body:
            msg.attach(MIMEText(text_body, 'plain', 'utf-8'))
        msg.attach(MIMEText(html_body, 'html', 'utf-8'))

        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls()
                server.login(self.sender_email, self.smtp_password)
                server.send_message(msg)
        except smtplib.SMTPRecipientsRefused as e:
            raise PermanentDeliveryError(f"SMTP refused recipient: {e.recipients}", recipient=recipient) from e
        except smtplib.SMTPResponseException as e:
            if 400 <= e.smtp_code < 500:
                raise TransientDeliveryError(f"SMTP {e.smtp_code}: {e.smtp_error}", recipient=recipient) from e
            raise PermanentDeliveryError(f"SMTP {e.smtp_code}: {e.smtp_error}", recipient=recipient) from e
        except (smtplib.SMTPServerDisconnected, socket.timeout, OSError) as e:
            raise TransientDeliveryError(f"SMTP connection failed: {e}", recipient=recipient) from e

        logger.debug(f"SMTP email sent to {recipient}")
        return msg['Message-ID']


# Global instance, configured by Mailroom(app)
email_service = EmailService()

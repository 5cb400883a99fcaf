"""
Critical Integration Tests for Mailroom
=======================================

Focused tests covering the integration points most likely to break.
Run with: pytest tests/test_critical.py -v

NOTE: pytest is listed under extras_require["dev"] in setup.py.
Install with: pip install -e ".[dev]"
"""

import importlib
import os
import sqlite3
from unittest.mock import patch, MagicMock

import pytest
from flask import Flask

from mailroom import Mailroom, MODULES
from mailroom.core.errors import PermanentDeliveryError, TransientDeliveryError

from conftest import make_app


# ---------------------------------------------------------------------------
# 1. Extension initialisation
# ---------------------------------------------------------------------------

def test_framework_initialisation(tmp_db_dir):
    """Mailroom(app) boots without errors and stores itself on the app."""
    app = make_app(tmp_db_dir)
    ext = app.extensions['mailroom']
    assert isinstance(ext, Mailroom)
    assert ext.get_registered_modules() == list(MODULES)
    assert ext.scheduler is not None
    assert not ext.scheduler.running


def test_init_app_factory_pattern(tmp_db_dir):
    mailroom = Mailroom()
    app = Flask(__name__)
    app.config.update(TESTING=True, SECRET_KEY='x', DB_DIR=tmp_db_dir)
    mailroom.init_app(app)
    assert app.extensions['mailroom'] is mailroom
    assert app.config['USER_DB'] == os.path.join(tmp_db_dir, 'users.db')
    assert app.config['ANALYTICS_DB'] == os.path.join(tmp_db_dir, 'analytics_log.db')


def test_features_switch_modules_off(tmp_db_dir):
    app = Flask(__name__)
    app.config.update(TESTING=True, SECRET_KEY='x', DB_DIR=tmp_db_dir)
    Mailroom(app, {'features': {'analytics': False, 'email': False}, 'DISPATCH_BATCH_SIZE': 5})

    ext = app.extensions['mailroom']
    assert 'analytics' not in ext.get_registered_modules()
    assert 'analytics' not in app.blueprints
    assert 'campaigns' in app.blueprints
    assert 'campaigns_cron' in app.blueprints
    assert app.config['DISPATCH_BATCH_SIZE'] == 5


# ---------------------------------------------------------------------------
# 2. Database creation
# ---------------------------------------------------------------------------

def test_database_tables_created(app):
    with sqlite3.connect(app.config['USER_DB']) as conn:
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    assert {'subscribers', 'campaigns', 'campaign_deliveries', 'webhook_events'} <= tables

    with sqlite3.connect(app.config['ANALYTICS_DB']) as conn:
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    assert 'campaign_snapshots' in tables


def test_db_dir_is_created(tmp_db_dir):
    nested = os.path.join(tmp_db_dir, 'a', 'b')
    app = Flask(__name__)
    app.config.update(TESTING=True, SECRET_KEY='x', DB_DIR=nested)
    Mailroom(app)
    assert os.path.isfile(os.path.join(nested, 'users.db'))


def test_shutdown_stops_scheduler(tmp_db_dir):
    app = make_app(tmp_db_dir)
    ext = app.extensions['mailroom']
    ext.scheduler.start()
    assert ext.scheduler.running
    ext.shutdown()
    assert not ext.scheduler.running


def test_init_is_repeatable(tmp_db_dir):
    make_app(tmp_db_dir)
    make_app(tmp_db_dir)


# ---------------------------------------------------------------------------
# 3. Settings resolution
# ---------------------------------------------------------------------------

def test_settings_prefer_app_config(app):
    from mailroom.core import get_setting, get_int_setting, get_bool_setting

    app.config['DISPATCH_CONCURRENCY'] = '4'
    app.config['ENABLE_QUIET_HOURS'] = 'yes'
    assert get_int_setting('DISPATCH_CONCURRENCY', 10) == 4
    assert get_bool_setting('ENABLE_QUIET_HOURS') is True
    assert get_setting('NOT_A_SETTING', 'fallback') == 'fallback'


# ---------------------------------------------------------------------------
# 4. Email transport
# ---------------------------------------------------------------------------

class FakeResendError(Exception):
    def __init__(self, code, message='nope'):
        super().__init__(message)
        self.code = code


@pytest.fixture
def fake_resend():
    """The email_service module with the resend SDK replaced by a mock."""
    module = importlib.import_module("mailroom.modules.email.email_service")
    mock_resend = MagicMock()
    with patch.object(module, 'RESEND_AVAILABLE', True), \
            patch.object(module, 'resend', mock_resend, create=True), \
            patch.object(module, 'ResendError', FakeResendError, create=True):
        yield mock_resend


def test_email_service_init_resend(tmp_db_dir, fake_resend):
    from mailroom.modules.email.email_service import email_service

    make_app(tmp_db_dir, RESEND_API_KEY='re_test_key')
    assert email_service.provider == 'resend'
    assert email_service.is_configured()
    assert fake_resend.api_key == 're_test_key'


def test_email_service_unconfigured_is_permanent(tmp_db_dir):
    from mailroom.modules.email.email_service import email_service

    make_app(tmp_db_dir)
    assert not email_service.is_configured()
    with pytest.raises(PermanentDeliveryError):
        email_service.send('reader@example.com', 'Hi', '<p>Hi</p>')
    with pytest.raises(PermanentDeliveryError):
        email_service.send('not-an-address', 'Hi', '<p>Hi</p>')


def test_resend_missing_package_is_unconfigured(tmp_db_dir):
    module = importlib.import_module("mailroom.modules.email.email_service")

    with patch.object(module, 'RESEND_AVAILABLE', False):
        make_app(tmp_db_dir, RESEND_API_KEY='re_test_key')
        assert not module.email_service.is_configured()


@pytest.mark.parametrize("code,error", [
    (429, TransientDeliveryError),
    (503, TransientDeliveryError),
    ('500', TransientDeliveryError),
    (422, PermanentDeliveryError),
    (None, PermanentDeliveryError),
])
def test_resend_error_classification(tmp_db_dir, fake_resend, code, error):
    from mailroom.modules.email.email_service import email_service

    make_app(tmp_db_dir, RESEND_API_KEY='re_test_key')
    fake_resend.Emails.send.side_effect = FakeResendError(code)
    with pytest.raises(error):
        email_service.send('reader@example.com', 'Hi', '<p>Hi</p>', campaign_id=3)


def test_resend_connection_error_is_transient(tmp_db_dir, fake_resend):
    import requests
    from mailroom.modules.email.email_service import email_service

    make_app(tmp_db_dir, RESEND_API_KEY='re_test_key')
    fake_resend.Emails.send.side_effect = requests.ConnectionError('reset')
    with pytest.raises(TransientDeliveryError):
        email_service.send('reader@example.com', 'Hi', '<p>Hi</p>')


def test_resend_success_returns_message_id(tmp_db_dir, fake_resend):
    from mailroom.modules.email.email_service import email_service

    make_app(tmp_db_dir, RESEND_API_KEY='re_test_key')
    fake_resend.Emails.send.return_value = {'id': 'email_123'}
    assert email_service.send('reader@example.com', 'Hi', '<p>Hi</p>', 'Hi', campaign_id=3) == 'email_123'

    sent = fake_resend.Emails.send.call_args.args[0]
    assert sent['to'] == ['reader@example.com']
    assert sent['text'] == 'Hi'
    assert sent['tags'] == [{'name': 'campaign_id', 'value': '3'}]


def test_email_service_init_ses(tmp_db_dir):
    module = importlib.import_module("mailroom.modules.email.email_service")

    mock_boto3 = MagicMock()
    with patch.object(module, 'BOTO3_AVAILABLE', True), \
            patch.object(module, 'boto3', mock_boto3, create=True):
        make_app(tmp_db_dir, EMAIL_PROVIDER='ses', AWS_REGION='us-east-1')
    mock_boto3.client.assert_called_once_with('ses', region_name='us-east-1')
    assert module.email_service.provider == 'ses'
    assert module.email_service.is_configured()


# ---------------------------------------------------------------------------
# 5. Persistent logging
# ---------------------------------------------------------------------------

def test_db_log_writes_app_logs(app):
    from mailroom.core import db_log, LoggingService

    db_log('info', 'tests', 'hello from the suite', {'k': 'v'})
    logs = LoggingService.get_recent_logs(limit=10, source='tests')
    assert logs[0]['message'] == 'hello from the suite'

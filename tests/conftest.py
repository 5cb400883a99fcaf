"""
Shared fixtures for the Mailroom test suite.

Every test gets its own database directory and a fully initialised app with
an application context pushed, so module functions resolve USER_DB and
ANALYTICS_DB to the temporary files.
"""

import os
import shutil
import tempfile
import threading
import time

import pytest
from flask import Flask

from mailroom import Mailroom


@pytest.fixture
def tmp_db_dir():
    """Create a temporary directory for test databases, cleaned up after."""
    d = tempfile.mkdtemp(prefix="mailroom-test-")
    yield d
    shutil.rmtree(d, ignore_errors=True)


def make_app(db_dir, **overrides):
    app = Flask(__name__)
    app.config["TESTING"] = True
    app.config["SECRET_KEY"] = "test-secret"
    app.config["DB_DIR"] = db_dir
    app.config["USER_DB"] = os.path.join(db_dir, "users.db")
    app.config["ANALYTICS_DB"] = os.path.join(db_dir, "analytics.db")
    app.config["EMAIL_PROVIDER"] = "resend"
    app.config["EMAIL_ADDRESS"] = "news@example.com"
    app.config["RESEND_API_KEY"] = None
    app.config["ENABLE_QUIET_HOURS"] = False
    app.config["DEGRADED_MODE"] = False
    app.config["DIGEST_ENABLED"] = False
    app.config["CRON_SECRET"] = None
    app.config["WEBHOOK_SECRET"] = None
    app.config.update(overrides)
    Mailroom(app)
    return app


@pytest.fixture
def app(tmp_db_dir):
    """Initialised Flask app with an application context pushed."""
    app = make_app(tmp_db_dir)
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_client(app):
    client = app.test_client()
    with client.session_transaction() as sess:
        sess["admin_id"] = 1
    return client


class FakeTransport:
    """
    In-process transport. Records every call; ``failures`` maps a recipient
    to a list of exceptions raised on successive calls before it succeeds.
    """

    def __init__(self, delay=0, on_send=None):
        self.delay = delay
        self.on_send = on_send
        self.failures = {}
        self.calls = []
        self.sent = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def fail(self, recipient, *errors):
        self.failures.setdefault(recipient, []).extend(errors)

    def send(self, recipient, subject, html_body, text_body=None, campaign_id=None):
        with self._lock:
            self.calls.append(recipient)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            pending = self.failures.get(recipient)
            error = pending.pop(0) if pending else None
        try:
            if self.on_send:
                self.on_send(recipient)
            if self.delay:
                time.sleep(self.delay)
            if error is not None:
                raise error
            with self._lock:
                self.sent.append({
                    'recipient': recipient,
                    'subject': subject,
                    'html': html_body,
                    'text': text_body,
                    'campaign_id': campaign_id,
                })
                return f"msg-{len(self.sent)}"
        finally:
            with self._lock:
                self.in_flight -= 1


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def make_subscribers(app):
    """Create ACTIVE subscribers: make_subscribers(3) or make_subscribers(['a@x.com'], timezone=...)"""
    from mailroom.modules.subscribers.models import add_subscriber, confirm_subscriber

    def factory(emails, timezone=None, feeds=None):
        if isinstance(emails, int):
            emails = [f"reader{i}@example.com" for i in range(emails)]
        created = []
        for email in emails:
            subscriber, _ = add_subscriber(email, timezone=timezone, feeds=feeds)
            confirm_subscriber(email)
            created.append(subscriber)
        return created

    return factory


@pytest.fixture
def make_campaign(app):
    from mailroom.modules.campaigns.models import create_campaign

    def factory(name="Spring Issue", **fields):
        data = {
            'name': name,
            'subject': fields.pop('subject', f"{name} for {{{{EMAIL}}}}"),
            'blocks': fields.pop('blocks', [
                {'type': 'heading', 'text': name},
                {'type': 'paragraph', 'content': 'Hello **reader**.'},
                {'type': 'button', 'text': 'Read more', 'url': 'https://example.com/post'},
            ]),
        }
        data.update(fields)
        return create_campaign(data)

    return factory

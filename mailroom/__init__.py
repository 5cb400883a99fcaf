"""
Mailroom - Email Campaign Delivery Engine
=========================================

A Flask extension that schedules newsletter campaigns, fans them out to
subscribers with quiet hours and retries, ingests provider bounce and
complaint webhooks, and keeps point-in-time delivery analytics.

Usage:
    from flask import Flask
    from mailroom import Mailroom

    app = Flask(__name__)
    mailroom = Mailroom(app)

    @mailroom.content_provider
    def top_articles(since, until, limit):
        return [{'title': ..., 'summary': ..., 'link': ..., 'published_at': ...}]
"""

import os
import atexit
import logging

__version__ = '0.1.0'
__author__ = 'Laurence Stephan'

logger = logging.getLogger(__name__)

# Blueprint modules in registration order
MODULES = ('subscribers', 'email', 'campaigns', 'webhooks', 'analytics')


class Mailroom:
    """
    Flask extension.

    Args:
        app: Flask application (or call init_app later)
        config: optional dict. ``features`` maps module name -> bool to
            switch blueprints off; any other UPPERCASE key is copied into
            app.config before defaults are applied.
    """

    def __init__(self, app=None, config=None):
        self._config = config or {}
        self._registered = []
        self.app = None
        self.dispatcher = None
        self.scheduler = None
        self._content_provider = None
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        from mailroom.core import Config
        from mailroom.modules.campaigns.dispatcher import Dispatcher
        from mailroom.modules.campaigns.scheduler import SchedulerWorker
        from mailroom.modules.email.email_service import email_service

        self.app = app
        for key, value in self._config.items():
            if key.isupper():
                app.config[key] = value

        # Host app settings win; DB paths follow DB_DIR unless set explicitly
        db_dir = app.config.setdefault('DB_DIR', Config.DB_DIR)
        app.config.setdefault('USER_DB', os.getenv('USER_DB') or os.path.join(db_dir, 'users.db'))
        app.config.setdefault(
            'ANALYTICS_DB', os.getenv('ANALYTICS_DB') or os.path.join(db_dir, 'analytics_log.db')
        )
        for key in dir(Config):
            if key.isupper():
                app.config.setdefault(key, getattr(Config, key))

        self._setup_database_dir(app)
        with app.app_context():
            self._init_databases()

        email_service.init_app(app)
        self._register_blueprints(app)

        self.dispatcher = Dispatcher()
        self.scheduler = SchedulerWorker(
            app, dispatcher=self.dispatcher, content_provider=self._provide_content
        )
        app.extensions['mailroom'] = self

        if app.config.get('SCHEDULER_ENABLED') and not app.config.get('TESTING'):
            self.scheduler.start()
            atexit.register(self.shutdown)

        logger.info(f"Mailroom initialised with modules: {', '.join(self._registered)}")

    def _setup_database_dir(self, app):
        os.makedirs(app.config['DB_DIR'], exist_ok=True)
        for key in ('USER_DB', 'ANALYTICS_DB'):
            directory = os.path.dirname(app.config[key])
            if directory:
                os.makedirs(directory, exist_ok=True)

    def _init_databases(self):
        from mailroom.modules.subscribers.models import init_subscribers_db
        from mailroom.modules.campaigns.models import init_campaigns_db
        from mailroom.modules.webhooks.ingestor import init_webhooks_db
        from mailroom.modules.analytics.aggregator import init_analytics_db

        init_subscribers_db()
        init_campaigns_db()
        init_webhooks_db()
        init_analytics_db()

    def _register_blueprints(self, app):
        features = self._config.get('features', {})
        for name in MODULES:
            if not features.get(name, True):
                continue
            if name == 'subscribers':
                from mailroom.modules.subscribers import subscribers_bp
                app.register_blueprint(subscribers_bp)
            elif name == 'email':
                from mailroom.modules.email import email_bp
                app.register_blueprint(email_bp)
            elif name == 'campaigns':
                from mailroom.modules.campaigns import campaigns_bp, cron_bp
                app.register_blueprint(campaigns_bp)
                app.register_blueprint(cron_bp)
            elif name == 'webhooks':
                from mailroom.modules.webhooks import webhooks_bp
                app.register_blueprint(webhooks_bp)
            elif name == 'analytics':
                from mailroom.modules.analytics import analytics_bp
                app.register_blueprint(analytics_bp)
            self._registered.append(name)

    def get_registered_modules(self):
        return list(self._registered)

    def content_provider(self, func):
        """Decorator registering the weekly digest content source"""
        self._content_provider = func
        return func

    def _provide_content(self, since, until, limit):
        provider = self._content_provider or self.app.config.get('DIGEST_CONTENT_PROVIDER')
        if not callable(provider):
            return []
        return provider(since=since, until=until, limit=limit)

    def shutdown(self):
        if self.scheduler is not None:
            self.scheduler.stop()


__all__ = ['Mailroom', '__version__']

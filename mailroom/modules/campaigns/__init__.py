"""
Campaigns Module
================

Provides:
- Campaign Store with per-recipient deliveries (models.py)
- Campaign state machine: schedule / send now / cancel / edit (controls.py)
- Dispatcher with quiet hours, batching, bounded concurrency and retries
- Scheduler tick, background worker and the weekly digest rule
- Admin API under /admin/campaigns, cron trigger at /api/cron/campaigns
"""

from flask import Blueprint

campaigns_bp = Blueprint('campaigns', __name__, url_prefix='/admin/campaigns')

cron_bp = Blueprint('campaigns_cron', __name__, url_prefix='/api/cron')

from . import routes

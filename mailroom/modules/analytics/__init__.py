"""
Analytics Module
================

Provides:
- Analytics Aggregator (aggregator.py): immutable per-campaign snapshots,
  dashboard rollups, synthetic data in degraded mode
- Admin API under /admin/analytics
"""

from flask import Blueprint

analytics_bp = Blueprint('analytics', __name__, url_prefix='/admin/analytics')

from . import routes

"""
Mailroom Modules
================

Flask blueprint modules of the delivery engine.
"""

__all__ = ['subscribers', 'email', 'campaigns', 'webhooks', 'analytics']

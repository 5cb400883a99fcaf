"""
Mailroom Core
=============

Core utilities and shared functionality for Mailroom modules.
"""

from .config import Config, get_setting, get_int_setting, get_bool_setting
from .database import Database, utcnow, as_utc, to_db_time, from_db_time
from .logging_service import LoggingService, db_log

__all__ = [
    'Config', 'get_setting', 'get_int_setting', 'get_bool_setting',
    'Database', 'utcnow', 'as_utc', 'to_db_time', 'from_db_time',
    'LoggingService', 'db_log',
]

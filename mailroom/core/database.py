import os
import sqlite3
import logging
from contextlib import contextmanager
from datetime import datetime, timezone

from .errors import StoreUnavailableError

logger = logging.getLogger(__name__)

# Seconds sqlite waits on a locked database before giving up
BUSY_TIMEOUT = 30


def utcnow():
    """Current UTC time as an aware datetime"""
    return datetime.now(timezone.utc)


def to_db_time(value):
    """Serialise a datetime for storage (UTC ISO-8601, fixed microsecond width so strings sort)"""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


def from_db_time(value):
    """Parse a stored timestamp back into an aware UTC datetime"""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            # sqlite CURRENT_TIMESTAMP format
            parsed = datetime.strptime(value, '%Y-%m-%d %H:%M:%S')
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def as_utc(value):
    """Aware UTC datetime from a datetime (naive taken as UTC) or stored string"""
    if value is None:
        return None
    if isinstance(value, str):
        return from_db_time(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Database:

    @staticmethod
    @contextmanager
    def connect(path, row_factory=True):
        """
        Open a connection, yield it, commit on success and always close.

        sqlite operational failures (missing directory, locked or corrupt file)
        surface as StoreUnavailableError so callers can abort a cycle and retry.
        IntegrityError is left alone; conditional inserts rely on it.
        """
        conn = None
        try:
            conn = sqlite3.connect(path, timeout=BUSY_TIMEOUT)
            if row_factory:
                conn.row_factory = sqlite3.Row
            yield conn
            conn.commit()
        except sqlite3.IntegrityError:
            if conn is not None:
                conn.rollback()
            raise
        except (sqlite3.OperationalError, sqlite3.DatabaseError) as e:
            if conn is not None:
                try:
                    conn.rollback()
                except sqlite3.Error:
                    pass
            logger.error(f"Store unavailable ({path}): {e}")
            raise StoreUnavailableError(str(e)) from e
        except Exception:
            if conn is not None:
                conn.rollback()
            raise
        finally:
            if conn is not None:
                conn.close()

    @staticmethod
    def ensure_dir(path):
        """Create the parent directory of a database file"""
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

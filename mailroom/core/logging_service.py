"""
Centralized logging service for the Mailroom delivery engine.
Provides structured logging with database storage and easy integration.
"""

import json
from datetime import datetime, timedelta
from flask import request, has_request_context
from .database import Database
from .config import get_setting


def _get_logs_db():
    """Logs live in ANALYTICS_DB beside the snapshots"""
    return get_setting('ANALYTICS_DB')


class LoggingService:
    """Centralized logging service for application-wide logging"""

    @staticmethod
    def _ensure_logs_table(conn):
        """Ensure the app_logs table exists"""
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS app_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                level TEXT NOT NULL,
                source TEXT NOT NULL,
                message TEXT NOT NULL,
                details TEXT,
                ip_address TEXT,
                user_agent TEXT,
                request_path TEXT,
                user_id TEXT
            )
        """)

        # Create index for better performance
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_logs_timestamp
            ON app_logs(timestamp DESC)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_logs_source
            ON app_logs(source)
        """)

    @staticmethod
    def _get_request_context():
        """Extract request context information"""
        if not has_request_context():
            return None, None, None

        try:
            ip_address = request.headers.get('X-Forwarded-For', request.remote_addr)
            if ip_address and ',' in ip_address:
                ip_address = ip_address.split(',')[0].strip()

            user_agent = request.headers.get('User-Agent', '')
            request_path = request.path

            return ip_address, user_agent, request_path
        except Exception:
            return None, None, None

    @staticmethod
    def log(level, source, message, details=None, user_id=None):
        """
        Log a message to the database

        Args:
            level (str): Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            source (str): Source component (campaigns, dispatcher, webhooks, etc.)
            message (str): Main log message
            details (str/dict): Additional details (will be JSON-encoded if dict)
            user_id (str): Optional user identifier
        """
        try:
            ip_address, user_agent, request_path = LoggingService._get_request_context()

            if isinstance(details, dict):
                details = json.dumps(details, indent=2, default=str)

            timestamp = datetime.now().isoformat()

            with Database.connect(_get_logs_db(), row_factory=False) as conn:
                LoggingService._ensure_logs_table(conn)
                conn.execute("""
                    INSERT INTO app_logs
                    (timestamp, level, source, message, details, ip_address, user_agent, request_path, user_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    timestamp, level.upper(), source, message, details,
                    ip_address, user_agent, request_path, user_id
                ))

        except Exception as e:
            # Fallback to console logging if database fails
            print(f"[{datetime.now().isoformat()}] [{level.upper()}] [{source}] {message}")
            if details:
                print(f"Details: {details}")
            print(f"Logging service error: {e}")

    @staticmethod
    def info(source, message, details=None, user_id=None):
        LoggingService.log('INFO', source, message, details, user_id)

    @staticmethod
    def error(source, message, details=None, user_id=None):
        LoggingService.log('ERROR', source, message, details, user_id)

    @staticmethod
    def get_recent_logs(source=None, limit=100):
        """Most recent log rows, newest first"""
        try:
            with Database.connect(_get_logs_db()) as conn:
                LoggingService._ensure_logs_table(conn)
                if source:
                    cursor = conn.execute(
                        "SELECT * FROM app_logs WHERE source = ? ORDER BY id DESC LIMIT ?",
                        (source, limit)
                    )
                else:
                    cursor = conn.execute("SELECT * FROM app_logs ORDER BY id DESC LIMIT ?", (limit,))
                return [dict(row) for row in cursor.fetchall()]
        except Exception as e:
            print(f"Failed to read logs: {e}")
            return []

    @staticmethod
    def cleanup_old_logs(days_to_keep=30):
        """Clean up old log entries"""
        try:
            cutoff_iso = (datetime.now() - timedelta(days=days_to_keep)).isoformat()

            with Database.connect(_get_logs_db()) as conn:
                LoggingService._ensure_logs_table(conn)
                cursor = conn.execute("DELETE FROM app_logs WHERE timestamp < ?", (cutoff_iso,))
                deleted_count = cursor.rowcount

            LoggingService.info('system', f"Cleaned up {deleted_count} old log entries")
            return deleted_count

        except Exception as e:
            LoggingService.error('system', f"Failed to cleanup old logs: {e}")
            return 0


def db_log(level, source, message, details=None):
    """Persist a log line. Never raises; falls back to stdout."""
    LoggingService.log(level, source, message, details)


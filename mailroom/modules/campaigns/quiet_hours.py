"""
Quiet Hours
===========

Pure evaluation of do-not-disturb windows. No database access, no side
effects beyond a log line when a timezone has to be replaced by the default.

The window is [start_hour, end_hour) in the recipient's local time and may
wrap midnight (start_hour > end_hour, e.g. 22 -> 8).
"""

import logging
from collections import namedtuple
from datetime import datetime, timedelta, timezone as dt_timezone

import pytz

from mailroom.core import get_setting, get_int_setting, get_bool_setting

logger = logging.getLogger(__name__)

QuietHoursResult = namedtuple('QuietHoursResult', ['is_quiet', 'next_send_at', 'timezone'])


def is_valid_timezone(name):
    if not name or not isinstance(name, str):
        return False
    try:
        pytz.timezone(name)
        return True
    except pytz.UnknownTimeZoneError:
        return False


def resolve_timezone(name, default='UTC'):
    """Return a pytz timezone for `name`, falling back to `default` (then UTC)."""
    if name:
        try:
            return pytz.timezone(name)
        except pytz.UnknownTimeZoneError:
            logger.warning(f"Invalid timezone '{name}', falling back to {default}")
    try:
        return pytz.timezone(default or 'UTC')
    except pytz.UnknownTimeZoneError:
        logger.error(f"Invalid default timezone '{default}', using UTC")
        return pytz.utc


def is_quiet_hour(local_hour, start_hour, end_hour):
    if start_hour > end_hour:
        # Spans midnight
        return local_hour >= start_hour or local_hour < end_hour
    return start_hour <= local_hour < end_hour


def next_send_time(local_now, tz, start_hour, end_hour):
    """First instant at or after `local_now` where the window has closed, in UTC."""
    target_date = local_now.date()
    if start_hour > end_hour and local_now.hour >= start_hour:
        target_date += timedelta(days=1)

    naive = datetime(target_date.year, target_date.month, target_date.day, end_hour)
    local_end = tz.normalize(tz.localize(naive))
    return local_end.astimezone(dt_timezone.utc)


def evaluate_quiet_hours(now, tz_name=None, start_hour=22, end_hour=8,
                         enabled=True, default_timezone='UTC'):
    """
    Decide whether `now` falls inside the quiet window for a recipient.

    Args:
        now: aware datetime (naive values are taken as UTC)
        tz_name: recipient's IANA timezone; None or invalid uses default_timezone
        start_hour, end_hour: window bounds, 0-23
        enabled: global switch; False always returns not-quiet

    Returns:
        QuietHoursResult(is_quiet, next_send_at (UTC, None when not quiet), timezone name)
    """
    tz = resolve_timezone(tz_name, default_timezone)
    if not enabled:
        return QuietHoursResult(False, None, tz.zone)

    if now.tzinfo is None:
        now = now.replace(tzinfo=dt_timezone.utc)
    local_now = now.astimezone(tz)

    if not is_quiet_hour(local_now.hour, start_hour, end_hour):
        return QuietHoursResult(False, None, tz.zone)

    return QuietHoursResult(True, next_send_time(local_now, tz, start_hour, end_hour), tz.zone)


def check_recipient(now, tz_name):
    """evaluate_quiet_hours() with the window and switch taken from settings"""
    return evaluate_quiet_hours(
        now,
        tz_name,
        start_hour=get_int_setting('QUIET_HOURS_START', 22),
        end_hour=get_int_setting('QUIET_HOURS_END', 8),
        enabled=get_bool_setting('ENABLE_QUIET_HOURS', False),
        default_timezone=get_setting('DEFAULT_TIMEZONE', 'UTC'),
    )

"""Quiet hours: pure evaluation, no database."""

from datetime import datetime, timezone

import pytest

from mailroom.modules.campaigns.quiet_hours import (
    evaluate_quiet_hours, is_quiet_hour, is_valid_timezone, resolve_timezone,
)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.mark.parametrize("hour,quiet", [
    (21, False), (22, True), (23, True), (0, True), (7, True), (8, False), (9, False), (12, False),
])
def test_window_wrapping_midnight(hour, quiet):
    assert is_quiet_hour(hour, 22, 8) is quiet


@pytest.mark.parametrize("hour,quiet", [(0, False), (1, True), (4, True), (5, False)])
def test_window_within_one_day(hour, quiet):
    assert is_quiet_hour(hour, 1, 5) is quiet


def test_late_evening_waits_until_next_morning():
    # 23:00 in New York (EST, UTC-5)
    result = evaluate_quiet_hours(utc(2025, 1, 16, 4, 0), 'America/New_York', 22, 8)
    assert result.is_quiet
    assert result.next_send_at == utc(2025, 1, 16, 13, 0)
    assert result.timezone == 'America/New_York'


def test_after_midnight_waits_until_same_morning():
    # 00:00 local
    result = evaluate_quiet_hours(utc(2025, 1, 16, 5, 0), 'America/New_York', 22, 8)
    assert result.is_quiet
    assert result.next_send_at == utc(2025, 1, 16, 13, 0)


def test_morning_is_not_quiet():
    # 09:00 local
    result = evaluate_quiet_hours(utc(2025, 1, 16, 14, 0), 'America/New_York', 22, 8)
    assert not result.is_quiet
    assert result.next_send_at is None


def test_next_send_uses_local_offset_across_dst_change():
    # 23:00 GMT on the night UK clocks go forward; 08:00 BST is 07:00 UTC
    result = evaluate_quiet_hours(utc(2025, 3, 29, 23, 0), 'Europe/London', 22, 8)
    assert result.is_quiet
    assert result.next_send_at == utc(2025, 3, 30, 7, 0)


def test_invalid_timezone_uses_default():
    result = evaluate_quiet_hours(
        utc(2025, 1, 16, 23, 30), 'Mars/Olympus_Mons', 22, 8, default_timezone='UTC'
    )
    assert result.timezone == 'UTC'
    assert result.is_quiet
    assert result.next_send_at == utc(2025, 1, 17, 8, 0)


def test_missing_timezone_uses_default():
    result = evaluate_quiet_hours(utc(2025, 1, 16, 12, 0), None, 22, 8, default_timezone='Asia/Tokyo')
    # 21:00 in Tokyo
    assert result.timezone == 'Asia/Tokyo'
    assert not result.is_quiet


def test_disabled_is_never_quiet():
    result = evaluate_quiet_hours(utc(2025, 1, 16, 4, 0), 'America/New_York', 22, 8, enabled=False)
    assert not result.is_quiet


def test_naive_now_is_taken_as_utc():
    result = evaluate_quiet_hours(datetime(2025, 1, 16, 23, 0), 'UTC', 22, 8)
    assert result.is_quiet
    assert result.next_send_at == utc(2025, 1, 17, 8, 0)


def test_timezone_validation():
    assert is_valid_timezone('Europe/Paris')
    assert not is_valid_timezone('Nowhere/Special')
    assert not is_valid_timezone(None)
    assert resolve_timezone('Nowhere/Special', 'Bad/Default').zone == 'UTC'

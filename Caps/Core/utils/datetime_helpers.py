"""Shared datetime utilities for Caps.

Every timestamp the engine records (run start/end, action start, ledger
entries) goes through ``now()`` so that ledgers written by different
processes compare consistently.

Features:
    - Timezone-aware datetime operations (CAPS_TIMEZONE, default UTC)
    - Datetime string parsing with multiple format support

Usage:
    from Caps.Core.utils.datetime_helpers import now, parse_datetime

    started_at = now()
    dt = parse_datetime("2026-01-15T10:30:00+00:00")
"""
import os
from datetime import datetime
from typing import Optional

import pytz

DEFAULT_TIMEZONE = "UTC"


def get_timezone() -> pytz.BaseTzInfo:
    """
    Get the configured timezone.

    Falls back to UTC when CAPS_TIMEZONE names an unknown zone.
    """
    name = os.environ.get("CAPS_TIMEZONE", DEFAULT_TIMEZONE)
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        return pytz.timezone(DEFAULT_TIMEZONE)


def now() -> datetime:
    """
    Get current time in the configured timezone.

    Returns:
        Timezone-aware datetime.
    """
    return datetime.now(get_timezone())


def parse_datetime(dt_str: Optional[str]) -> Optional[datetime]:
    """
    Parse a datetime string in various formats.

    Supports ISO 8601 and common database timestamp formats.

    Args:
        dt_str: The datetime string to parse.

    Returns:
        Parsed datetime object, or None if parsing fails.
    """
    if not dt_str:
        return None
    formats = [
        "%Y-%m-%dT%H:%M:%S.%f%z",
        "%Y-%m-%dT%H:%M:%S%z",
        "%Y-%m-%d %H:%M:%S.%f%z",
        "%Y-%m-%d %H:%M:%S%z",
        "%Y-%m-%d %H:%M:%S %Z",
        "%Y-%m-%d %H:%M:%S.%f",
        "%Y-%m-%d %H:%M:%S"
    ]
    for fmt in formats:
        try:
            return datetime.strptime(dt_str, fmt)
        except ValueError:
            continue
    return None

"""
Time utilities for the followup engine

All timestamps are stored and compared in UTC. Patient-facing text is
rendered in the deployment's local timezone (WIB by default).
"""
from datetime import datetime, timezone
from typing import Optional
import pytz
import logging

logger = logging.getLogger("time-utils")

# Default timezone for the system (UTC)
SYSTEM_TIMEZONE = timezone.utc

# Default timezone for patient-facing times
DEFAULT_LOCAL_TIMEZONE = 'Asia/Jakarta'

# Supported local timezones (Indonesia's three zones plus UTC)
LOCAL_TIMEZONES = {
    'Asia/Jakarta': pytz.timezone('Asia/Jakarta'),    # WIB
    'Asia/Makassar': pytz.timezone('Asia/Makassar'),  # WITA
    'Asia/Jayapura': pytz.timezone('Asia/Jayapura'),  # WIT
    'UTC': pytz.timezone('UTC')
}


def now_utc() -> datetime:
    """
    Get current time in UTC

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(SYSTEM_TIMEZONE)


def parse_iso_to_utc(iso_string: str) -> datetime:
    """
    Parse ISO datetime string to UTC datetime

    Args:
        iso_string: ISO format datetime string

    Returns:
        datetime object in UTC timezone

    Raises:
        ValueError: If the ISO string is invalid
    """
    try:
        dt = datetime.fromisoformat(iso_string)

        # If naive datetime, assume UTC
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=SYSTEM_TIMEZONE)
        else:
            dt = dt.astimezone(SYSTEM_TIMEZONE)

        return dt
    except ValueError as e:
        logger.error(f"Failed to parse ISO datetime string '{iso_string}': {e}")
        raise


def parse_optional_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO string that may be empty (Redis stores None as '')"""
    if not value:
        return None
    return parse_iso_to_utc(value)


def to_utc(dt: datetime, assume_timezone: str = 'UTC') -> datetime:
    """
    Convert datetime to UTC

    Args:
        dt: Datetime to convert
        assume_timezone: Timezone to assume if datetime is naive

    Returns:
        datetime object in UTC timezone
    """
    if dt.tzinfo is None:
        if assume_timezone in LOCAL_TIMEZONES:
            dt = LOCAL_TIMEZONES[assume_timezone].localize(dt)
        else:
            dt = dt.replace(tzinfo=SYSTEM_TIMEZONE)
            logger.warning(f"Unknown timezone '{assume_timezone}', assuming UTC")

    return dt.astimezone(SYSTEM_TIMEZONE)


def to_local_timezone(dt: datetime, local_timezone: str = DEFAULT_LOCAL_TIMEZONE) -> datetime:
    """Convert a UTC datetime to the patient's local timezone"""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=SYSTEM_TIMEZONE)

    if local_timezone in LOCAL_TIMEZONES:
        return dt.astimezone(LOCAL_TIMEZONES[local_timezone])

    logger.warning(f"Unknown local timezone '{local_timezone}', using UTC")
    return dt.astimezone(SYSTEM_TIMEZONE)


def format_for_patient(dt: datetime, local_timezone: str = DEFAULT_LOCAL_TIMEZONE) -> str:
    """
    Format datetime for display to a patient, e.g. "18/10/2026 09:15 WIB"
    """
    local_dt = to_local_timezone(dt, local_timezone)
    return local_dt.strftime("%d/%m/%Y %H:%M %Z")


def to_epoch_millis(dt: datetime) -> int:
    """Sorted-set score for a datetime (epoch milliseconds)"""
    return int(to_utc(dt).timestamp() * 1000)


def from_epoch_millis(millis: float) -> datetime:
    """Inverse of to_epoch_millis"""
    return datetime.fromtimestamp(float(millis) / 1000, tz=SYSTEM_TIMEZONE)

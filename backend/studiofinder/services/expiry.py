"""Membership expiry calculations

Pure functions: no database or provider access. Renewal kinds:
- early: current expiry + 365 days + 30-day bonus (offered with >= 180 days left)
- standard: current expiry + 365 days (offered in the last 180 days)
- 5year: max(current expiry, now) + 1825 days (always offered)
"""
import calendar
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict

from studiofinder.core.errors import MissingExpiryError

EARLY_RENEWAL_DAYS = 365
EARLY_RENEWAL_BONUS_DAYS = 30
STANDARD_RENEWAL_DAYS = 365
FIVE_YEAR_RENEWAL_DAYS = 1825
EARLY_RENEWAL_THRESHOLD_DAYS = 180

RENEWAL_EARLY = "early"
RENEWAL_STANDARD = "standard"
RENEWAL_FIVE_YEAR = "5year"
RENEWAL_TYPES = (RENEWAL_EARLY, RENEWAL_STANDARD, RENEWAL_FIVE_YEAR)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC (SQLite hands back naive values)"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_expiry(value) -> Optional[datetime]:
    """Parse an expiry carried in provider metadata (ISO-8601 string or datetime)"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


def add_months(start: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the end of the target month"""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def calculate_early_renewal_expiry(current_expiry: datetime) -> datetime:
    return as_utc(current_expiry) + timedelta(days=EARLY_RENEWAL_DAYS + EARLY_RENEWAL_BONUS_DAYS)


def calculate_standard_renewal_expiry(current_expiry: datetime) -> datetime:
    return as_utc(current_expiry) + timedelta(days=STANDARD_RENEWAL_DAYS)


def calculate_five_year_renewal_expiry(current_expiry: Optional[datetime], now: Optional[datetime] = None) -> datetime:
    """Extend from the current expiry, or from now when absent or already lapsed"""
    now = as_utc(now) or datetime.now(timezone.utc)
    current_expiry = as_utc(current_expiry)
    base = current_expiry if current_expiry and current_expiry > now else now
    return base + timedelta(days=FIVE_YEAR_RENEWAL_DAYS)


def calculate_renewal_expiry(
    renewal_type: str,
    current_expiry: Optional[datetime],
    user_id=None,
    now: Optional[datetime] = None
) -> datetime:
    """New expiry for a renewal kind.

    Raises:
        MissingExpiryError: early/standard renewal without a current expiry
        ValueError: unknown renewal kind
    """
    if renewal_type == RENEWAL_EARLY:
        if current_expiry is None:
            raise MissingExpiryError(renewal_type, user_id)
        return calculate_early_renewal_expiry(current_expiry)
    if renewal_type == RENEWAL_STANDARD:
        if current_expiry is None:
            raise MissingExpiryError(renewal_type, user_id)
        return calculate_standard_renewal_expiry(current_expiry)
    if renewal_type == RENEWAL_FIVE_YEAR:
        return calculate_five_year_renewal_expiry(current_expiry, now)
    raise ValueError(f"Unknown renewal type: {renewal_type}")


def days_until_expiry(expiry: datetime, now: Optional[datetime] = None) -> int:
    """Whole days until expiry (negative once expired)"""
    now = as_utc(now) or datetime.now(timezone.utc)
    return (as_utc(expiry) - now) // timedelta(days=1)


def is_eligible_for_early_renewal(days_remaining: int) -> bool:
    return days_remaining >= EARLY_RENEWAL_THRESHOLD_DAYS


def is_eligible_for_standard_renewal(days_remaining: int) -> bool:
    return 0 <= days_remaining < EARLY_RENEWAL_THRESHOLD_DAYS


def renewal_breakdown(days_remaining: int, renewal_type: str) -> Dict[str, int]:
    """Current/added/bonus/total day counts shown before a renewal checkout"""
    if renewal_type == RENEWAL_EARLY:
        added, bonus = EARLY_RENEWAL_DAYS, EARLY_RENEWAL_BONUS_DAYS
    elif renewal_type == RENEWAL_STANDARD:
        added, bonus = STANDARD_RENEWAL_DAYS, 0
    else:
        added, bonus = FIVE_YEAR_RENEWAL_DAYS, 0
    return {
        "current": days_remaining,
        "added": added,
        "bonus": bonus,
        "total": added + bonus,
    }


def validate_renewal_request(renewal_type: str, days_remaining: int) -> Optional[str]:
    """Return an error message when the renewal kind is not available, else None"""
    if renewal_type not in RENEWAL_TYPES:
        return "Invalid renewal type"
    if renewal_type == RENEWAL_EARLY and not is_eligible_for_early_renewal(days_remaining):
        return ("Early renewal bonus not available - less than 6 months remaining. "
                "Please use standard renewal.")
    if renewal_type == RENEWAL_STANDARD and not is_eligible_for_standard_renewal(days_remaining):
        return ("Standard renewal not available. Use early renewal (6+ months remaining) "
                "or 5-year option.")
    return None

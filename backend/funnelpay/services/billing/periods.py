"""Billing frequency conversion and period date math.

WHAT:
    - FrequencyConverter: "monthly"/"annually"/... + repeat count
      -> calendar interval unit and relative period token ("2m", "1y")
    - calculate_end_date: start + period token -> end timestamp

WHY:
    Trial windows, subscription windows and renewal extensions all derive
    from the same two conversions, so they live in one place.

NOTES:
    Month/year arithmetic rolls over like a calendar setter would:
    Jan 31 + 1m -> Mar 3 (or Mar 2 in leap years), Feb 29 + 1y -> Mar 1.
    A malformed or out-of-range token falls back to one year rather than
    failing the payment.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from ...models import IntervalUnitEnum
from .errors import UnknownFrequencyError

logger = logging.getLogger(__name__)

DEFAULT_PERIOD_TOKEN = "1y"
# Upper bound on frequencyInterval accepted from the gateway
MAX_FREQUENCY_INTERVAL = 120
_PERIOD_TOKEN_RE = re.compile(r"^(\d+)([ymwd])$")

_FREQUENCY_ALIASES = {
    "annually": IntervalUnitEnum.year,
    "annual": IntervalUnitEnum.year,
    "yearly": IntervalUnitEnum.year,
    "year": IntervalUnitEnum.year,
    "monthly": IntervalUnitEnum.month,
    "month": IntervalUnitEnum.month,
    "weekly": IntervalUnitEnum.week,
    "week": IntervalUnitEnum.week,
    "daily": IntervalUnitEnum.day,
    "day": IntervalUnitEnum.day,
}

_UNIT_SUFFIX = {
    IntervalUnitEnum.year: "y",
    IntervalUnitEnum.month: "m",
    IntervalUnitEnum.week: "w",
    IntervalUnitEnum.day: "d",
}


def utc_now() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class FrequencyConverter:
    """Map gateway billing frequencies to interval units and period tokens."""

    @staticmethod
    def is_supported(frequency: Optional[str]) -> bool:
        return bool(frequency) and frequency.strip().lower() in _FREQUENCY_ALIASES

    @staticmethod
    def to_interval_unit(frequency: str) -> IntervalUnitEnum:
        """Raises UnknownFrequencyError for anything not in the alias table."""
        key = (frequency or "").strip().lower()
        try:
            return _FREQUENCY_ALIASES[key]
        except KeyError:
            raise UnknownFrequencyError(f"Unsupported billing frequency: {frequency!r}") from None

    @classmethod
    def to_period_token(cls, frequency: str, interval: int = 1) -> str:
        unit = cls.to_interval_unit(frequency)
        return f"{max(int(interval), 1)}{_UNIT_SUFFIX[unit]}"


def _parse_token(period: str) -> Tuple[int, str]:
    match = _PERIOD_TOKEN_RE.match(period or "")
    if not match:
        logger.warning(f"[PERIODS] Invalid period token {period!r}, using {DEFAULT_PERIOD_TOKEN}")
        match = _PERIOD_TOKEN_RE.match(DEFAULT_PERIOD_TOKEN)
    return int(match.group(1)), match.group(2)


def _add_months(start: datetime, months: int) -> datetime:
    year, month_index = divmod(start.month - 1 + months, 12)
    first_of_month = start.replace(year=start.year + year, month=month_index + 1, day=1)
    # Days past the end of the target month spill into the next one
    return first_of_month + timedelta(days=start.day - 1)


def _add_years(start: datetime, years: int) -> datetime:
    first_of_month = start.replace(year=start.year + years, day=1)
    return first_of_month + timedelta(days=start.day - 1)


def calculate_end_date(start: datetime, period: str) -> datetime:
    """Advance `start` by a period token like "1y", "3m", "2w" or "30d"."""
    amount, unit = _parse_token(period)
    try:
        return _advance(start, amount, unit)
    except (ValueError, OverflowError):
        logger.warning(
            f"[PERIODS] Period {period!r} from {start.isoformat()} is out of range, "
            f"using {DEFAULT_PERIOD_TOKEN}"
        )
        amount, unit = _parse_token(DEFAULT_PERIOD_TOKEN)
        return _advance(start, amount, unit)


def _advance(start: datetime, amount: int, unit: str) -> datetime:
    if unit == "y":
        return _add_years(start, amount)
    if unit == "m":
        return _add_months(start, amount)
    if unit == "w":
        return start + timedelta(weeks=amount)
    return start + timedelta(days=amount)


@dataclass(frozen=True)
class BillingPeriod:
    """Resolved window for a purchase."""

    interval_unit: IntervalUnitEnum
    interval_count: int
    token: str
    starts_at: datetime
    ends_at: datetime


def billing_period(frequency: str, interval: int = 1, start: Optional[datetime] = None) -> BillingPeriod:
    """Window starting at `start` (default now) for the given cadence."""
    start = start or utc_now()
    unit = FrequencyConverter.to_interval_unit(frequency)
    token = FrequencyConverter.to_period_token(frequency, interval)
    return BillingPeriod(
        interval_unit=unit,
        interval_count=max(int(interval), 1),
        token=token,
        starts_at=start,
        ends_at=calculate_end_date(start, token),
    )


def parse_gateway_date(value: str) -> datetime:
    """Parse the gateway's DD/MM/YYYY dates (e.g. next_payment_date).

    Raises ValueError for malformed or non-existent calendar dates.
    """
    return datetime.strptime(value.strip(), "%d/%m/%Y")

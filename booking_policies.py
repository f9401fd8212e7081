from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional, Union

MAX_BOOKING_DAYS = 60
USD_TO_TL_RATE = 30
EXPECTED_CARD_DIGITS = 16
DEFAULT_REGION = "TR"

DATE_REQUIRED_MESSAGE = "Please select a departure date."
PAST_DATE_MESSAGE = "Departure date cannot be in the past. Please select a future date."
PAYMENT_DATE_MESSAGE = "Unable to create booking. Please check your selected dates."


class DateCheckKind(str, Enum):
    OK = "OK"
    EMPTY = "EMPTY"
    PAST_DATE = "PAST_DATE"
    TOO_FAR_AHEAD = "TOO_FAR_AHEAD"


@dataclass(frozen=True)
class DateCheck:
    kind: DateCheckKind
    days_over: int = 0
    max_booking_days: int = MAX_BOOKING_DAYS

    @property
    def ok(self) -> bool:
        return self.kind == DateCheckKind.OK

    @property
    def is_error(self) -> bool:
        return self.kind in (DateCheckKind.PAST_DATE, DateCheckKind.TOO_FAR_AHEAD)

    def message(self) -> str:
        if self.kind == DateCheckKind.PAST_DATE:
            return PAST_DATE_MESSAGE
        if self.kind == DateCheckKind.TOO_FAR_AHEAD:
            return (
                f"Flights can only be booked up to {self.max_booking_days} days in advance. "
                f"Your selected date is {self.days_over} day(s) beyond the limit."
            )
        return ""


@dataclass(frozen=True)
class CardCheck:
    actual: int
    expected: int = EXPECTED_CARD_DIGITS

    @property
    def ok(self) -> bool:
        return self.actual == self.expected

    def message(self) -> str:
        if self.ok:
            return ""
        return (
            f"Card number must contain exactly {self.expected} digits. "
            f"You entered {self.actual} digit(s)."
        )


DateLike = Union[date, datetime, str, None]

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_ANGLE_BRACKETS_RE = re.compile(r"[<>]")
_WHITESPACE_RE = re.compile(r"\s")


def parse_iso_date(value: str) -> date:
    """
    Parse a `YYYY-MM-DD` string into a calendar date.

    Raises ValueError for anything that is not a real calendar date.
    """
    t = (value or "").strip()
    if not _ISO_DATE_RE.match(t):
        raise ValueError(f"expected YYYY-MM-DD (got {value!r})")
    return datetime.strptime(t, "%Y-%m-%d").date()


def _as_day(value: DateLike) -> Optional[date]:
    # datetime is a date subclass, so check it first to drop the time of day.
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    t = str(value).strip()
    if not t:
        return None
    return parse_iso_date(t)


def sanitize_date_input(value: Optional[str]) -> str:
    """
    Clean raw date text from the form.

    Angle brackets are stripped; anything that is not literally `YYYY-MM-DD` afterwards
    becomes "" rather than an error.
    """
    if not value:
        return ""
    sanitized = _ANGLE_BRACKETS_RE.sub("", str(value))
    if sanitized and not _ISO_DATE_RE.match(sanitized):
        return ""
    return sanitized


def validate_departure_date(
    value: DateLike,
    today: DateLike,
    *,
    max_booking_days: int = MAX_BOOKING_DAYS,
) -> DateCheck:
    """
    Check a departure date against the booking window `[today, today + max_booking_days]`.

    Both sides are compared as calendar days. An empty value is reported as EMPTY; the
    caller decides whether that is acceptable.
    """
    selected = _as_day(value)
    if selected is None:
        return DateCheck(kind=DateCheckKind.EMPTY, max_booking_days=max_booking_days)
    base = _as_day(today)
    if base is None:
        raise ValueError("today is required")

    if selected < base:
        return DateCheck(kind=DateCheckKind.PAST_DATE, max_booking_days=max_booking_days)

    max_date = base + timedelta(days=max_booking_days)
    if selected > max_date:
        days_over = math.ceil((selected - max_date) / timedelta(days=1))
        return DateCheck(kind=DateCheckKind.TOO_FAR_AHEAD, days_over=days_over, max_booking_days=max_booking_days)

    return DateCheck(kind=DateCheckKind.OK, max_booking_days=max_booking_days)


def is_past_date(value: DateLike, today: DateLike) -> bool:
    """
    Past-date half of the Date Policy, used at payment time where the forward window no
    longer applies.
    """
    selected = _as_day(value)
    base = _as_day(today)
    if selected is None or base is None:
        return False
    return selected < base


def days_until(value: DateLike, today: DateLike) -> int:
    selected = _as_day(value)
    base = _as_day(today)
    if selected is None or base is None:
        return 0
    return (selected - base).days


def validate_card_number(raw: Optional[str], *, expected: int = EXPECTED_CARD_DIGITS) -> CardCheck:
    """
    Count the characters left after stripping whitespace.

    Non-digit characters are counted as-is; only the length is enforced.
    """
    stripped = _WHITESPACE_RE.sub("", raw or "")
    return CardCheck(actual=len(stripped), expected=expected)


def resolve_region(configured: Optional[str] = None) -> str:
    """
    Region lookup for price display. There is no geolocation in the demo; the configured
    value wins and falls back to TR.
    """
    t = (configured or "").strip().upper()
    return t or DEFAULT_REGION


def convert_to_local(price_usd: Union[int, float], rate: Union[int, float] = USD_TO_TL_RATE) -> int:
    # Half-up like the browser's Math.round, not banker's rounding.
    return int(math.floor(float(price_usd) * float(rate) + 0.5))


def _group_thousands(amount: int, sep: str) -> str:
    sign = "-" if amount < 0 else ""
    return sign + f"{abs(amount):,d}".replace(",", sep)


def format_try(amount: int) -> str:
    """
    Turkish lira display: symbol prefix, dot grouping, no fraction digits (`₺3.750`).
    """
    return f"₺{_group_thousands(int(amount), '.')}"


def format_usd(price_usd: Union[int, float]) -> str:
    if float(price_usd).is_integer():
        return f"${int(price_usd)}"
    return f"${price_usd}"


def format_price(
    price_usd: Union[int, float],
    region: Optional[str] = None,
    *,
    show_both: bool = False,
    rate: Union[int, float] = USD_TO_TL_RATE,
) -> str:
    """
    Format a USD fare for the resolved region.

    TR converts with the fixed rate and renders lira (optionally followed by the USD amount
    in parentheses). Every other region gets a plain `$<amount>` string.
    """
    resolved = resolve_region(region)
    if resolved == "TR":
        formatted = format_try(convert_to_local(price_usd, rate))
        if show_both:
            return f"{formatted} ({format_usd(price_usd)})"
        return formatted
    return format_usd(price_usd)


def region_converts_currency(region: Optional[str] = None) -> bool:
    return resolve_region(region) == "TR"

"""
Recurrence rules and instance expansion.

Parses the RRULE subset the calendar supports, turns user-facing options into
rule strings and expands a recurring master into concrete instances. Pure: no
database or network access.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterator, List, Optional, Sequence, Tuple

import pytz
from dateutil.rrule import DAILY, MONTHLY, WEEKLY, YEARLY, rrule
from dateutil.rrule import weekdays as WEEKDAYS

from config.settings import settings
from core import RecurrenceRuleError, ValidationError, get_logger
from core.ids import instance_uuid
from schemas import CalendarEventSchema

logger = get_logger(__name__)

FREQUENCIES = {
    "DAILY": DAILY,
    "WEEKLY": WEEKLY,
    "MONTHLY": MONTHLY,
    "YEARLY": YEARLY,
}

DAY_CODES = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")
DAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
MONTH_NAMES = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)

_BYDAY_PATTERN = re.compile(r"^([+-]?\d{1,2})?(MO|TU|WE|TH|FR|SA|SU)$")
_UNTIL_FORMATS = ("%Y%m%dT%H%M%SZ", "%Y%m%dT%H%M%S", "%Y%m%d")
_SUPPORTED_KEYS = {"FREQ", "INTERVAL", "COUNT", "UNTIL", "BYDAY", "BYMONTHDAY", "BYMONTH", "WKST"}


@dataclass(frozen=True)
class RecurrenceRule:
    """
    Validated RRULE.

    ``until`` is naive UTC when ``until_is_utc`` is set, otherwise a floating
    wall-clock time in the event's own timezone.
    """

    freq: str
    interval: int = 1
    count: Optional[int] = None
    until: Optional[datetime] = None
    by_day: Tuple[Tuple[Optional[int], str], ...] = ()
    by_month_day: Tuple[int, ...] = ()
    by_month: Tuple[int, ...] = ()
    wkst: Optional[str] = None
    until_is_utc: bool = True

    def to_string(self) -> str:
        parts = [f"FREQ={self.freq}"]
        if self.interval != 1:
            parts.append(f"INTERVAL={self.interval}")
        if self.count is not None:
            parts.append(f"COUNT={self.count}")
        if self.until is not None:
            fmt = "%Y%m%dT%H%M%SZ" if self.until_is_utc else "%Y%m%dT%H%M%S"
            parts.append(f"UNTIL={self.until.strftime(fmt)}")
        if self.by_day:
            parts.append("BYDAY=" + ",".join(f"{n or ''}{code}" for n, code in self.by_day))
        if self.by_month_day:
            parts.append("BYMONTHDAY=" + ",".join(str(d) for d in self.by_month_day))
        if self.by_month:
            parts.append("BYMONTH=" + ",".join(str(m) for m in self.by_month))
        if self.wkst:
            parts.append(f"WKST={self.wkst}")
        return ";".join(parts)


def _int_list(rule: str, key: str, value: str, low: int, high: int, allow_negative: bool = False) -> Tuple[int, ...]:
    numbers = []
    for item in value.split(","):
        try:
            number = int(item)
        except ValueError:
            raise RecurrenceRuleError(rule, f"{key} must be a list of integers")
        magnitude = abs(number) if allow_negative else number
        if number == 0 or not low <= magnitude <= high:
            raise RecurrenceRuleError(rule, f"{key} value {number} out of range")
        numbers.append(number)
    return tuple(numbers)


def _parse_until(rule: str, value: str) -> Tuple[datetime, bool]:
    """Return the bound and whether it is UTC. Date-only and floating values are local."""
    for fmt in _UNTIL_FORMATS:
        try:
            parsed = datetime.strptime(value, fmt)
        except ValueError:
            continue
        if fmt == "%Y%m%d":
            # Date-only bound includes the whole day
            parsed = parsed + timedelta(days=1) - timedelta(seconds=1)
        return parsed, fmt.endswith("Z")
    raise RecurrenceRuleError(rule, f"UNTIL '{value}' is not a date or date-time")


def parse_rule(value: str) -> RecurrenceRule:
    """
    Parse and validate an RRULE string.

    Args:
        value: e.g. "FREQ=WEEKLY;BYDAY=MO,WE" (an "RRULE:" prefix is allowed)

    Raises:
        RecurrenceRuleError: rule is malformed or uses unsupported parts
    """
    if not value or not value.strip():
        raise RecurrenceRuleError(value or "", "rule is empty")

    text = value.strip()
    if text.upper().startswith("RRULE:"):
        text = text[len("RRULE:"):]

    parts = {}
    for chunk in text.split(";"):
        if not chunk:
            continue
        key, sep, item = chunk.partition("=")
        key = key.strip().upper()
        item = item.strip().upper()
        if not sep or not item:
            raise RecurrenceRuleError(value, f"'{chunk}' is not KEY=VALUE")
        if key not in _SUPPORTED_KEYS:
            raise RecurrenceRuleError(value, f"{key} is not supported")
        if key in parts:
            raise RecurrenceRuleError(value, f"{key} appears twice")
        parts[key] = item

    freq = parts.get("FREQ")
    if freq is None:
        raise RecurrenceRuleError(value, "FREQ is required")
    if freq not in FREQUENCIES:
        raise RecurrenceRuleError(value, f"FREQ must be one of {', '.join(FREQUENCIES)}")

    interval = 1
    if "INTERVAL" in parts:
        try:
            interval = int(parts["INTERVAL"])
        except ValueError:
            raise RecurrenceRuleError(value, "INTERVAL must be an integer")
        if interval < 1:
            raise RecurrenceRuleError(value, "INTERVAL must be at least 1")

    if "COUNT" in parts and "UNTIL" in parts:
        raise RecurrenceRuleError(value, "COUNT and UNTIL are mutually exclusive")

    count = None
    if "COUNT" in parts:
        try:
            count = int(parts["COUNT"])
        except ValueError:
            raise RecurrenceRuleError(value, "COUNT must be an integer")
        if count < 1:
            raise RecurrenceRuleError(value, "COUNT must be at least 1")

    until, until_is_utc = _parse_until(value, parts["UNTIL"]) if "UNTIL" in parts else (None, True)

    by_day: List[Tuple[Optional[int], str]] = []
    if "BYDAY" in parts:
        for item in parts["BYDAY"].split(","):
            match = _BYDAY_PATTERN.match(item)
            if not match:
                raise RecurrenceRuleError(value, f"BYDAY value '{item}' is not a weekday")
            ordinal = int(match.group(1)) if match.group(1) else None
            if ordinal is not None:
                if freq not in ("MONTHLY", "YEARLY"):
                    raise RecurrenceRuleError(value, "ordinal BYDAY needs FREQ=MONTHLY or YEARLY")
                if ordinal == 0 or abs(ordinal) > 53:
                    raise RecurrenceRuleError(value, f"BYDAY ordinal {ordinal} out of range")
            by_day.append((ordinal, match.group(2)))

    by_month_day = (
        _int_list(value, "BYMONTHDAY", parts["BYMONTHDAY"], 1, 31, allow_negative=True)
        if "BYMONTHDAY" in parts
        else ()
    )
    by_month = _int_list(value, "BYMONTH", parts["BYMONTH"], 1, 12) if "BYMONTH" in parts else ()

    wkst = parts.get("WKST")
    if wkst is not None and wkst not in DAY_CODES:
        raise RecurrenceRuleError(value, f"WKST '{wkst}' is not a weekday")

    return RecurrenceRule(
        freq=freq,
        interval=interval,
        count=count,
        until=until,
        by_day=tuple(by_day),
        by_month_day=by_month_day,
        by_month=by_month,
        wkst=wkst,
        until_is_utc=until_is_utc,
    )


def build_rule_string(
    frequency: str,
    interval: int = 1,
    count: Optional[int] = None,
    until: Optional[datetime] = None,
    by_weekday: Optional[Sequence[int]] = None,
    by_month_day: Optional[Sequence[int]] = None,
    by_month: Optional[Sequence[int]] = None,
) -> str:
    """
    Convert form options into an RRULE string.

    ``by_weekday`` uses 0 = Monday .. 6 = Sunday. ``until`` is naive UTC.
    """
    by_day = []
    for day in by_weekday or ():
        if not 0 <= day <= 6:
            raise ValidationError("byWeekday", f"{day} is not between 0 and 6")
        by_day.append((None, DAY_CODES[day]))
    candidate = RecurrenceRule(
        freq=frequency.upper(),
        interval=interval,
        count=count,
        until=until,
        by_day=tuple(by_day),
        by_month_day=tuple(by_month_day or ()),
        by_month=tuple(by_month or ()),
    )
    # Round trip through the parser so options get the same validation as stored rules
    return parse_rule(candidate.to_string()).to_string()


RECURRENCE_PRESETS = {
    "DAILY": "FREQ=DAILY",
    "WEEKLY": "FREQ=WEEKLY",
    "MONTHLY": "FREQ=MONTHLY",
    "YEARLY": "FREQ=YEARLY",
    "WEEKDAYS": "FREQ=WEEKLY;BYDAY=MO,TU,WE,TH,FR",
    "EVERY_OTHER_WEEK": "FREQ=WEEKLY;INTERVAL=2",
    "FIRST_DAY_OF_MONTH": "FREQ=MONTHLY;BYMONTHDAY=1",
}


def _ordinal(n: int) -> str:
    if n == -1:
        return "last"
    if n < 0:
        return f"{_ordinal(-n)} to last"
    suffix = "th" if 10 <= n % 100 <= 20 else {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def describe_rule(value: str) -> str:
    """Human-readable summary, e.g. "Every 2 weeks on Monday, Wednesday, 10 times"."""
    try:
        rule = parse_rule(value)
    except RecurrenceRuleError:
        return "Custom recurrence"

    unit = {"DAILY": "day", "WEEKLY": "week", "MONTHLY": "month", "YEARLY": "year"}[rule.freq]
    text = f"Every {unit}" if rule.interval == 1 else f"Every {rule.interval} {unit}s"

    if rule.by_day:
        days = []
        for n, code in rule.by_day:
            name = DAY_NAMES[DAY_CODES.index(code)]
            days.append(f"the {_ordinal(n)} {name}" if n else name)
        if rule.freq == "WEEKLY" and [code for _, code in rule.by_day] == list(DAY_CODES[:5]):
            text += " on weekdays"
        else:
            text += " on " + ", ".join(days)
    if rule.by_month_day:
        text += " on the " + ", ".join(_ordinal(d) for d in rule.by_month_day)
    if rule.by_month:
        text += " in " + ", ".join(MONTH_NAMES[m - 1] for m in rule.by_month)
    if rule.count is not None:
        text += ", once" if rule.count == 1 else f", {rule.count} times"
    if rule.until is not None:
        text += f", until {MONTH_NAMES[rule.until.month - 1]} {rule.until.day}, {rule.until.year}"
    return text


def _to_dateutil(rule: RecurrenceRule, dtstart: datetime, until: Optional[datetime]) -> rrule:
    kwargs = {"dtstart": dtstart, "interval": rule.interval, "cache": False}
    if rule.count is not None:
        kwargs["count"] = rule.count
    if until is not None:
        kwargs["until"] = until
    if rule.by_day:
        weekdays = []
        for n, code in rule.by_day:
            day = WEEKDAYS[DAY_CODES.index(code)]
            weekdays.append(day(n) if n else day)
        kwargs["byweekday"] = weekdays
    if rule.by_month_day:
        kwargs["bymonthday"] = rule.by_month_day
    if rule.by_month:
        kwargs["bymonth"] = rule.by_month
    if rule.wkst:
        kwargs["wkst"] = WEEKDAYS[DAY_CODES.index(rule.wkst)]
    return rrule(FREQUENCIES[rule.freq], **kwargs)


@dataclass
class _Expansion:
    master: CalendarEventSchema
    rule: RecurrenceRule
    tz: pytz.BaseTzInfo
    window_start: datetime
    window_end: datetime
    max_occurrences: int
    produced: int = field(default=0)

    def _local(self, value: datetime) -> datetime:
        return pytz.utc.localize(value).astimezone(self.tz).replace(tzinfo=None)

    def _utc(self, value: datetime) -> datetime:
        return self.tz.localize(value, is_dst=False).astimezone(pytz.utc).replace(tzinfo=None)

    def __iter__(self) -> Iterator[CalendarEventSchema]:
        master = self.master
        duration = master.end_time - master.start_time
        until = self.rule.until
        if until is not None and self.rule.until_is_utc:
            until = self._local(until)
        occurrences = _to_dateutil(self.rule, self._local(master.start_time), until)

        for index, local_start in enumerate(occurrences):
            start = self._utc(local_start)
            end = start + duration
            if start > self.window_end or end > self.window_end:
                break
            if master.recurrence_end_date is not None and start > master.recurrence_end_date:
                break
            if start < self.window_start:
                continue
            yield self._instance(index, start, end)
            self.produced += 1
            if self.produced >= self.max_occurrences:
                logger.warning(
                    "Recurrence expansion hit occurrence cap",
                    master_id=master.id,
                    cap=self.max_occurrences,
                )
                break

    def _instance(self, index: int, start: datetime, end: datetime) -> CalendarEventSchema:
        master = self.master
        metadata = dict(master.metadata or {})
        metadata.update({"isInstance": True, "parentId": master.id, "originalStart": start.isoformat()})
        return master.model_copy(
            update={
                "id": instance_uuid(master.id, index),
                "start_time": start,
                "end_time": end,
                "is_recurring": False,
                "recurrence_rule": None,
                "recurrence_end_date": None,
                "parent_event_id": master.id,
                "occurrence_index": index,
                "attendees": [a.model_copy() for a in master.attendees],
                "metadata": metadata,
                "provider_sync": [],
                "invitations_sent_at": None,
                "created_at": None,
                "updated_at": None,
            }
        )


def expand(
    master: CalendarEventSchema,
    window_start: datetime,
    window_end: datetime,
    max_occurrences: Optional[int] = None,
) -> Iterator[CalendarEventSchema]:
    """
    Expand a recurring master into instances inside [window_start, window_end].

    The rule is evaluated in the master's timezone so wall-clock times hold
    across DST changes. Instance ids are derived from the master id and the
    occurrence index counted from the master's start, so overlapping windows
    yield the same ids.

    Validation happens immediately; the returned iterator is lazy.

    Args:
        master: Event with is_recurring and a recurrence_rule
        window_start: Naive UTC lower bound (inclusive)
        window_end: Naive UTC upper bound (inclusive)
        max_occurrences: Cap on produced instances (defaults to settings)

    Raises:
        RecurrenceRuleError: The rule is malformed
        ValidationError: The master or the window is unusable
    """
    if not master.is_recurring or not master.recurrence_rule:
        raise ValidationError("recurrenceRule", "event is not a recurring master")
    if master.end_time < master.start_time:
        raise ValidationError("endTime", "must not be before startTime")
    if window_end < window_start:
        raise ValidationError("window", "window end precedes window start")

    rule = parse_rule(master.recurrence_rule)
    try:
        tz = pytz.utc if master.is_all_day else pytz.timezone(master.timezone or "UTC")
    except pytz.UnknownTimeZoneError:
        raise ValidationError("timezone", f"unknown timezone '{master.timezone}'")

    return iter(
        _Expansion(
            master=master,
            rule=rule,
            tz=tz,
            window_start=window_start,
            window_end=window_end,
            max_occurrences=max_occurrences or settings.MAX_OCCURRENCES_PER_RULE,
        )
    )

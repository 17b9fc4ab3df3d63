"""Matching connections by the time of day at which they were wrapped."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, ClassVar, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from l4router.connection import Connection, Replacer
from l4router.matchers import ConnMatcher
from l4router.registry import register_module

CONN_WRAP_TIME_KEY = "l4.conn.wrap_time"
SECONDS_PER_DAY = 86400

_TIME_RE = re.compile(r"(\d{1,2}):(\d{2}):(\d{2})(?:[.,]\d+)?")
_TZ_OFFSET_RE = re.compile(r"([+-])(\d{2})(?::(\d{2})(?::(\d{2}))?)?")


def time_parse_seconds(src: str, default: int = 0) -> int:
    """Parse "HH:MM:SS" into seconds since midnight; `default` for an empty string."""
    if not src:
        return default
    found = _TIME_RE.fullmatch(src)
    if found is None:
        raise ValueError(f'parsing time "{src}": expected the form 15:04:05')
    hours, minutes, seconds = (int(part) for part in found.groups())
    if hours > 23:
        raise ValueError(f'parsing time "{src}": hour out of range')
    if minutes > 59:
        raise ValueError(f'parsing time "{src}": minute out of range')
    if seconds > 59:
        raise ValueError(f'parsing time "{src}": second out of range')
    return hours * 3600 + minutes * 60 + seconds


def _fixed_offset(name: str) -> tzinfo | None:
    found = _TZ_OFFSET_RE.fullmatch(name)
    if found is None:
        return None
    sign, hh, mm, ss = found.groups()
    hours, minutes, seconds = int(hh), int(mm or 0), int(ss or 0)
    total = hours * 3600 + minutes * 60 + seconds
    if hours > 24 or minutes > 60 or seconds > 60 or total >= SECONDS_PER_DAY:
        return None
    return timezone(timedelta(seconds=-total if sign == "-" else total), name)


def _load_location(name: str) -> tzinfo | None:
    """Resolve a time zone; None stands for the system's local zone."""
    offset = _fixed_offset(name)
    if offset is not None:
        return offset
    if name in ("", "UTC"):
        return timezone.utc
    if name == "Local":
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError) as exc:
        raise ValueError(f"unknown time zone {name}") from exc


def _replacer(cx: Any) -> Replacer:
    repl = getattr(cx, "replacer", None)
    if repl is None:
        repl = getattr(cx, "repl")
    if callable(repl) and not isinstance(repl, Replacer):
        repl = repl()
    return repl


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, timezone.utc)
    return None


@dataclass
class MatchClock(ConnMatcher):
    """Matches connections wrapped between `after` (inclusive) and `before` (exclusive).

    Times use the form 15:04:05; placeholders are expanded at provision.
    A `before` of 00:00:00 means 24:00:00, and the two points are swapped if
    `before` is earlier than `after`. `timezone` may be an IANA name, a fixed
    offset such as +02, -03:30 or +12:34:56, or Local; empty means UTC.
    """

    after: str = ""
    before: str = ""
    timezone: str = ""
    _location: tzinfo | None = field(default=None, init=False, repr=False, compare=False)
    _seconds_after: int = field(default=0, init=False, repr=False, compare=False)
    _seconds_before: int = field(default=0, init=False, repr=False, compare=False)
    _ready: bool = field(default=False, init=False, repr=False, compare=False)

    module_id: ClassVar[str] = "layer4.matchers.clock"

    def provision(self) -> None:
        """Parse the time points and the time zone."""
        repl = Replacer()
        seconds_after = time_parse_seconds(repl.replace_all(self.after, ""), 0)
        seconds_before = time_parse_seconds(repl.replace_all(self.before, ""), 0)
        if seconds_before == 0:
            seconds_before = SECONDS_PER_DAY
        if seconds_before < seconds_after:
            seconds_after, seconds_before = seconds_before, seconds_after
        self._location = _load_location(repl.replace_all(self.timezone, ""))
        self._seconds_after, self._seconds_before = seconds_after, seconds_before
        self._ready = True

    def match(self, cx: Connection) -> bool:
        if not self._ready:
            self.provision()
        repl = _replacer(cx)
        moment = _as_datetime(repl.get(CONN_WRAP_TIME_KEY))
        if moment is None:
            moment = datetime.now(timezone.utc)
            repl.set(CONN_WRAP_TIME_KEY, moment)
        local = moment.astimezone(self._location)
        seconds = local.hour * 3600 + local.minute * 60 + local.second
        return self._seconds_after <= seconds < self._seconds_before


def _clock_factory(config: Any) -> MatchClock:
    config = config or {}
    if not isinstance(config, Mapping):
        raise TypeError(f"expected an object, got {type(config).__name__}")
    values = {}
    for key in ("after", "before", "timezone"):
        value = config.get(key, "")
        if not isinstance(value, str):
            raise TypeError(f"'{key}' must be a string")
        values[key] = value
    return MatchClock(**values)


register_module(MatchClock.module_id, _clock_factory)
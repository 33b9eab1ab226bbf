#!/usr/bin/env python3
"""
scriptkit/timestamps.py

Timestamp helpers shared by the log sink and the lock manager.

Two renderings of "now" are produced from one local-time snapshot:
  - sortable:  2026_Oct_16__09_05_03__0   (year_month_day__h_m_s__dst)
  - readable:  09:05:03, Fri Oct 16, 2026

The clock is injectable (any callable returning a time.struct_time) so tests
can pin the time.
"""

from __future__ import annotations

import time
from typing import Callable, NamedTuple, Optional

Clock = Callable[[], time.struct_time]

MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
          "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")


class Stamp(NamedTuple):
    sortable: str
    readable: str
    year: int
    month: int
    day: int
    hour: int
    minute: int
    second: int
    dst: int


def gen_timestamp(clock: Optional[Clock] = None) -> Stamp:
    """Return the sortable and readable stamps for the clock's current time."""
    t = (clock or time.localtime)()
    mon = MONTHS[t.tm_mon - 1]
    dst = max(t.tm_isdst, 0)
    hms = f"{t.tm_hour:02d}:{t.tm_min:02d}:{t.tm_sec:02d}"

    sortable = (f"{t.tm_year}_{mon}_{t.tm_mday:02d}__"
                f"{t.tm_hour:02d}_{t.tm_min:02d}_{t.tm_sec:02d}__{dst}")
    readable = f"{hms}, {WEEKDAYS[t.tm_wday]} {mon} {t.tm_mday:02d}, {t.tm_year}"

    return Stamp(
        sortable=sortable,
        readable=readable,
        year=t.tm_year,
        month=t.tm_mon,
        day=t.tm_mday,
        hour=t.tm_hour,
        minute=t.tm_min,
        second=t.tm_sec,
        dst=dst,
    )


def expand_stamps(template: str, stamp: Stamp) -> str:
    """Substitute %t (sortable) and %T (readable) in a prefix template."""
    return template.replace("%t", stamp.sortable).replace("%T", stamp.readable)

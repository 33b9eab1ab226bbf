from __future__ import annotations

import io
import itertools
import time

import pytest

from scriptkit.log_sink import LogSink

FIXED = time.struct_time((2026, 10, 16, 9, 5, 3, 4, 289, 0))
FIXED_READABLE = "09:05:03, Fri Oct 16, 2026"
FIXED_SORTABLE = "2026_Oct_16__09_05_03__0"

_counter = itertools.count()


def fixed_clock() -> time.struct_time:
    return FIXED


@pytest.fixture
def out() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def err() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def make_sink(out, err):
    """Build sinks writing to the out/err StringIO fixtures with a pinned clock."""
    created = []

    def _make(**kwargs) -> LogSink:
        kwargs.setdefault("name", f"scriptkit-test-{next(_counter)}")
        kwargs.setdefault("output_stream", out)
        kwargs.setdefault("error_stream", err)
        kwargs.setdefault("clock", fixed_clock)
        kwargs.setdefault("info_prefix", "[INF] ")
        kwargs.setdefault("warning_prefix", "[WRN] ")
        kwargs.setdefault("error_prefix", "[ERR] ")
        kwargs.setdefault("usage_prefix", "[USE] ")
        sink = LogSink(**kwargs)
        created.append(sink)
        return sink

    yield _make
    for sink in created:
        sink.close()


@pytest.fixture
def sink(make_sink) -> LogSink:
    return make_sink()

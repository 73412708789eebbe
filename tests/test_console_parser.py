import pytest

from minemanager.services.console_parser import (
    EventKind,
    parse_console_line,
    strip_console_formatting,
    tps_from_lag,
)


def _kinds(line):
    return [event.kind for event in parse_console_line(line)]


def test_ready_marker_detected():
    events = parse_console_line('[12:00:03 INFO]: Done (3.210s)! For help, type "help"')
    assert [e.kind for e in events] == [EventKind.READY]


def test_ready_marker_needs_both_parts():
    assert _kinds("[12:00:03 INFO]: Done (preparing spawn area)") == []


@pytest.mark.parametrize(
    "line",
    [
        "[12:01:00 INFO]: Steve[/127.0.0.1:53422] logged in with entity id 42 at (0.5, 64.0, 0.5)",
        "[12:01:00 INFO]: Steve joined the game",
    ],
)
def test_join_patterns(line):
    events = parse_console_line(line)
    assert events[0].kind == EventKind.PLAYER_JOIN
    assert events[0].player == "Steve"


@pytest.mark.parametrize(
    "line",
    [
        "[12:05:00 INFO]: Steve lost connection: Disconnected",
        "[12:05:00 INFO]: Steve left the game",
    ],
)
def test_leave_patterns(line):
    events = parse_console_line(line)
    assert events[0].kind == EventKind.PLAYER_LEAVE
    assert events[0].player == "Steve"


def test_lag_warning_converts_to_tps():
    events = parse_console_line("[12:10:00 WARN]: Can't keep up! Is the server overloaded? Running 250ms behind")
    assert events[0].kind == EventKind.LAG
    assert events[0].value == pytest.approx(16.0)


def test_vanilla_lag_warning_with_ticks():
    events = parse_console_line(
        "[12:10:00 WARN]: Can't keep up! Is the server overloaded? Running 2000ms or 40 ticks behind"
    )
    assert events[0].kind == EventKind.LAG
    assert events[0].value == pytest.approx(1000 / 150)


def test_tps_from_lag_is_clamped():
    assert tps_from_lag(0) == 20.0
    assert tps_from_lag(10_000_000) == 1.0


def test_paper_tps_report_uses_first_figure():
    events = parse_console_line("[12:11:00 INFO]: TPS from last 1m, 5m, 15m: *19.9, 20.0, 20.0")
    assert events == [events[0]]
    assert events[0].kind == EventKind.TPS_REPORT
    assert events[0].value == pytest.approx(19.9)


def test_reported_tps_above_twenty_is_clamped():
    events = parse_console_line("[Metrics] TPS: 24.5")
    assert events[0].kind == EventKind.TPS_REPORT
    assert events[0].value == 20.0


def test_tps_report_follows_lag_on_same_line():
    kinds = _kinds("Running 500ms behind, TPS: 18.2")
    assert kinds == [EventKind.LAG, EventKind.TPS_REPORT]


@pytest.mark.parametrize(
    "line,expected",
    [
        ("[Metrics] Memory usage: 1536 / 4096 MB", 1536),
        ("Mem: 812/2048", 812),
        ("Used memory: 640", 640),
    ],
)
def test_memory_patterns(line, expected):
    events = parse_console_line(line)
    assert events[-1].kind == EventKind.MEMORY
    assert events[-1].value == expected


def test_colour_codes_are_stripped_before_matching():
    line = "§eSteve§r joined the game"
    assert strip_console_formatting(line) == "Steve joined the game"
    assert parse_console_line(line)[0].player == "Steve"


def test_unmatched_and_odd_lines_are_inert():
    assert parse_console_line("") == []
    assert parse_console_line("[12:00:00 INFO]: Preparing level \"world\"") == []
    assert parse_console_line("\x00\x01garbage\xff") == []

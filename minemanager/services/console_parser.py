# minemanager/services/console_parser.py
"""
Console line parsing.

Every stdout line of a running server goes through CONSOLE_MATCHERS in order.
Each matcher is independent: it looks at the whole line and yields at most
one ConsoleEvent, and a match never stops the remaining matchers from
running. The TPS report matcher comes after the lag matcher so an explicit
plugin figure overrides the lag-derived estimate for the same line.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from minemanager.services.models import clamp_tps

logger = logging.getLogger(__name__)

READY_MARKER_PREFIX = "Done ("
READY_MARKER_SUFFIX = "s)!"

_COLOR_CODE_RE = re.compile(r"§.")
_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")

_JOIN_PATTERNS = [
    re.compile(r"(\w+)\[.*?\] logged in", re.IGNORECASE),
    re.compile(r"(\w+) joined the game", re.IGNORECASE),
]
_LEAVE_PATTERNS = [
    re.compile(r"(\w+) lost connection", re.IGNORECASE),
    re.compile(r"(\w+) left the game", re.IGNORECASE),
]
# "Running 250ms or 5 ticks behind", "running 250ms behind", "250ms behind"
_LAG_RE = re.compile(r"(\d+)\s*ms(?: or \d+ ticks)? behind", re.IGNORECASE)
# "TPS from last 1m, 5m, 15m: *19.9, 20.0, 20.0", "TPS: 19.5", "Current TPS = 19.98"
_TPS_RE = re.compile(
    r"\bTPS\b(?: from last [^:]*)?\s*[:=]\s*\*?(\d+(?:\.\d+)?)",
    re.IGNORECASE,
)
_MEMORY_PATTERNS = [
    re.compile(r"Memory.*?(\d+)\s*/\s*(\d+)\s*MB", re.IGNORECASE),
    re.compile(r"Mem:\s*(\d+)\s*/\s*(\d+)", re.IGNORECASE),
    re.compile(r"Used memory:\s*(\d+)", re.IGNORECASE),
]


class EventKind(str, Enum):
    READY = "ready"
    PLAYER_JOIN = "player_join"
    PLAYER_LEAVE = "player_leave"
    LAG = "lag"
    TPS_REPORT = "tps_report"
    MEMORY = "memory"


@dataclass(frozen=True)
class ConsoleEvent:
    kind: EventKind
    player: Optional[str] = None
    value: Optional[float] = None


def strip_console_formatting(text: str) -> str:
    """Strip Minecraft colour codes (§X) and ANSI escapes from a console line"""
    return _ANSI_RE.sub("", _COLOR_CODE_RE.sub("", text))


def tps_from_lag(ms_behind: int) -> float:
    """Estimate TPS from a "running N ms behind" warning.

    The server reports how far behind it is over roughly 20 ticks, so the
    per-tick overshoot is ms/20 on top of the nominal 50 ms tick.
    """
    tick_time = 50 + ms_behind / 20
    return clamp_tps(1000 / tick_time)


def _first_match(patterns, line: str):
    for pattern in patterns:
        match = pattern.search(line)
        if match:
            return match
    return None


def _match_ready(line: str) -> Optional[ConsoleEvent]:
    if READY_MARKER_PREFIX in line and READY_MARKER_SUFFIX in line:
        return ConsoleEvent(EventKind.READY)
    return None


def _match_join(line: str) -> Optional[ConsoleEvent]:
    match = _first_match(_JOIN_PATTERNS, line)
    if match:
        return ConsoleEvent(EventKind.PLAYER_JOIN, player=match.group(1))
    return None


def _match_leave(line: str) -> Optional[ConsoleEvent]:
    match = _first_match(_LEAVE_PATTERNS, line)
    if match:
        return ConsoleEvent(EventKind.PLAYER_LEAVE, player=match.group(1))
    return None


def _match_lag(line: str) -> Optional[ConsoleEvent]:
    match = _LAG_RE.search(line)
    if match:
        return ConsoleEvent(EventKind.LAG, value=tps_from_lag(int(match.group(1))))
    return None


def _match_tps_report(line: str) -> Optional[ConsoleEvent]:
    match = _TPS_RE.search(line)
    if match:
        return ConsoleEvent(EventKind.TPS_REPORT, value=clamp_tps(float(match.group(1))))
    return None


def _match_memory(line: str) -> Optional[ConsoleEvent]:
    match = _first_match(_MEMORY_PATTERNS, line)
    if match:
        return ConsoleEvent(EventKind.MEMORY, value=float(match.group(1)))
    return None


CONSOLE_MATCHERS: List[Callable[[str], Optional[ConsoleEvent]]] = [
    _match_ready,
    _match_join,
    _match_leave,
    _match_lag,
    _match_tps_report,
    _match_memory,
]


def parse_console_line(line: str) -> List[ConsoleEvent]:
    """Run every matcher over one console line. Never raises."""
    clean = strip_console_formatting(line)
    events = []
    for matcher in CONSOLE_MATCHERS:
        try:
            event = matcher(clean)
        except Exception as e:
            logger.debug("Console matcher %s failed on %r: %s", matcher.__name__, line, e)
            continue
        if event is not None:
            events.append(event)
    return events

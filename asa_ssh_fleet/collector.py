"""Parsers for the output of the commands in :mod:`remote_commands`."""
from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import ParseError
from .remote_commands import PROBE_COMPOSE, PROBE_ENV, PROBE_INSTANCE

_LOGGER = logging.getLogger(__name__)

_UNITS = {
    "b": 1,
    "kb": 1000,
    "kib": 1024,
    "mb": 1000 ** 2,
    "mib": 1024 ** 2,
    "gb": 1000 ** 3,
    "gib": 1024 ** 3,
    "tb": 1000 ** 4,
    "tib": 1024 ** 4,
}
_SIZE_RE = re.compile(r"^\s*([\d.]+)\s*([a-zA-Z]*)\s*$")

# Tried in order; the first hit wins.
_PLAYER_PATTERNS = (
    re.compile(r"players[:\s]+\s*(\d+)\s*/\s*(\d+)", re.IGNORECASE),
    re.compile(r"online[:\s]+\s*(\d+)\s*/\s*(\d+)", re.IGNORECASE),
    re.compile(r"játékosok[:\s]+\s*(\d+)\s*/\s*(\d+)", re.IGNORECASE),
)
_ANY_RATIO_RE = re.compile(r"(\d{1,3})\s*/\s*(\d{1,3})")
_DAY_RE = re.compile(r"Day:\s*(\d+)", re.IGNORECASE)
_VERSION_RE = re.compile(r"Server Version:\s*([\d.]+)", re.IGNORECASE)
_PING_RE = re.compile(r"Server Ping:\s*(\d+)\s*ms", re.IGNORECASE)
_DOWN_MARKERS = (
    "server is down",
    "server is not up",
    "not running",
    "stopped",
    "offline",
    "does not exist",
    "not currently running",
)
_MAX_PLAYERS_RE = re.compile(r"MAX_PLAYERS\s*=\s*(\d+)")
_MAP_NAME_RE = re.compile(r"MAP_NAME\s*=\s*([^\s\"']+)")
_DIAGNOSTIC_RE = re.compile(
    r"error|fail|denied|not found|cannot|unable|no such|exception", re.IGNORECASE
)


def _safe_int(value: Any) -> Optional[int]:
    """Return *value* as int or ``None`` when conversion fails."""

    try:
        if value is None:
            return None
        return int(value)
    except (TypeError, ValueError):
        return None


def _safe_float(value: Any) -> Optional[float]:
    """Return *value* as float or ``None`` when conversion fails."""

    try:
        if value is None:
            return None
        return float(str(value).strip().rstrip("%"))
    except (TypeError, ValueError):
        return None


# ---------- monitoring ----------
def parse_identities(output: str) -> List[str]:
    """Container names, one per line, in listing order."""
    seen: List[str] = []
    for line in output.splitlines():
        name = line.strip()
        if name and name not in seen:
            seen.append(name)
    return seen


@dataclass(frozen=True)
class ContainerStats:
    name: str
    cpu_percent: float
    memory_usage: str
    memory_percent: float


def parse_size(text: str) -> Optional[float]:
    """``"1.5GiB"`` -> bytes."""
    match = _SIZE_RE.match(text)
    if not match:
        return None
    factor = _UNITS.get(match.group(2).lower() or "b")
    number = _safe_float(match.group(1))
    if factor is None or number is None:
        return None
    return number * factor


def parse_memory_percent(usage: str) -> float:
    """Percent of the limit from docker's ``used / limit`` usage string."""
    used_text, sep, limit_text = usage.partition("/")
    if not sep:
        return 0.0
    used = parse_size(used_text)
    limit = parse_size(limit_text)
    if used is None or not limit:
        return 0.0
    return round(min(100.0, used / limit * 100.0), 2)


def parse_container_stats(output: str) -> Tuple[int, Dict[str, ContainerStats]]:
    """Parse ``nproc`` followed by ``name|cpu%|used / limit`` rows.

    CPU is normalised to the whole host (divided by the core count, capped
    at 100). Rows that do not have the expected shape are skipped.
    """
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if not lines:
        raise ParseError("empty container stats output")
    cores = _safe_int(lines[0])
    if cores is None:
        raise ParseError(f"expected core count, got {lines[0][:60]!r}")
    cores = max(cores, 1)
    rows: Dict[str, ContainerStats] = {}
    for line in lines[1:]:
        parts = line.split("|")
        if len(parts) < 3:
            _LOGGER.debug("Skipping malformed stats row: %s", line)
            continue
        name = parts[0].strip()
        cpu = _safe_float(parts[1])
        if not name or cpu is None:
            _LOGGER.debug("Skipping malformed stats row: %s", line)
            continue
        usage = parts[2].strip()
        rows[name] = ContainerStats(
            name=name,
            cpu_percent=round(min(100.0, cpu / cores), 2),
            memory_usage=usage,
            memory_percent=parse_memory_percent(usage),
        )
    return cores, rows


@dataclass(frozen=True)
class HostMetrics:
    cpu_percent: Optional[float] = None
    memory_percent: Optional[float] = None
    disk_percent: Optional[float] = None
    rx_bytes: Optional[int] = None
    tx_bytes: Optional[int] = None


def parse_host_metrics(output: str) -> HostMetrics:
    """Parse the ``key=value`` lines of the host metrics batch.

    Missing or garbled values come back as ``None`` so the caller can keep
    the previous reading for that metric only.
    """
    values: Dict[str, str] = {}
    for line in output.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip()] = value.strip()
    if not values:
        raise ParseError("host metrics output had no key=value lines")
    return HostMetrics(
        cpu_percent=_safe_float(values.get("cpu")),
        memory_percent=_safe_float(values.get("mem")),
        disk_percent=_safe_float(values.get("disk")),
        rx_bytes=_safe_int(values.get("rx")),
        tx_bytes=_safe_int(values.get("tx")),
    )


@dataclass(frozen=True)
class StatusReport:
    up: bool
    online_players: int = 0
    max_players: int = 0
    game_day: Optional[int] = None
    server_version: Optional[str] = None
    server_ping: Optional[str] = None


def parse_status(output: str) -> StatusReport:
    """Parse ``POK-manager.sh -status`` output."""
    lowered = output.lower()
    up = "server is up" in lowered and not any(m in lowered for m in _DOWN_MARKERS)
    if not up:
        return StatusReport(up=False)

    players: Optional[Tuple[int, int]] = None
    for pattern in _PLAYER_PATTERNS:
        match = pattern.search(output)
        if match:
            players = int(match.group(1)), int(match.group(2))
            break
    if players is None:
        # Bare "x / y": accept the first plausible player count.
        for match in _ANY_RATIO_RE.finditer(output):
            online, limit = int(match.group(1)), int(match.group(2))
            if online <= limit and 10 <= limit <= 200:
                players = online, limit
                break

    day = _DAY_RE.search(output)
    version = _VERSION_RE.search(output)
    ping = _PING_RE.search(output)
    return StatusReport(
        up=True,
        online_players=players[0] if players else 0,
        max_players=players[1] if players else 0,
        game_day=int(day.group(1)) if day else None,
        server_version=version.group(1).strip() if version else None,
        server_ping=f"{ping.group(1)} ms" if ping else None,
    )


# ---------- discovery ----------
def parse_env(text: str) -> Dict[str, str]:
    """Flat ``KEY=VALUE`` file; comments, blanks and malformed lines are ignored."""
    values: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):]
        key, sep, value = line.partition("=")
        if not sep or not key.strip():
            continue
        values[key.strip()] = value.strip().strip("\"'")
    return values


def env_port(values: Dict[str, str], key: str) -> int:
    port = _safe_int(values.get(key))
    if port is None or not 0 < port < 65536:
        return 0
    return port


@dataclass(frozen=True)
class ComposeInfo:
    max_players: int = 0
    map_name: Optional[str] = None


def parse_compose(text: str) -> ComposeInfo:
    """Plain text search of a compose descriptor; no YAML parsing."""
    max_players = _MAX_PLAYERS_RE.search(text)
    map_name = _MAP_NAME_RE.search(text)
    return ComposeInfo(
        max_players=int(max_players.group(1)) if max_players else 0,
        map_name=map_name.group(1) if map_name else None,
    )


@dataclass(frozen=True)
class ProbeResult:
    env: Dict[str, str] = field(default_factory=dict)
    instance_dir: Optional[str] = None
    compose: ComposeInfo = field(default_factory=ComposeInfo)


def parse_probe(output: str) -> ProbeResult:
    sections: Dict[str, List[str]] = {}
    current: Optional[str] = None
    for line in output.splitlines():
        marker = line.strip()
        if marker in (PROBE_ENV, PROBE_INSTANCE, PROBE_COMPOSE):
            current = marker
            sections[current] = []
        elif current is not None:
            sections[current].append(line)
    if PROBE_ENV not in sections or PROBE_INSTANCE not in sections:
        raise ParseError("instance probe output is missing section markers")

    instance_dir = None
    for line in sections[PROBE_INSTANCE]:
        base = posixpath.basename(line.strip().rstrip("/"))
        if base.startswith("Instance_") and len(base) > len("Instance_"):
            instance_dir = base
            break
    return ProbeResult(
        env=parse_env("\n".join(sections[PROBE_ENV])),
        instance_dir=instance_dir,
        compose=parse_compose("\n".join(sections.get(PROBE_COMPOSE, []))),
    )


def parse_dir_listing(output: str) -> List[Tuple[str, bool]]:
    """``<dir>|1`` / ``<dir>|0`` lines -> (directory, has manager script)."""
    rows: List[Tuple[str, bool]] = []
    for line in output.splitlines():
        path, sep, flag = line.strip().rpartition("|")
        if not sep or not path:
            continue
        rows.append((path, flag.strip() == "1"))
    return rows


def runtime_name(directory_name: str, instance_dir: Optional[str]) -> str:
    """Bare name the management script expects."""
    if instance_dir and instance_dir.startswith("Instance_"):
        return instance_dir[len("Instance_"):]
    if "_" in directory_name:
        tail = directory_name.rsplit("_", 1)[1]
        if tail:
            return tail
    return directory_name


def map_name(directory_name: str) -> str:
    tail = directory_name.rsplit("-", 1)[-1]
    return tail or directory_name


def extract_diagnostics(output: str, limit: int = 10) -> List[str]:
    """Lines of *output* that look like errors, most recent last."""
    hits = [line.strip() for line in output.splitlines() if _DIAGNOSTIC_RE.search(line)]
    return hits[-limit:]

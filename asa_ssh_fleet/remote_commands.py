"""Shell commands sent to the game host.

The strings here are consumed by the host's own tooling (docker, the
POK-manager.sh management script, procps) and must keep their exact shape.
"""
from __future__ import annotations

import posixpath
import shlex

from . import MANAGER_SCRIPT

DEPENDENCY_FILE = "xaudio2_9.dll"
DEPENDENCY_DIR = "ServerFiles/arkserver/ShooterGame/Binaries/Win64"
CONFIG_SUBDIR = "Saved/Config/WindowsServer"

PROBE_ENV = "@@env"
PROBE_INSTANCE = "@@instance"
PROBE_COMPOSE = "@@compose"

# ---------- privilege ----------
DOCKER_PROBE = "docker ps > /dev/null 2>&1 && echo 'ok' || echo 'error'"
DOCKER_GROUP_CHECK = r"id -nG | grep -q '\bdocker\b' && echo 'yes' || echo 'no'"
DOCKER_GROUP_GRANT = 'usermod -aG docker "$(whoami)"'
SUDO_PROBE = "sudo -n true > /dev/null 2>&1 && echo 'ok' || echo 'error'"

# ---------- monitoring ----------
CONTAINER_NAMES = (
    "docker ps --format '{{.Names}}' 2>/dev/null"
    " || sudo -n docker ps --format '{{.Names}}' 2>/dev/null"
)

CONTAINER_STATS = (
    'nproc; docker stats --no-stream --format "{{.Name}}|{{.CPUPerc}}|{{.MemUsage}}" 2>/dev/null'
)

HOST_METRICS = "; ".join(
    [
        "echo \"cpu=$(top -bn1 | grep 'Cpu(s)' | sed 's/.*, *\\([0-9.]*\\)%* id.*/\\1/' | awk '{print 100 - $1}')\"",
        "echo \"mem=$(free | grep Mem | awk '{printf \"%.2f\", ($3/$2) * 100.0}')\"",
        "echo \"disk=$(df -h / | tail -1 | awk '{print $5}' | sed 's/%//')\"",
        "awk -F'[: ]+' '/:/{if($2!=\"lo\"){rx+=$3; tx+=$11}} END{print \"rx=\" rx+0; print \"tx=\" tx+0}' /proc/net/dev",
    ]
)


def quote(value: str) -> str:
    return shlex.quote(value)


# ---------- discovery ----------
def list_instance_dirs(base_path: str) -> str:
    """One ``<dir>|1`` or ``<dir>|0`` line per subdirectory of *base_path*."""
    return (
        f"for dir in {quote(base_path.rstrip('/') or '/')}/*/; do "
        '[ -d "$dir" ] || continue; d="${dir%/}"; '
        f'if [ -f "$d/{MANAGER_SCRIPT}" ]; then echo "$d|1"; else echo "$d|0"; fi; '
        "done"
    )


def has_manager_script(directory: str) -> str:
    return f"test -f {quote(posixpath.join(directory, MANAGER_SCRIPT))} && echo 'yes' || echo 'no'"


def probe_instance(directory: str) -> str:
    """Environment file, ``Instance_*`` directory and compose descriptor in one round trip."""
    return (
        f"cd {quote(directory)} || exit 1; "
        f"echo '{PROBE_ENV}'; cat .env 2>/dev/null; echo; "
        f"echo '{PROBE_INSTANCE}'; "
        "find . -maxdepth 1 -type d -name 'Instance_*' 2>/dev/null | head -1; "
        f"echo '{PROBE_COMPOSE}'; "
        'for f in Instance_*/docker-compose-*.yaml; do [ -f "$f" ] && cat "$f" && break; done; '
        "true"
    )


# ---------- management script ----------
def manager(directory: str, flag: str, name: str, *args: str, auto_confirm: bool = False) -> str:
    """``cd <dir> && ./POK-manager.sh <flag> [args...] <name>``."""
    parts = [flag, *(quote(str(a)) for a in args), quote(name)]
    prefix = "yes | " if auto_confirm else ""
    return f"cd {quote(directory)} && {prefix}./{MANAGER_SCRIPT} {' '.join(parts)}"


def start(directory: str, name: str) -> str:
    return manager(directory, "-start", name, auto_confirm=True)


def restart(directory: str, name: str) -> str:
    return manager(directory, "-restart", name, auto_confirm=True)


def stop(directory: str, name: str) -> str:
    return manager(directory, "-stop", name)


def saveworld(directory: str, name: str) -> str:
    return manager(directory, "-saveworld", name)


def shutdown(directory: str, name: str, minutes: int) -> str:
    return manager(directory, "-shutdown", name, str(int(minutes)))


def update(directory: str, name: str) -> str:
    return manager(directory, "-update", name, auto_confirm=True)


def backup(directory: str, name: str) -> str:
    return manager(directory, "-backup", name)


def status(directory: str, name: str) -> str:
    return f"{manager(directory, '-status', name)} 2>&1"


def live_logs(directory: str, name: str) -> str:
    return f"cd {quote(directory)} && ./{MANAGER_SCRIPT} -logs -live {quote(name)}"


# ---------- files ----------
def dependency_path(directory: str) -> str:
    return posixpath.join(directory, DEPENDENCY_DIR, DEPENDENCY_FILE)


def file_exists(path: str) -> str:
    return f"test -f {quote(path)} && echo 'present' || echo 'missing'"


def make_dirs(path: str) -> str:
    return f"mkdir -p -- {quote(path)}"


def config_path(directory: str, name: str, filename: str) -> str:
    return posixpath.join(directory, f"Instance_{name}", CONFIG_SUBDIR, filename)

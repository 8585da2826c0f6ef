"""In-memory table of managed instances and their last observed runtime state."""
from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TypeVar

from .errors import UnknownInstance

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class ServerStatus(str, Enum):
    OFFLINE = "offline"
    ONLINE = "online"
    BUSY = "busy"


@dataclass(frozen=True)
class Instance:
    """Logical identity of a managed server."""

    name: str
    directory_path: str
    map_name: str = ""
    server_port: int = 0
    rcon_port: int = 0
    # Bare name the management script and the container use (Instance_<name>).
    runtime_name: str = ""

    @property
    def bare_name(self) -> str:
        return self.runtime_name or self.name


@dataclass
class RuntimeStatus:
    status: ServerStatus = ServerStatus.OFFLINE
    cpu_percent: float = 0.0
    memory_usage: str = ""
    memory_percent: float = 0.0
    disk_percent: float = 0.0
    net_rx_mbps: float = 0.0
    net_tx_mbps: float = 0.0
    host_cpu_percent: float = 0.0
    host_memory_percent: float = 0.0
    online_players: int = 0
    max_players: int = 0
    game_day: int = 0
    server_version: str = ""
    server_ping: str = ""
    # Last status seen by monitoring; restored when a busy hold is released.
    observed_status: ServerStatus = ServerStatus.OFFLINE
    busy_operation: Optional[str] = None
    shutdown_pending: bool = False

    @property
    def busy(self) -> bool:
        return self.status is ServerStatus.BUSY


@dataclass
class FleetEntry:
    instance: Instance
    status: RuntimeStatus = field(default_factory=RuntimeStatus)


@dataclass(frozen=True)
class InstanceSnapshot:
    """Point-in-time copy of an entry; safe to hand to other threads."""

    instance: Instance
    status: RuntimeStatus

    @property
    def name(self) -> str:
        return self.instance.name

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self.instance)
        data.update(asdict(self.status))
        data["status"] = self.status.status.value
        data["observed_status"] = self.status.observed_status.value
        return data


def _snapshot(entry: FleetEntry) -> InstanceSnapshot:
    return InstanceSnapshot(instance=entry.instance, status=replace(entry.status))


class InstanceRegistry:
    """Thread-safe map of instance name to :class:`FleetEntry`.

    Every read-modify-write goes through :meth:`update`, which holds the lock
    for the whole mutation so a monitoring write never interleaves with a
    lifecycle write on the same key.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entries: Dict[str, FleetEntry] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._entries

    def names(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def register(self, instance: Instance, max_players: int = 0) -> InstanceSnapshot:
        """Add *instance*; re-registering only refreshes its directory path."""
        with self._lock:
            entry = self._entries.get(instance.name)
            if entry is not None:
                entry.instance = replace(entry.instance, directory_path=instance.directory_path)
                _LOGGER.debug("Re-registered %s at %s", instance.name, instance.directory_path)
                return _snapshot(entry)
            entry = FleetEntry(instance=instance, status=RuntimeStatus(max_players=max_players))
            self._entries[instance.name] = entry
            _LOGGER.debug("Registered %s at %s", instance.name, instance.directory_path)
            return _snapshot(entry)

    def unregister(self, name: str) -> bool:
        with self._lock:
            return self._entries.pop(name, None) is not None

    def get(self, name: str) -> Optional[InstanceSnapshot]:
        with self._lock:
            entry = self._entries.get(name)
            return _snapshot(entry) if entry else None

    def require(self, name: str) -> InstanceSnapshot:
        snap = self.get(name)
        if snap is None:
            raise UnknownInstance(f"No instance named {name!r}")
        return snap

    def update(self, name: str, mutator: Callable[[FleetEntry], T]) -> T:
        """Apply *mutator* to the entry atomically and return its result."""
        with self._lock:
            entry = self._entries.get(name)
            if entry is None:
                raise UnknownInstance(f"No instance named {name!r}")
            return mutator(entry)

    def snapshot_all(self) -> List[InstanceSnapshot]:
        with self._lock:
            return [_snapshot(e) for e in self._entries.values()]

    def try_acquire(self, name: str, operation: str) -> bool:
        """Mark *name* busy for *operation*; ``False`` if something else holds it."""

        def _acquire(entry: FleetEntry) -> bool:
            status = entry.status
            if status.busy:
                return False
            status.observed_status = status.status
            status.status = ServerStatus.BUSY
            status.busy_operation = operation
            return True

        return self.update(name, _acquire)

    def release(self, name: str) -> Optional[InstanceSnapshot]:
        """Drop the busy hold and fall back to the monitoring-observed status."""

        def _release(entry: FleetEntry) -> InstanceSnapshot:
            status = entry.status
            if status.busy:
                status.status = status.observed_status
            status.busy_operation = None
            return _snapshot(entry)

        try:
            return self.update(name, _release)
        except UnknownInstance:
            # Unregistered while the operation ran.
            return None

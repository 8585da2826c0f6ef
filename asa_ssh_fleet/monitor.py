"""Fixed-interval polling of the remote host."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from . import remote_commands as rc
from .channel import RemoteChannel
from .collector import (
    ContainerStats,
    HostMetrics,
    parse_container_stats,
    parse_host_metrics,
    parse_identities,
    parse_status,
)
from .errors import ConnectionLost, ExecError, ParseError, PermissionDenied, UnknownInstance
from .events import EventBus, InstanceUpdated, StatusTransition, TransitionKind
from .privilege import PrivilegeEscalationResolver
from .rates import CounterRateCache, to_mbps
from .reconciler import DEFAULT_FLEET_PREFIX, DEFAULT_SUFFIXES, best_match
from .registry import FleetEntry, InstanceRegistry, InstanceSnapshot, ServerStatus

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class TickResult:
    """What one tick saw; ``None`` marks a query that failed."""

    identities: Optional[List[str]]
    containers: Optional[Dict[str, ContainerStats]]
    host: Optional[HostMetrics]


class MonitoringLoop:
    """Poll container identities, container stats and host metrics every *interval* seconds.

    Ticks never overlap: the next one is scheduled only after the previous
    one finished all of its channel work.
    """

    def __init__(
        self,
        channel: RemoteChannel,
        registry: InstanceRegistry,
        bus: EventBus,
        interval: float = 1.0,
        timeout: float = 5.0,
        prefix: str = DEFAULT_FLEET_PREFIX,
        suffixes: Sequence[str] = DEFAULT_SUFFIXES,
        privilege: Optional[PrivilegeEscalationResolver] = None,
        player_poll_every: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._channel = channel
        self._registry = registry
        self._bus = bus
        self._interval = interval
        self._timeout = timeout
        self._prefix = prefix
        self._suffixes = tuple(suffixes)
        self._privilege = privilege
        self._player_poll_every = player_poll_every
        self._clock = clock
        self._rates = CounterRateCache()
        self._task: Optional[asyncio.Task] = None
        self._ticks = 0
        # Names seen by at least one successful identity query.
        self._seen: Set[str] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def ticks(self) -> int:
        return self._ticks

    def reset_rates(self) -> None:
        """Drop the network counter baseline; a new session may see reset counters."""
        self._rates.reset(self._channel.host)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="asa-fleet-monitor")
        _LOGGER.info("Monitoring started (interval %.1fs)", self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        _LOGGER.info("Monitoring stopped")

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            started = loop.time()
            try:
                await self.tick()
            except ConnectionLost as err:
                _LOGGER.error("Monitoring halted: %s", err)
                return
            except Exception:
                _LOGGER.exception("Monitoring tick failed")
            elapsed = loop.time() - started
            sleep_for = self._interval - elapsed
            if sleep_for < 0:
                _LOGGER.debug("Tick took %.2fs, longer than the %.1fs interval", elapsed, self._interval)
                sleep_for = 0
            await asyncio.sleep(sleep_for)

    async def tick(self) -> TickResult:
        """Run one polling cycle and publish what changed."""
        self._ticks += 1
        results = await asyncio.gather(
            self._query("container list", rc.CONTAINER_NAMES, parse_identities),
            self._query("container stats", rc.CONTAINER_STATS, lambda out: parse_container_stats(out)[1]),
            self._query("host metrics", rc.HOST_METRICS, parse_host_metrics),
            return_exceptions=True,
        )
        for item in results:
            if isinstance(item, BaseException):
                raise item
        result = TickResult(*results)
        self._apply(result)
        if self._player_poll_due():
            await self._poll_players()
        return result

    async def _query(self, label: str, command: str, parser: Callable[[str], Any]) -> Any:
        try:
            output = await self._channel.execute(command, timeout=self._timeout)
            return parser(output.stdout)
        except (ExecError, ParseError) as err:
            _LOGGER.warning("Monitoring query '%s' failed: %s", label, err)
            return None

    def _host_fields(self, host: Optional[HostMetrics]) -> Dict[str, float]:
        if host is None:
            return {}
        fields: Dict[str, float] = {}
        if host.cpu_percent is not None:
            fields["host_cpu_percent"] = round(host.cpu_percent, 2)
        if host.memory_percent is not None:
            fields["host_memory_percent"] = round(host.memory_percent, 2)
        if host.disk_percent is not None:
            fields["disk_percent"] = host.disk_percent
        if host.rx_bytes is not None and host.tx_bytes is not None:
            rx, tx = self._rates.compute(self._channel.host, host.rx_bytes, host.tx_bytes, self._clock())
            fields["net_rx_mbps"] = to_mbps(rx)
            fields["net_tx_mbps"] = to_mbps(tx)
        return fields

    def _apply(self, result: TickResult) -> None:
        host_fields = self._host_fields(result.host)
        containers = result.containers
        identities = result.identities
        container_names = list(containers) if containers is not None else []

        for name in self._registry.names():
            snap = self._registry.get(name)
            if snap is None:
                continue
            key = snap.instance.bare_name
            running = None
            if identities is not None:
                running = best_match(key, identities, self._prefix, self._suffixes) is not None
            row = None
            if containers is not None:
                match = best_match(key, container_names, self._prefix, self._suffixes)
                row = containers[match.candidate] if match else None
            first_sighting = identities is not None and name not in self._seen

            def _mutate(entry: FleetEntry) -> Tuple[bool, Optional[StatusTransition], InstanceSnapshot]:
                status = entry.status
                before = replace(status)
                transition = None
                if running is not None:
                    observed = ServerStatus.ONLINE if running else ServerStatus.OFFLINE
                    previous = status.observed_status
                    status.observed_status = observed
                    if observed is not previous and not first_sighting:
                        transition = self._classify(entry, previous, observed)
                if not status.busy:
                    self._apply_metrics(entry, row, containers is not None, host_fields)
                    status.status = status.observed_status
                changed = status != before
                return changed, transition, InstanceSnapshot(entry.instance, replace(status))

            try:
                changed, transition, after = self._registry.update(name, _mutate)
            except UnknownInstance:
                continue
            if identities is not None:
                self._seen.add(name)
            if changed:
                self._bus.publish(InstanceUpdated(name=name, snapshot=after))
            if transition is not None:
                _LOGGER.info(
                    "%s: %s -> %s (%s)",
                    name,
                    transition.previous.value,
                    transition.current.value,
                    transition.kind.value,
                )
                self._bus.publish(transition)

    @staticmethod
    def _classify(entry: FleetEntry, previous: ServerStatus, current: ServerStatus) -> StatusTransition:
        status = entry.status
        if current is ServerStatus.ONLINE:
            kind = TransitionKind.STARTED
        elif status.shutdown_pending:
            kind = TransitionKind.SHUTDOWN_COMPLETED
        elif status.busy_operation is not None:
            kind = TransitionKind.STOPPED
        else:
            kind = TransitionKind.STOPPED_UNEXPECTEDLY
        if current is ServerStatus.OFFLINE:
            status.shutdown_pending = False
        return StatusTransition(name=entry.instance.name, previous=previous, current=current, kind=kind)

    @staticmethod
    def _apply_metrics(
        entry: FleetEntry,
        row: Optional[ContainerStats],
        have_stats: bool,
        host_fields: Dict[str, float],
    ) -> None:
        status = entry.status
        if have_stats:
            if row is not None:
                status.cpu_percent = row.cpu_percent
                status.memory_usage = row.memory_usage
                status.memory_percent = row.memory_percent
            else:
                status.cpu_percent = 0.0
                status.memory_usage = ""
                status.memory_percent = 0.0
        for field_name, value in host_fields.items():
            setattr(status, field_name, value)
        if status.observed_status is ServerStatus.OFFLINE:
            status.online_players = 0

    def _player_poll_due(self) -> bool:
        if self._privilege is None or self._player_poll_every <= 0:
            return False
        return (self._ticks - 1) % self._player_poll_every == 0

    async def _poll_players(self) -> None:
        for snap in self._registry.snapshot_all():
            if snap.status.status is not ServerStatus.ONLINE:
                continue
            instance = snap.instance
            try:
                output = await self._privilege.execute(
                    rc.status(instance.directory_path, instance.bare_name), timeout=self._timeout
                )
            except (ExecError, ParseError, PermissionDenied) as err:
                _LOGGER.debug("Status poll for %s failed: %s", instance.name, err)
                continue
            report = parse_status(output.output)

            def _mutate(entry: FleetEntry) -> Tuple[bool, InstanceSnapshot]:
                status = entry.status
                if status.busy:
                    return False, InstanceSnapshot(entry.instance, replace(status))
                before = replace(status)
                status.online_players = report.online_players if report.up else 0
                if report.max_players:
                    status.max_players = report.max_players
                if report.game_day is not None:
                    status.game_day = report.game_day
                if report.server_version is not None:
                    status.server_version = report.server_version
                if report.server_ping is not None:
                    status.server_ping = report.server_ping
                return status != before, InstanceSnapshot(entry.instance, replace(status))

            try:
                changed, after = self._registry.update(instance.name, _mutate)
            except UnknownInstance:
                continue
            if changed:
                self._bus.publish(InstanceUpdated(name=instance.name, snapshot=after))

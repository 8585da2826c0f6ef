"""Find game server instances on the remote host."""
from __future__ import annotations

import asyncio
import logging
import posixpath
from typing import List, Optional, Tuple

from . import remote_commands as rc
from .channel import RemoteChannel
from .collector import (
    ProbeResult,
    env_port,
    map_name,
    parse_dir_listing,
    parse_probe,
    runtime_name,
)
from .errors import ExecError, ParseError, VerificationFailed
from .registry import Instance, InstanceRegistry, InstanceSnapshot

_LOGGER = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 8


class FleetDiscovery:
    """One-shot scan of ``<base_path>/*/`` for directories holding the management script.

    Each hit is probed once for its ``.env`` ports, ``Instance_*`` directory
    and compose descriptor. Probes are scheduled concurrently (bounded by
    *concurrency*); the channel still runs them one at a time.
    """

    def __init__(
        self,
        channel: RemoteChannel,
        registry: InstanceRegistry,
        base_path: str,
        concurrency: int = DEFAULT_CONCURRENCY,
        timeout: Optional[float] = None,
    ) -> None:
        self._channel = channel
        self._registry = registry
        self._base_path = base_path.rstrip("/") or "/"
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._timeout = timeout

    @property
    def base_path(self) -> str:
        return self._base_path

    async def scan(self) -> List[InstanceSnapshot]:
        result = await self._channel.execute(rc.list_instance_dirs(self._base_path), timeout=self._timeout)
        rows = parse_dir_listing(result.stdout)
        directories = [path for path, has_script in rows if has_script]
        skipped = len(rows) - len(directories)
        if skipped:
            _LOGGER.debug("Ignoring %d director(ies) without %s", skipped, rc.MANAGER_SCRIPT)

        probes = await asyncio.gather(
            *(self._bounded_probe(path) for path in directories), return_exceptions=True
        )
        found: List[InstanceSnapshot] = []
        for directory, probe in zip(directories, probes):
            if isinstance(probe, BaseException):
                if not isinstance(probe, (ExecError, ParseError)):
                    raise probe
                # Ports and metadata are optional; register with defaults.
                _LOGGER.warning("Probe of %s failed, using defaults: %s", directory, probe)
                probe = ProbeResult()
            instance, max_players = self._build(directory, probe)
            found.append(self._registry.register(instance, max_players=max_players))
        _LOGGER.info("Discovered %d instance(s) under %s", len(found), self._base_path)
        return found

    async def add_by_path(self, directory: str) -> InstanceSnapshot:
        """Register a single instance directory outside of a full scan."""
        directory = directory.rstrip("/")
        check = await self._channel.execute(rc.has_manager_script(directory), timeout=self._timeout)
        if check.stdout.strip() != "yes":
            raise VerificationFailed(f"{rc.MANAGER_SCRIPT} not found in {directory}")
        try:
            probe = await self._probe(directory)
        except (ExecError, ParseError) as err:
            _LOGGER.warning("Probe of %s failed, using defaults: %s", directory, err)
            probe = ProbeResult()
        instance, max_players = self._build(directory, probe)
        snapshot = self._registry.register(instance, max_players=max_players)
        _LOGGER.info("Added instance %s from %s", instance.name, directory)
        return snapshot

    async def _bounded_probe(self, directory: str) -> ProbeResult:
        async with self._semaphore:
            return await self._probe(directory)

    async def _probe(self, directory: str) -> ProbeResult:
        result = await self._channel.execute(rc.probe_instance(directory), timeout=self._timeout)
        return parse_probe(result.stdout)

    @staticmethod
    def _build(directory: str, probe: ProbeResult) -> Tuple[Instance, int]:
        dir_name = posixpath.basename(directory)
        instance = Instance(
            name=dir_name,
            directory_path=directory,
            map_name=probe.compose.map_name or map_name(dir_name),
            server_port=env_port(probe.env, "SERVER_PORT"),
            rcon_port=env_port(probe.env, "RCON_PORT"),
            runtime_name=runtime_name(dir_name, probe.instance_dir),
        )
        return instance, probe.compose.max_players

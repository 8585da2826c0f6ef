"""Wire the channel, registry and services together for one remote host."""
from __future__ import annotations

import logging
from typing import Callable, List

import paramiko

from .channel import RemoteChannel
from .config import Settings
from .discovery import FleetDiscovery
from .events import ConnectionLostEvent, EventBus
from .game_config import GameConfigStore
from .lifecycle import LifecycleOrchestrator
from .monitor import MonitoringLoop
from .privilege import PrivilegeEscalationResolver
from .registry import InstanceRegistry, InstanceSnapshot

_LOGGER = logging.getLogger(__name__)


class Fleet:
    """Everything needed to manage the instances on one host."""

    def __init__(
        self,
        settings: Settings,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
        **lifecycle_overrides,
    ) -> None:
        self.settings = settings
        self.bus = EventBus()
        self.registry = InstanceRegistry()
        self.channel = RemoteChannel(
            client_factory=client_factory,
            connect_timeout=settings.connect_timeout,
            command_timeout=settings.command_timeout,
        )
        self.privilege = PrivilegeEscalationResolver(self.channel, settings.sudo_password)
        self.discovery = FleetDiscovery(
            self.channel,
            self.registry,
            settings.base_path,
            concurrency=settings.discovery_concurrency,
            timeout=settings.command_timeout,
        )
        self.monitor = MonitoringLoop(
            self.channel,
            self.registry,
            self.bus,
            interval=settings.interval,
            timeout=settings.monitor_timeout,
            prefix=settings.fleet_prefix,
            suffixes=settings.match_suffixes,
            privilege=self.privilege,
            player_poll_every=settings.player_poll_every,
        )
        self.lifecycle = LifecycleOrchestrator(
            self.channel,
            self.registry,
            self.bus,
            self.privilege,
            prefix=settings.fleet_prefix,
            suffixes=settings.match_suffixes,
            start_settle=settings.start_settle,
            stop_drain=settings.stop_drain,
            update_pre_wait=settings.update_pre_wait,
            update_post_wait=settings.update_post_wait,
            cluster_stagger=settings.cluster_stagger,
            command_timeout=settings.command_timeout,
            dependency_url=settings.dependency_url,
            dependency_fallback_url=settings.dependency_fallback_url,
            **lifecycle_overrides,
        )
        self.configs = GameConfigStore(self.channel, self.registry)
        self.channel.add_connection_lost_listener(self._on_connection_lost)

    def _on_connection_lost(self, reason: str) -> None:
        self.privilege.reset()
        self.bus.publish(ConnectionLostEvent(host=self.channel.host, reason=reason))

    async def connect(self) -> List[InstanceSnapshot]:
        """Open the session and discover the fleet."""
        await self.channel.connect(self.settings.credential)
        self.privilege.reset()
        self.monitor.reset_rates()
        return await self.discovery.scan()

    async def close(self) -> None:
        await self.monitor.stop()
        if self.channel.connected:
            await self.channel.disconnect()

"""Start, stop, shutdown, update and backup of individual instances."""
from __future__ import annotations

import asyncio
import logging
import posixpath
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, Optional, Sequence
from urllib import error, request

from . import __version__
from . import remote_commands as rc
from .channel import CommandResult, RemoteChannel
from .collector import extract_diagnostics, parse_identities
from .config import DEFAULT_DEPENDENCY_FALLBACK_URL, DEFAULT_DEPENDENCY_URL
from .errors import (
    DependencyMissing,
    ExecError,
    FleetError,
    OperationInProgress,
    VerificationFailed,
)
from .events import (
    EventBus,
    InstanceUpdated,
    OperationFinished,
    OperationOutput,
    OperationProgress,
    StatusTransition,
    TransitionKind,
)
from .privilege import PrivilegeEscalationResolver
from .reconciler import DEFAULT_FLEET_PREFIX, DEFAULT_SUFFIXES, best_match
from .registry import FleetEntry, Instance, InstanceRegistry, ServerStatus

_LOGGER = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]
Fetcher = Callable[[str], Awaitable[bytes]]

CLUSTER_OPERATIONS = ("start", "stop", "restart", "update", "backup")


def _download(url: str, timeout: float) -> bytes:
    req = request.Request(url, headers={"User-Agent": f"asa-ssh-fleet/{__version__}"})
    with request.urlopen(req, timeout=timeout) as resp:
        return resp.read()


async def fetch_url(url: str, timeout: float = 120.0) -> bytes:
    try:
        return await asyncio.to_thread(_download, url, timeout)
    except error.URLError as err:
        raise DependencyMissing(f"Download of {url} failed: {err.reason}") from err


class LifecycleOrchestrator:
    """Run one operation at a time per instance.

    Every operation holds the instance ``Busy`` through
    :meth:`InstanceRegistry.try_acquire` and always releases it, restoring
    the status monitoring last observed.
    """

    def __init__(
        self,
        channel: RemoteChannel,
        registry: InstanceRegistry,
        bus: EventBus,
        privilege: PrivilegeEscalationResolver,
        prefix: str = DEFAULT_FLEET_PREFIX,
        suffixes: Sequence[str] = DEFAULT_SUFFIXES,
        start_settle: float = 20.0,
        stop_drain: int = 10,
        update_pre_wait: int = 15,
        update_post_wait: int = 600,
        cluster_stagger: float = 20.0,
        command_timeout: Optional[float] = None,
        dependency_url: str = DEFAULT_DEPENDENCY_URL,
        dependency_fallback_url: Optional[str] = DEFAULT_DEPENDENCY_FALLBACK_URL,
        fetcher: Fetcher = fetch_url,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._channel = channel
        self._registry = registry
        self._bus = bus
        self._privilege = privilege
        self._prefix = prefix
        self._suffixes = tuple(suffixes)
        self._start_settle = start_settle
        self._stop_drain = stop_drain
        self._update_pre_wait = update_pre_wait
        self._update_post_wait = update_post_wait
        self._cluster_stagger = cluster_stagger
        self._timeout = command_timeout
        self._dependency_url = dependency_url
        self._dependency_fallback_url = dependency_fallback_url
        self._fetcher = fetcher
        self._sleep = sleep

    # ---------- operations ----------
    async def start(self, name: str) -> CommandResult:
        async with self._hold(name, "start") as instance:
            return await self._start_sequence(instance, "start")

    async def restart(self, name: str) -> CommandResult:
        async with self._hold(name, "restart") as instance:
            return await self._start_sequence(instance, "restart")

    async def stop(self, name: str) -> CommandResult:
        async with self._hold(name, "stop") as instance:
            return await self._stop_sequence(instance, "stop")

    async def shutdown(self, name: str, minutes: int) -> CommandResult:
        """Save, then ask the server to shut itself down after *minutes*.

        Returns as soon as the request is accepted; monitoring reports the
        eventual stop as a completed shutdown.
        """
        if minutes < 0:
            raise ValueError("minutes must not be negative")
        async with self._hold(name, "shutdown") as instance:
            await self._save_and_drain(instance, "shutdown")
            self._set_shutdown_pending(name, True)
            try:
                result = await self._privileged(
                    instance, "shutdown", rc.shutdown(instance.directory_path, instance.bare_name, minutes)
                )
            except BaseException:
                self._set_shutdown_pending(name, False)
                raise
            self._progress(instance, "shutdown", f"Shutdown scheduled in {minutes} minute(s)")
            return result

    async def update(self, name: str, immediate: bool = False) -> CommandResult:
        """Stop, update with a live transcript, start again.

        *immediate* skips the waits around the update step.
        """
        async with self._hold(name, "update") as instance:
            await self._stop_sequence(instance, "update")
            if not immediate:
                await self._countdown(instance, "update", self._update_pre_wait, "Update begins in")
            result = await self._streamed(instance, "update", rc.update(instance.directory_path, instance.bare_name))
            if not result.ok:
                raise ExecError(
                    f"Update of {instance.name} exited with status {result.exit_status}",
                    exit_status=result.exit_status,
                    stderr="\n".join(extract_diagnostics(result.stdout)),
                )
            if not immediate:
                await self._countdown(instance, "update", self._update_post_wait, "Starting server in")
            await self._start_sequence(instance, "update")
            return result

    async def backup(self, name: str) -> CommandResult:
        async with self._hold(name, "backup") as instance:
            result = await self._streamed(instance, "backup", rc.backup(instance.directory_path, instance.bare_name))
            if not result.ok:
                raise ExecError(
                    f"Backup of {instance.name} exited with status {result.exit_status}",
                    exit_status=result.exit_status,
                    stderr="\n".join(extract_diagnostics(result.stdout)),
                )
            return result

    async def stream_logs(self, name: str, on_line: Callable[[str], None]) -> CommandResult:
        """Follow the server log until the calling task is cancelled.

        Does not take the busy hold; it only reads.
        """
        instance = self._registry.require(name).instance
        if not await self._is_running(instance):
            raise VerificationFailed(f"{name} is not running; no live log available")
        return await self._privilege.stream(rc.live_logs(instance.directory_path, instance.bare_name), on_line)

    async def run_for_all(
        self,
        operation: str,
        names: Optional[Iterable[str]] = None,
        stagger: Optional[float] = None,
    ) -> Dict[str, Optional[FleetError]]:
        """Run *operation* on every instance in turn; a failure does not stop the rest."""
        if operation not in CLUSTER_OPERATIONS:
            raise ValueError(f"Unsupported cluster operation: {operation}")
        targets = list(names) if names is not None else self._registry.names()
        delay = self._cluster_stagger if stagger is None else stagger
        outcome: Dict[str, Optional[FleetError]] = {}
        for index, target in enumerate(targets):
            if index and delay > 0:
                await self._sleep(delay)
            try:
                await getattr(self, operation)(target)
            except FleetError as err:
                outcome[target] = err
            else:
                outcome[target] = None
        failed = [n for n, err in outcome.items() if err is not None]
        _LOGGER.info(
            "Cluster %s finished: %d ok, %d failed", operation, len(outcome) - len(failed), len(failed)
        )
        return outcome

    async def ensure_dependency(self, instance: Instance) -> bool:
        """Install the runtime DLL if it is missing; ``True`` when it was installed now."""
        path = rc.dependency_path(instance.directory_path)
        check = await self._channel.execute(rc.file_exists(path), timeout=self._timeout)
        if check.stdout.strip() == "present":
            return False
        self._progress(instance, "dependency", f"Installing {rc.DEPENDENCY_FILE}")
        data = await self._download_dependency()
        try:
            await self._channel.execute(rc.make_dirs(posixpath.dirname(path)), timeout=self._timeout, check=True)
            await self._channel.write_file(path, data)
        except ExecError as err:
            raise DependencyMissing(f"Could not install {rc.DEPENDENCY_FILE} at {path}: {err}") from err
        _LOGGER.info("Installed %s for %s", rc.DEPENDENCY_FILE, instance.name)
        return True

    async def _download_dependency(self) -> bytes:
        urls = [self._dependency_url]
        if self._dependency_fallback_url and self._dependency_fallback_url != self._dependency_url:
            urls.append(self._dependency_fallback_url)
        reason = "returned no data"
        for url in urls:
            try:
                data = await self._fetcher(url)
            except (DependencyMissing, OSError, ValueError) as err:
                _LOGGER.warning("Download of %s from %s failed: %s", rc.DEPENDENCY_FILE, url, err)
                reason = f"failed: {err}"
                continue
            if data:
                return data
            _LOGGER.warning("Download of %s from %s returned no data", rc.DEPENDENCY_FILE, url)
            reason = "returned no data"
        raise DependencyMissing(f"Download of {rc.DEPENDENCY_FILE} {reason}")

    # ---------- steps ----------
    async def _start_sequence(self, instance: Instance, operation: str) -> CommandResult:
        await self.ensure_dependency(instance)
        build = rc.restart if operation == "restart" else rc.start
        result = await self._privileged(instance, operation, build(instance.directory_path, instance.bare_name))
        await self._countdown(instance, operation, int(self._start_settle), "Verifying start in")
        await self._verify_started(instance, result)
        return result

    async def _stop_sequence(self, instance: Instance, operation: str) -> CommandResult:
        await self._save_and_drain(instance, operation)
        result = await self._privileged(instance, operation, rc.stop(instance.directory_path, instance.bare_name))
        if not result.ok:
            raise ExecError(
                f"Stop of {instance.name} exited with status {result.exit_status}",
                exit_status=result.exit_status,
                stderr=result.stderr,
            )
        self._observe(instance.name, ServerStatus.OFFLINE, TransitionKind.STOPPED)
        return result

    async def _save_and_drain(self, instance: Instance, operation: str) -> None:
        try:
            await self._privileged(instance, operation, rc.saveworld(instance.directory_path, instance.bare_name))
        except ExecError as err:
            # Nothing to save when the server is already down.
            _LOGGER.warning("Saving world for %s failed: %s", instance.name, err)
        await self._countdown(instance, operation, self._stop_drain, "Stopping in")

    async def _verify_started(self, instance: Instance, start_result: CommandResult) -> None:
        try:
            running = await self._is_running(instance)
        except ExecError as err:
            running = False
            _LOGGER.warning("Could not list containers after starting %s: %s", instance.name, err)
        if running:
            self._observe(instance.name, ServerStatus.ONLINE, TransitionKind.STARTED)
            self._progress(instance, "verify", f"{instance.name} is running")
            return
        self._observe(instance.name, ServerStatus.OFFLINE, None)
        diagnostics = extract_diagnostics(start_result.output)
        raise VerificationFailed(
            f"{instance.name} did not come up after start", diagnostics=diagnostics
        )

    async def _is_running(self, instance: Instance) -> bool:
        result = await self._channel.execute(rc.CONTAINER_NAMES, timeout=self._timeout)
        identities = parse_identities(result.stdout)
        return best_match(instance.bare_name, identities, self._prefix, self._suffixes) is not None

    async def _privileged(self, instance: Instance, operation: str, command: str) -> CommandResult:
        result = await self._privilege.execute(command, timeout=self._timeout)
        for line in result.output.splitlines():
            if line.strip():
                self._bus.publish(OperationOutput(name=instance.name, operation=operation, line=line))
        return result

    async def _streamed(self, instance: Instance, operation: str, command: str) -> CommandResult:
        def _on_line(line: str) -> None:
            self._bus.publish(OperationOutput(name=instance.name, operation=operation, line=line))

        return await self._privilege.stream(command, _on_line)

    async def _countdown(self, instance: Instance, operation: str, seconds: int, message: str) -> None:
        for remaining in range(int(seconds), 0, -1):
            self._progress(instance, operation, f"{message} {remaining}s", remaining)
            await self._sleep(1)

    # ---------- registry helpers ----------
    @asynccontextmanager
    async def _hold(self, name: str, operation: str) -> AsyncIterator[Instance]:
        instance = self._registry.require(name).instance
        if not self._registry.try_acquire(name, operation):
            busy = self._registry.get(name)
            current = busy.status.busy_operation if busy else None
            raise OperationInProgress(f"{name} is busy with {current or 'another operation'}")
        _LOGGER.info("%s: %s started", name, operation)
        self._publish_state(name)
        self._progress(instance, operation, f"{operation} started")
        error_text: Optional[str] = None
        try:
            yield instance
        except asyncio.CancelledError:
            error_text = "cancelled"
            raise
        except Exception as err:
            error_text = str(err) or type(err).__name__
            _LOGGER.error("%s: %s failed: %s", name, operation, error_text)
            raise
        finally:
            released = self._registry.release(name)
            if released is not None:
                self._bus.publish(InstanceUpdated(name=name, snapshot=released))
            self._bus.publish(
                OperationFinished(name=name, operation=operation, ok=error_text is None, error=error_text)
            )
        _LOGGER.info("%s: %s finished", name, operation)

    def _observe(self, name: str, current: ServerStatus, kind: Optional[TransitionKind]) -> None:
        """Record an outcome we verified ourselves, publishing the transition once."""

        def _mutate(entry: FleetEntry) -> Optional[ServerStatus]:
            previous = entry.status.observed_status
            entry.status.observed_status = current
            if current is ServerStatus.OFFLINE:
                entry.status.shutdown_pending = False
                entry.status.cpu_percent = 0.0
                entry.status.memory_usage = ""
                entry.status.memory_percent = 0.0
                entry.status.online_players = 0
            return previous

        previous = self._registry.update(name, _mutate)
        if kind is not None and previous is not current:
            self._bus.publish(StatusTransition(name=name, previous=previous, current=current, kind=kind))

    def _publish_state(self, name: str) -> None:
        snapshot = self._registry.get(name)
        if snapshot is not None:
            self._bus.publish(InstanceUpdated(name=name, snapshot=snapshot))

    def _set_shutdown_pending(self, name: str, pending: bool) -> None:
        def _mutate(entry: FleetEntry) -> None:
            entry.status.shutdown_pending = pending

        self._registry.update(name, _mutate)

    def _progress(self, instance: Instance, operation: str, message: str, remaining: Optional[int] = None) -> None:
        self._bus.publish(
            OperationProgress(name=instance.name, operation=operation, message=message, remaining=remaining)
        )

"""Decide how privileged commands are issued on the remote host.

Resolution walks a fixed chain and stops at the first mode that works:

``DIRECT``
    the session user can already talk to docker.
group grant
    add the user to the ``docker`` group (once per connection), re-probe.
``SUDO``
    ``sudo -n`` works without a password.
``SUDO_PASSWORD``
    a cached sudo password is piped to ``sudo -S``.

The chosen mode is cached for the connection. Only ``DIRECT`` is trusted as
is; an elevated mode is re-probed on every operation since a granted group
can start working mid-session.
"""
from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Callable, List, Optional

from . import remote_commands as rc
from .channel import CommandResult, RemoteChannel
from .errors import ExecError, PermissionDenied

_LOGGER = logging.getLogger(__name__)

_DENIED_RE = re.compile(
    r"permission denied|a password is required|no tty present|incorrect password"
    r"|not in the sudoers|sorry, try again|must be run as root",
    re.IGNORECASE,
)


class PrivilegeMode(str, Enum):
    DIRECT = "direct"
    SUDO = "sudo"
    SUDO_PASSWORD = "sudo_password"


def looks_denied(output: str) -> bool:
    return bool(_DENIED_RE.search(output))


class PrivilegeEscalationResolver:
    def __init__(self, channel: RemoteChannel, sudo_password: Optional[str] = None) -> None:
        self._channel = channel
        self._sudo_password = sudo_password or None
        self._mode: Optional[PrivilegeMode] = None
        self._grant_attempted = False
        channel.add_secret(self._sudo_password)

    @property
    def mode(self) -> Optional[PrivilegeMode]:
        """Cached decision, ``None`` until the first resolution."""
        return self._mode

    def reset(self) -> None:
        """Forget the cached decision, e.g. after reconnecting."""
        self._mode = None
        self._grant_attempted = False

    async def resolve(self) -> PrivilegeMode:
        if self._mode is PrivilegeMode.DIRECT:
            return self._mode

        if await self._probe(rc.DOCKER_PROBE):
            return self._remember(PrivilegeMode.DIRECT)

        if not self._grant_attempted:
            self._grant_attempted = True
            if await self._grant_group() and await self._probe(rc.DOCKER_PROBE):
                return self._remember(PrivilegeMode.DIRECT)

        for mode in self._elevated_modes():
            if await self._probe(self._elevation_probe(mode)):
                return self._remember(mode)

        self._mode = None
        raise PermissionDenied("docker is not usable and no sudo strategy succeeded")

    def wrap(self, command: str, mode: PrivilegeMode) -> str:
        if mode is PrivilegeMode.DIRECT:
            return command
        if mode is PrivilegeMode.SUDO:
            return f"sudo -n bash -c {rc.quote(command)}"
        if not self._sudo_password:
            raise PermissionDenied("no sudo password available")
        return (
            f"printf '%s\\n' {rc.quote(self._sudo_password)} | "
            f"sudo -S -p '' bash -c {rc.quote(command)}"
        )

    async def execute(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        """Run *command* with the resolved mode, escalating further if it is refused.

        Raises :class:`PermissionDenied` once every strategy was refused.
        """
        first = await self.resolve()
        last: Optional[CommandResult] = None
        for mode in self._chain_from(first):
            try:
                result = await self._channel.execute(self.wrap(command, mode), timeout=timeout)
            except ExecError as err:
                if not looks_denied(err.stderr or str(err)):
                    raise
                _LOGGER.warning("Command refused in %s mode, escalating", mode.value)
                continue
            if looks_denied(result.output) and not result.ok:
                _LOGGER.warning("Command refused in %s mode, escalating", mode.value)
                last = result
                continue
            if mode is not first:
                self._remember(mode)
            return result
        detail = last.output.strip()[:200] if last else ""
        raise PermissionDenied(f"Every privilege strategy was refused {detail}".strip())

    async def stream(
        self,
        command: str,
        on_line: Callable[[str], None],
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Stream *command* like :meth:`execute`, re-running it with the next mode if refused."""
        first = await self.resolve()
        last: Optional[CommandResult] = None
        for mode in self._chain_from(first):
            result = await self._channel.stream(self.wrap(command, mode), on_line, timeout=timeout)
            if not result.ok and looks_denied(result.stdout):
                _LOGGER.warning("Streamed command refused in %s mode, escalating", mode.value)
                last = result
                continue
            if mode is not first:
                self._remember(mode)
            return result
        detail = last.stdout.strip()[:200] if last else ""
        raise PermissionDenied(f"Every privilege strategy was refused {detail}".strip())

    def _elevated_modes(self) -> List[PrivilegeMode]:
        modes = [PrivilegeMode.SUDO]
        if self._sudo_password:
            modes.append(PrivilegeMode.SUDO_PASSWORD)
        return modes

    def _chain_from(self, mode: PrivilegeMode) -> List[PrivilegeMode]:
        chain = [PrivilegeMode.DIRECT, *self._elevated_modes()]
        return chain[chain.index(mode):] if mode in chain else [mode]

    def _elevation_probe(self, mode: PrivilegeMode) -> str:
        if mode is PrivilegeMode.SUDO:
            return rc.SUDO_PROBE
        return f"{self.wrap('docker ps > /dev/null 2>&1', mode)} && echo 'ok' || echo 'error'"

    async def _probe(self, command: str) -> bool:
        try:
            result = await self._channel.execute(command)
        except ExecError as err:
            _LOGGER.debug("Privilege probe failed: %s", err)
            return False
        return result.stdout.strip().endswith("ok")

    async def _grant_group(self) -> bool:
        """Add the session user to the docker group; ``True`` if it is a member afterwards."""
        check = await self._channel.execute(rc.DOCKER_GROUP_CHECK)
        if check.stdout.strip() == "yes":
            return True
        for mode in self._elevated_modes():
            command = f"{self.wrap(rc.DOCKER_GROUP_GRANT, mode)} && echo 'ok' || echo 'error'"
            if await self._probe(command):
                _LOGGER.info("Added %s to the docker group", self._user())
                return True
        _LOGGER.debug("Could not add %s to the docker group", self._user())
        return False

    def _user(self) -> str:
        credential = self._channel.credential
        return credential.username if credential else "session user"

    def _remember(self, mode: PrivilegeMode) -> PrivilegeMode:
        if mode is not self._mode:
            _LOGGER.info("Privilege mode for %s: %s", self._channel.host or "host", mode.value)
        self._mode = mode
        return mode

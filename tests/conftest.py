"""Shared fakes for the fleet tests; no SSH host is needed."""
from __future__ import annotations

import asyncio
import base64
import shlex
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union

import pytest

from asa_ssh_fleet.channel import CommandResult
from asa_ssh_fleet.config import ConnectionCredential
from asa_ssh_fleet.errors import ExecError
from asa_ssh_fleet.events import EventBus
from asa_ssh_fleet.registry import Instance, InstanceRegistry


# ------------------------------------------------------------------ #
# Channel-level fake
# ------------------------------------------------------------------ #

@dataclass
class Rule:
    needle: str
    stdout: Union[str, Callable[[str], str]] = ""
    exit_status: int = 0
    stderr: str = ""
    error: Optional[BaseException] = None
    lines: Optional[List[str]] = None
    times: Optional[int] = None


class FakeChannel:
    """Answers commands from scripted rules; the most recently added match wins."""

    def __init__(self, host: str = "game-host") -> None:
        self.host = host
        self.credential = ConnectionCredential(host=host, username="ark", password="pw")
        self.connected = True
        self.commands: List[str] = []
        self.files: Dict[str, bytes] = {}
        self.secrets: List[str] = []
        self._rules: List[Rule] = []

    def on(self, needle: str, stdout="", exit_status: int = 0, stderr: str = "",
           error: Optional[BaseException] = None, lines: Optional[List[str]] = None,
           times: Optional[int] = None) -> None:
        self._rules.append(Rule(needle, stdout, exit_status, stderr, error, lines, times))

    def _lookup(self, command: str) -> Optional[Rule]:
        for rule in reversed(self._rules):
            if rule.needle in command and (rule.times is None or rule.times > 0):
                if rule.times is not None:
                    rule.times -= 1
                return rule
        return None

    def count(self, needle: str) -> int:
        return sum(1 for c in self.commands if needle in c)

    def add_secret(self, secret: Optional[str]) -> None:
        if secret:
            self.secrets.append(secret)

    def mask(self, text: str) -> str:
        for secret in self.secrets:
            text = text.replace(secret, "***")
        return text

    async def execute(self, command: str, timeout=None, check: bool = False) -> CommandResult:
        self.commands.append(command)
        await asyncio.sleep(0)
        rule = self._lookup(command)
        if rule is None:
            return CommandResult(command=command, stdout="", stderr="", exit_status=0)
        if rule.error is not None:
            raise rule.error
        stdout = rule.stdout(command) if callable(rule.stdout) else rule.stdout
        result = CommandResult(command=command, stdout=stdout, stderr=rule.stderr, exit_status=rule.exit_status)
        if result.exit_status != 0 and (check or not result.stdout.strip()):
            raise ExecError("scripted failure", command=command, exit_status=result.exit_status,
                            stderr=result.stderr)
        return result

    async def stream(self, command: str, on_line, timeout=None) -> CommandResult:
        self.commands.append(command)
        rule = self._lookup(command)
        if rule is not None and rule.error is not None:
            raise rule.error
        lines = list(rule.lines or []) if rule else []
        for line in lines:
            await asyncio.sleep(0)
            on_line(line)
        status = rule.exit_status if rule else 0
        return CommandResult(command=command, stdout="\n".join(lines), stderr="", exit_status=status)

    async def read_file(self, path: str, timeout=None) -> bytes:
        self.commands.append(f"read {path}")
        if path not in self.files:
            raise ExecError(f"Unable to read {path}: No such file or directory")
        return self.files[path]

    async def write_file(self, path: str, data, timeout=None) -> None:
        self.commands.append(f"write {path}")
        self.files[path] = data.encode("utf-8") if isinstance(data, str) else bytes(data)


# ------------------------------------------------------------------ #
# paramiko-level fake
# ------------------------------------------------------------------ #

class FakeTransport:
    def __init__(self) -> None:
        self.active = True

    def is_active(self) -> bool:
        return self.active


class FakeChannelFile:
    def __init__(self, channel: "FakeSSHChannel", data: bytes = b"") -> None:
        self.channel = channel
        self._data = data
        self.written = b""

    def read(self) -> bytes:
        return self._data

    def write(self, data: bytes) -> None:
        self.written += data

    def flush(self) -> None:
        pass


class FakeSSHChannel:
    def __init__(self, client: "FakeSSHClient", command: str, get_pty: bool) -> None:
        self.client = client
        self.command = command
        self.get_pty = get_pty
        self.exit_status = 0
        self.closed = False
        self.stdin = FakeChannelFile(self)
        self.stdout = FakeChannelFile(self)
        self.stderr = FakeChannelFile(self)
        self._pending = b""

    def shutdown_write(self) -> None:
        # stdin is complete: the command can run now.
        self.client.run(self)

    def recv_exit_status(self) -> int:
        return self.exit_status

    # streaming API
    def recv_ready(self) -> bool:
        return bool(self._pending)

    def recv(self, size: int) -> bytes:
        chunk, self._pending = self._pending[:size], self._pending[size:]
        return chunk

    def exit_status_ready(self) -> bool:
        return not self._pending

    def close(self) -> None:
        self.closed = True


class FakeSSHClient:
    """Enough of ``paramiko.SSHClient`` to drive :class:`RemoteChannel`.

    Understands the base64 file transfer commands against an in-memory
    filesystem; everything else is answered by ``handler``.
    """

    def __init__(self) -> None:
        self.transport = FakeTransport()
        self.connect_kwargs: Dict = {}
        self.fs: Dict[str, bytes] = {}
        self.commands: List[str] = []
        self.handler: Optional[Callable[[str], tuple]] = None
        self.stream_output: bytes = b""
        self.fail_with: Optional[BaseException] = None
        self.gate: Optional[threading.Event] = None
        self.active_calls = 0
        self.max_active_calls = 0
        self.closed = False
        self._lock = threading.Lock()

    def set_missing_host_key_policy(self, policy) -> None:
        self.policy = policy

    def connect(self, **kwargs) -> None:
        self.connect_kwargs = kwargs

    def get_transport(self) -> FakeTransport:
        return self.transport

    def close(self) -> None:
        self.closed = True

    def exec_command(self, command: str, timeout=None, get_pty: bool = False):
        with self._lock:
            self.active_calls += 1
            self.max_active_calls = max(self.max_active_calls, self.active_calls)
        try:
            self.commands.append(command)
            if self.gate is not None:
                self.gate.wait(5)
            if self.fail_with is not None:
                self.transport.active = False
                raise self.fail_with
            chan = FakeSSHChannel(self, command, get_pty)
            if get_pty:
                chan._pending = self.stream_output
            elif not command.startswith("base64 -d"):
                self.run(chan)
            return chan.stdin, chan.stdout, chan.stderr
        finally:
            with self._lock:
                self.active_calls -= 1

    def run(self, chan: FakeSSHChannel) -> None:
        tokens = shlex.split(chan.command)
        if tokens[:2] == ["base64", "-d"]:
            tmp, final = tokens[3], tokens[9]
            self.fs[tmp] = base64.b64decode(chan.stdin.written)
            self.fs[final] = self.fs.pop(tmp)
            return
        if tokens[:2] == ["base64", "-w0"]:
            path = tokens[3]
            if path not in self.fs:
                chan.stderr._data = f"base64: {path}: No such file or directory\n".encode()
                chan.exit_status = 1
                return
            chan.stdout._data = base64.b64encode(self.fs[path])
            return
        if self.handler is not None:
            stdout, stderr, status = self.handler(chan.command)
            chan.stdout._data = stdout.encode()
            chan.stderr._data = stderr.encode()
            chan.exit_status = status


# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #

@pytest.fixture
def fake_channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def registry() -> InstanceRegistry:
    return InstanceRegistry()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def events(bus: EventBus) -> list:
    received: list = []
    bus.add_listener(received.append)
    return received


def make_instance(name: str = "asa_center", runtime: str = "center", path: Optional[str] = None) -> Instance:
    return Instance(
        name=name,
        directory_path=path or f"/home/ark/asa_server/{name}",
        map_name=runtime,
        runtime_name=runtime,
    )


@pytest.fixture
def credential() -> ConnectionCredential:
    return ConnectionCredential(host="game-host", username="ark", password="s3cret")

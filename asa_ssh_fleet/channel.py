"""Single SSH session shared by every component.

The transport does not multiplex concurrent commands safely, so every remote
exchange goes through one ``asyncio.Lock``. Waiters are served first come,
first served. Blocking paramiko calls run on worker threads.
"""
from __future__ import annotations

import asyncio
import base64
import logging
import shlex
import socket
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

import paramiko

from .config import ConnectionCredential
from .errors import ConnectError, ConnectionLost, ExecError

_LOGGER = logging.getLogger(__name__)

_EOF = object()
_STREAM_POLL = 0.1


@dataclass(frozen=True)
class CommandResult:
    command: str
    stdout: str
    stderr: str
    exit_status: int

    @property
    def ok(self) -> bool:
        return self.exit_status == 0

    @property
    def output(self) -> str:
        """stdout followed by stderr, the way a terminal would show it."""
        if self.stderr and self.stdout:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr


class RemoteChannel:
    """Serialized command execution over one paramiko session."""

    def __init__(
        self,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
        connect_timeout: float = 30.0,
        command_timeout: float = 60.0,
    ) -> None:
        self._client_factory = client_factory
        self._connect_timeout = connect_timeout
        self._command_timeout = command_timeout
        self._lock = asyncio.Lock()
        self._client: Optional[paramiko.SSHClient] = None
        self._credential: Optional[ConnectionCredential] = None
        self._connected = False
        self._lost_listeners: List[Callable[[str], None]] = []
        self._secrets: List[str] = []

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def host(self) -> str:
        return self._credential.host if self._credential else ""

    @property
    def credential(self) -> Optional[ConnectionCredential]:
        return self._credential

    def add_connection_lost_listener(self, listener: Callable[[str], None]) -> Callable[[], None]:
        """Call *listener(reason)* once per dropped session."""
        self._lost_listeners.append(listener)

        def _remove() -> None:
            if listener in self._lost_listeners:
                self._lost_listeners.remove(listener)

        return _remove

    def add_secret(self, secret: Optional[str]) -> None:
        """Never write *secret* to the log."""
        if secret and secret not in self._secrets:
            self._secrets.append(secret)

    def mask(self, text: str) -> str:
        for secret in self._secrets:
            text = text.replace(secret, "***")
        return text

    # ---------- session ----------
    async def connect(self, credential: ConnectionCredential) -> None:
        async with self._lock:
            await asyncio.to_thread(self._close_client)
            try:
                client = await asyncio.to_thread(self._open_client, credential)
            except paramiko.AuthenticationException as err:
                raise ConnectError(f"Authentication failed for {credential.username}@{credential.host}") from err
            except (socket.timeout, TimeoutError) as err:
                raise ConnectError(f"Timed out connecting to {credential.host}:{credential.port}") from err
            except (paramiko.SSHException, OSError) as err:
                raise ConnectError(f"Unable to connect to {credential.host}:{credential.port}: {err}") from err
            self._client = client
            self._credential = credential
            self._connected = True
            self.add_secret(credential.password)
        _LOGGER.info("Connected to %s@%s:%s", credential.username, credential.host, credential.port)

    def _open_client(self, credential: ConnectionCredential) -> paramiko.SSHClient:
        ssh = self._client_factory()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        ssh.connect(
            hostname=credential.host,
            port=credential.port,
            username=credential.username,
            password=None if credential.uses_key else credential.password,
            key_filename=credential.key_path,
            timeout=self._connect_timeout,
            banner_timeout=self._connect_timeout,
            auth_timeout=self._connect_timeout,
            look_for_keys=False,
            allow_agent=False,
        )
        return ssh

    def _close_client(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            try:
                client.close()
            except Exception as err:  # pragma: no cover - close is best effort
                _LOGGER.debug("Ignoring error while closing SSH client: %s", err)

    async def disconnect(self) -> None:
        async with self._lock:
            self._connected = False
            await asyncio.to_thread(self._close_client)
        _LOGGER.info("Disconnected from %s", self.host)

    def _transport_alive(self) -> bool:
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def _mark_lost(self, reason: str) -> None:
        if not self._connected:
            return
        self._connected = False
        self._close_client()
        _LOGGER.error("SSH connection to %s lost: %s", self.host, reason)
        for listener in list(self._lost_listeners):
            try:
                listener(reason)
            except Exception:  # pragma: no cover - consumer bug
                _LOGGER.exception("Connection-lost listener failed")

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise ConnectionLost("SSH session is not connected")
        if not self._transport_alive():
            self._mark_lost("transport is no longer active")
            raise ConnectionLost("SSH session dropped")

    # ---------- commands ----------
    async def execute(
        self,
        command: str,
        timeout: Optional[float] = None,
        check: bool = False,
    ) -> CommandResult:
        """Run *command* and return its result.

        Raises :class:`ExecError` when the command exits non-zero without any
        stdout, or on any non-zero exit when *check* is set.
        """
        result = await self._run(command, self._exec_blocking, command, timeout, None)
        if result.exit_status != 0 and (check or not result.stdout.strip()):
            raise ExecError(
                f"Command exited with status {result.exit_status}: "
                f"{(result.stderr or result.stdout).strip()[:200]}",
                command=self.mask(command),
                exit_status=result.exit_status,
                stderr=result.stderr,
            )
        return result

    async def read_file(self, path: str, timeout: Optional[float] = None) -> bytes:
        command = f"base64 -w0 -- {shlex.quote(path)}"
        result = await self._run(command, self._exec_blocking, command, timeout, None)
        if not result.ok:
            raise ExecError(
                f"Unable to read {path}: {result.stderr.strip() or 'exit status ' + str(result.exit_status)}",
                command=command,
                exit_status=result.exit_status,
                stderr=result.stderr,
            )
        try:
            return base64.b64decode("".join(result.stdout.split()), validate=True)
        except ValueError as err:
            raise ExecError(f"Corrupt transfer while reading {path}", command=command) from err

    async def write_file(self, path: str, data: Union[bytes, str], timeout: Optional[float] = None) -> None:
        """Atomically replace *path*: write a sibling temp file, then rename it."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        payload = base64.b64encode(data)
        tmp = f"{path}.tmp-{uuid.uuid4().hex[:12]}"
        qtmp, qpath = shlex.quote(tmp), shlex.quote(path)
        command = (
            f"base64 -d > {qtmp} && mv -f -- {qtmp} {qpath} "
            f"|| {{ rm -f -- {qtmp}; exit 1; }}"
        )
        result = await self._run(command, self._exec_blocking, command, timeout, payload)
        if not result.ok:
            raise ExecError(
                f"Unable to write {path}: {result.stderr.strip() or 'exit status ' + str(result.exit_status)}",
                command=command,
                exit_status=result.exit_status,
                stderr=result.stderr,
            )
        _LOGGER.debug("Wrote %d bytes to %s", len(data), path)

    async def stream(
        self,
        command: str,
        on_line: Callable[[str], None],
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run *command* in a pty and hand each output line to *on_line* as it arrives.

        Cancelling the awaiting task closes the remote channel after the
        current read; the session itself stays usable.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        stop = threading.Event()
        transcript: List[str] = []

        def _emit(item: object) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, item)

        async with self._lock:
            self._ensure_connected()
            _LOGGER.debug("Streaming: %s", self.mask(command))
            fut = asyncio.ensure_future(
                asyncio.to_thread(self._stream_blocking, command, _emit, stop, timeout)
            )
            try:
                while True:
                    item = await queue.get()
                    if item is _EOF:
                        break
                    transcript.append(item)
                    on_line(item)
                exit_status = await fut
            except asyncio.CancelledError:
                stop.set()
                await asyncio.wait([fut])
                self._absorb(fut, command)
                raise
            except Exception as err:
                stop.set()
                await asyncio.wait([fut])
                self._absorb(fut, command)
                raise self._translate(err, command) from err
        return CommandResult(command=command, stdout="\n".join(transcript), stderr="", exit_status=exit_status)

    async def _run(self, command: str, func: Callable, *args):
        async with self._lock:
            self._ensure_connected()
            _LOGGER.debug("Executing: %s", self.mask(command))
            fut = asyncio.ensure_future(asyncio.to_thread(func, *args))
            try:
                return await asyncio.shield(fut)
            except asyncio.CancelledError:
                # The exchange cannot be interrupted mid-command; hold the
                # channel until it completes and discard the result.
                await asyncio.wait([fut])
                self._absorb(fut, command)
                raise
            except Exception as err:
                raise self._translate(err, command) from err

    def _absorb(self, fut: asyncio.Future, command: str) -> None:
        """Inspect an abandoned exchange so a dropped session is still noticed."""
        if fut.cancelled():
            return
        err = fut.exception()
        if err is not None:
            translated = self._translate(err, command)
            _LOGGER.debug("Discarded failure of abandoned command: %s", translated)

    def _translate(self, err: BaseException, command: str) -> Exception:
        masked = self.mask(command)
        if isinstance(err, (ExecError, ConnectionLost)):
            return err
        if isinstance(err, (socket.timeout, TimeoutError)):
            return ExecError(f"Command timed out: {masked[:120]}", command=masked)
        if isinstance(err, (paramiko.SSHException, EOFError, OSError)):
            if isinstance(err, (EOFError, ConnectionError)) or not self._transport_alive():
                self._mark_lost(str(err) or type(err).__name__)
                return ConnectionLost(f"SSH session dropped: {err}")
            return ExecError(f"SSH command failed: {err}", command=masked)
        if isinstance(err, Exception):
            return err
        return ExecError(str(err), command=masked)

    def _exec_blocking(
        self,
        command: str,
        timeout: Optional[float],
        stdin_data: Optional[bytes],
    ) -> CommandResult:
        client = self._client
        if client is None:
            raise ConnectionLost("SSH session is not connected")
        stdin, stdout, stderr = client.exec_command(command, timeout=timeout or self._command_timeout)
        try:
            if stdin_data is not None:
                stdin.write(stdin_data)
                stdin.flush()
                stdin.channel.shutdown_write()
            out = stdout.read().decode("utf-8", "replace")
            err = stderr.read().decode("utf-8", "replace")
            status = stdout.channel.recv_exit_status()
        except BaseException:
            stdout.channel.close()
            raise
        return CommandResult(command=command, stdout=out, stderr=err, exit_status=status)

    def _stream_blocking(
        self,
        command: str,
        emit: Callable[[object], None],
        stop: threading.Event,
        timeout: Optional[float],
    ) -> int:
        client = self._client
        try:
            if client is None:
                raise ConnectionLost("SSH session is not connected")
            _, stdout, _ = client.exec_command(command, get_pty=True)
            chan = stdout.channel
            deadline = time.monotonic() + timeout if timeout else None
            buffer = b""
            while True:
                if stop.is_set():
                    chan.close()
                    return -1
                if deadline is not None and time.monotonic() > deadline:
                    chan.close()
                    raise socket.timeout(f"stream exceeded {timeout}s")
                if chan.recv_ready():
                    buffer += chan.recv(4096)
                    *complete, buffer = buffer.split(b"\n")
                    for raw in complete:
                        emit(raw.decode("utf-8", "replace").rstrip("\r"))
                    continue
                if chan.exit_status_ready():
                    break
                time.sleep(_STREAM_POLL)
            if buffer.strip():
                emit(buffer.decode("utf-8", "replace").rstrip("\r"))
            return chan.recv_exit_status()
        finally:
            emit(_EOF)

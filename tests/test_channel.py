"""Tests for the serialized SSH channel."""

from __future__ import annotations

import asyncio
import socket
import threading

import paramiko
import pytest

from asa_ssh_fleet.channel import CommandResult, RemoteChannel
from asa_ssh_fleet.errors import ConnectError, ConnectionLost, ExecError

from conftest import FakeSSHClient


async def _connected(credential, client: FakeSSHClient) -> RemoteChannel:
    channel = RemoteChannel(client_factory=lambda: client, connect_timeout=3, command_timeout=5)
    await channel.connect(credential)
    return channel


class TestConnect:
    async def test_connect_passes_credential(self, credential):
        client = FakeSSHClient()
        channel = await _connected(credential, client)
        assert channel.connected
        assert client.connect_kwargs["hostname"] == "game-host"
        assert client.connect_kwargs["username"] == "ark"
        assert client.connect_kwargs["password"] == "s3cret"
        assert client.connect_kwargs["timeout"] == 3
        assert isinstance(client.policy, paramiko.AutoAddPolicy)

    async def test_auth_failure_is_connect_error(self, credential):
        class Refusing(FakeSSHClient):
            def connect(self, **kwargs):
                raise paramiko.AuthenticationException("bad password")

        channel = RemoteChannel(client_factory=Refusing)
        with pytest.raises(ConnectError):
            await channel.connect(credential)
        assert not channel.connected

    async def test_timeout_is_connect_error(self, credential):
        class Slow(FakeSSHClient):
            def connect(self, **kwargs):
                raise socket.timeout("timed out")

        with pytest.raises(ConnectError):
            await RemoteChannel(client_factory=Slow).connect(credential)

    async def test_execute_before_connect_fails_fast(self):
        channel = RemoteChannel(client_factory=FakeSSHClient)
        with pytest.raises(ConnectionLost):
            await channel.execute("uptime")


class TestExecute:
    async def test_returns_stdout_and_status(self, credential):
        client = FakeSSHClient()
        client.handler = lambda cmd: ("asa_center\nasa_island\n", "", 0)
        channel = await _connected(credential, client)
        result = await channel.execute("docker ps")
        assert isinstance(result, CommandResult)
        assert result.ok
        assert result.stdout.split() == ["asa_center", "asa_island"]

    async def test_nonzero_without_output_raises(self, credential):
        client = FakeSSHClient()
        client.handler = lambda cmd: ("", "boom\n", 2)
        channel = await _connected(credential, client)
        with pytest.raises(ExecError) as info:
            await channel.execute("false")
        assert info.value.exit_status == 2
        assert channel.connected

    async def test_nonzero_with_output_is_returned_unless_checked(self, credential):
        client = FakeSSHClient()
        client.handler = lambda cmd: ("partial\n", "", 1)
        channel = await _connected(credential, client)
        result = await channel.execute("something")
        assert result.exit_status == 1
        with pytest.raises(ExecError):
            await channel.execute("something", check=True)

    async def test_secrets_are_masked(self, credential):
        channel = await _connected(credential, FakeSSHClient())
        assert channel.mask("echo s3cret | sudo -S true") == "echo *** | sudo -S true"


class TestFiles:
    async def test_atomic_write_round_trip(self, credential):
        client = FakeSSHClient()
        channel = await _connected(credential, client)
        blob = "[ServerSettings]\nMessage=\"it's 'quoted'\"\r\nÁrvíztűrő tükörfúrógép ✓\n$(rm -rf /)\n"
        await channel.write_file("/srv/asa/Game.ini", blob)
        assert list(client.fs) == ["/srv/asa/Game.ini"]
        data = await channel.read_file("/srv/asa/Game.ini")
        assert data == blob.encode("utf-8")

    async def test_write_goes_through_temp_file_and_stdin(self, credential):
        client = FakeSSHClient()
        channel = await _connected(credential, client)
        await channel.write_file("/srv/a b/file.ini", b"x=1\n")
        command = client.commands[-1]
        assert command.startswith("base64 -d > ")
        assert ".tmp-" in command
        assert "mv -f --" in command
        assert "x=1" not in command

    async def test_read_missing_file_raises(self, credential):
        channel = await _connected(credential, FakeSSHClient())
        with pytest.raises(ExecError):
            await channel.read_file("/nope")


class TestConnectionLost:
    async def test_drop_is_reported_once(self, credential):
        client = FakeSSHClient()
        channel = await _connected(credential, client)
        reasons = []
        channel.add_connection_lost_listener(reasons.append)

        client.fail_with = EOFError("socket closed")
        with pytest.raises(ConnectionLost):
            await channel.execute("uptime")
        assert not channel.connected

        calls = len(client.commands)
        with pytest.raises(ConnectionLost):
            await channel.execute("uptime")
        assert len(client.commands) == calls
        assert len(reasons) == 1

    async def test_reconnect_restores_service(self, credential):
        client = FakeSSHClient()
        channel = await _connected(credential, client)
        client.fail_with = EOFError("gone")
        with pytest.raises(ConnectionLost):
            await channel.execute("uptime")

        client.fail_with = None
        client.transport.active = True
        client.handler = lambda cmd: ("up\n", "", 0)
        await channel.connect(credential)
        assert (await channel.execute("uptime")).stdout == "up\n"

    async def test_command_timeout_is_exec_error(self, credential):
        client = FakeSSHClient()
        channel = await _connected(credential, client)

        def _slow(cmd):
            raise socket.timeout("read timed out")

        client.handler = _slow
        with pytest.raises(ExecError):
            await channel.execute("sleep 100")
        assert channel.connected


class TestSerialization:
    async def test_commands_never_overlap(self, credential):
        client = FakeSSHClient()
        client.handler = lambda cmd: (cmd + "\n", "", 0)
        channel = await _connected(credential, client)
        results = await asyncio.gather(*(channel.execute(f"echo {i}") for i in range(8)))
        assert [r.stdout.strip() for r in results] == [f"echo {i}" for i in range(8)]
        assert client.max_active_calls == 1
        # FIFO: issued in the order the callers queued.
        assert client.commands == [f"echo {i}" for i in range(8)]

    async def test_cancelled_caller_does_not_break_the_channel(self, credential):
        client = FakeSSHClient()
        client.handler = lambda cmd: ("done\n", "", 0)
        client.gate = threading.Event()
        channel = await _connected(credential, client)

        first = asyncio.create_task(channel.execute("slow"))
        await asyncio.sleep(0.05)
        second = asyncio.create_task(channel.execute("next"))
        await asyncio.sleep(0.05)
        first.cancel()
        await asyncio.sleep(0.05)
        assert not second.done()

        client.gate.set()
        with pytest.raises(asyncio.CancelledError):
            await first
        assert (await second).stdout == "done\n"
        assert client.commands == ["slow", "next"]
        assert client.max_active_calls == 1


class TestStream:
    async def test_lines_arrive_in_order(self, credential):
        client = FakeSSHClient()
        client.stream_output = b"Downloading 10%\r\nDownloading 50%\r\nUpdate complete"
        channel = await _connected(credential, client)
        seen = []
        result = await channel.stream("./POK-manager.sh -update center", seen.append)
        assert seen == ["Downloading 10%", "Downloading 50%", "Update complete"]
        assert result.exit_status == 0
        assert result.stdout.splitlines()[-1] == "Update complete"

"""Tests for remote output parsers."""

from __future__ import annotations

import pytest

from asa_ssh_fleet.collector import (
    extract_diagnostics,
    map_name,
    parse_compose,
    parse_container_stats,
    parse_dir_listing,
    parse_env,
    parse_host_metrics,
    parse_identities,
    parse_memory_percent,
    parse_probe,
    parse_status,
    runtime_name,
    env_port,
)
from asa_ssh_fleet.errors import ParseError


class TestContainerStats:
    def test_cpu_is_normalised_by_cores(self):
        out = "8\nasa_center|400.00%|10GiB / 40GiB\nasa_island|1200%|1GiB / 2GiB\n"
        cores, rows = parse_container_stats(out)
        assert cores == 8
        assert rows["asa_center"].cpu_percent == 50.0
        assert rows["asa_center"].memory_usage == "10GiB / 40GiB"
        assert rows["asa_center"].memory_percent == 25.0
        assert rows["asa_island"].cpu_percent == 100.0

    def test_malformed_rows_are_skipped(self):
        _, rows = parse_container_stats("4\ngarbage\nasa_x|n/a|1MiB / 2MiB\nasa_y|4%|1MiB / 2MiB\n")
        assert list(rows) == ["asa_y"]

    def test_missing_core_count(self):
        with pytest.raises(ParseError):
            parse_container_stats("asa_center|1%|1MiB / 2MiB")
        with pytest.raises(ParseError):
            parse_container_stats("")

    @pytest.mark.parametrize(
        "usage,expected",
        [
            ("512MiB / 1GiB", 50.0),
            ("1.5GiB / 3GiB", 50.0),
            ("256KiB / 1MiB", 25.0),
            ("0B / 0B", 0.0),
            ("nonsense", 0.0),
        ],
    )
    def test_memory_percent(self, usage, expected):
        assert parse_memory_percent(usage) == expected


class TestHostMetrics:
    def test_parse(self):
        out = "cpu=12.5\nmem=40.25\ndisk=63\nrx=1000\ntx=2000\n"
        metrics = parse_host_metrics(out)
        assert metrics.cpu_percent == 12.5
        assert metrics.memory_percent == 40.25
        assert metrics.disk_percent == 63.0
        assert (metrics.rx_bytes, metrics.tx_bytes) == (1000, 2000)

    def test_garbled_value_is_none(self):
        metrics = parse_host_metrics("cpu=\nmem=abc\ndisk=10\n")
        assert metrics.cpu_percent is None
        assert metrics.memory_percent is None
        assert metrics.disk_percent == 10.0
        assert metrics.rx_bytes is None

    def test_empty_output(self):
        with pytest.raises(ParseError):
            parse_host_metrics("")


class TestStatus:
    def test_up_with_details(self):
        out = (
            "Server is up\n"
            "Players: 3 / 70\n"
            "Day: 412\n"
            "Server Version: 52.19\n"
            "Server Ping: 23 ms\n"
        )
        report = parse_status(out)
        assert report.up
        assert (report.online_players, report.max_players) == (3, 70)
        assert report.game_day == 412
        assert report.server_version == "52.19"
        assert report.server_ping == "23 ms"

    def test_compact_players(self):
        assert parse_status("server is up\nOnline 5/20").online_players == 5

    def test_generic_ratio_fallback(self):
        report = parse_status("Server is up\nconnected 7 / 50 at the moment")
        assert (report.online_players, report.max_players) == (7, 50)

    def test_down(self):
        assert not parse_status("Server is up? no: container not running").up
        assert not parse_status("Server is down").up

    def test_missing_fields_are_none(self):
        report = parse_status("Server is up")
        assert report.game_day is None
        assert report.server_version is None
        assert report.online_players == 0


class TestDiscoveryParsers:
    def test_identities_keep_order_and_dedupe(self):
        assert parse_identities("asa_b\n\nasa_a\nasa_b\n") == ["asa_b", "asa_a"]

    def test_env(self):
        text = "# comment\nSERVER_PORT=7777\nexport RCON_PORT='27020'\nBROKEN\n=x\n"
        values = parse_env(text)
        assert values == {"SERVER_PORT": "7777", "RCON_PORT": "27020"}
        assert env_port(values, "SERVER_PORT") == 7777
        assert env_port(values, "MISSING") == 0
        assert env_port({"SERVER_PORT": "port"}, "SERVER_PORT") == 0
        assert env_port({"SERVER_PORT": "99999"}, "SERVER_PORT") == 0

    def test_compose(self):
        info = parse_compose("environment:\n  - MAP_NAME=TheIsland\n  - MAX_PLAYERS = 70\n")
        assert info.max_players == 70
        assert info.map_name == "TheIsland"
        assert parse_compose("").max_players == 0

    def test_probe(self):
        out = (
            "@@env\nSERVER_PORT=7777\nRCON_PORT=27020\n\n"
            "@@instance\n./Instance_center\n"
            "@@compose\n      - MAX_PLAYERS=32\n"
        )
        probe = parse_probe(out)
        assert probe.env["SERVER_PORT"] == "7777"
        assert probe.instance_dir == "Instance_center"
        assert probe.compose.max_players == 32

    def test_probe_without_markers(self):
        with pytest.raises(ParseError):
            parse_probe("cd: no such directory")

    def test_dir_listing(self):
        out = "/srv/asa/A|1\n/srv/asa/B|0\n/srv/asa/C|1\nnoise\n"
        assert parse_dir_listing(out) == [
            ("/srv/asa/A", True),
            ("/srv/asa/B", False),
            ("/srv/asa/C", True),
        ]

    @pytest.mark.parametrize(
        "directory,instance_dir,expected",
        [
            ("Rexodon-center", "Instance_center", "center"),
            ("asa_server_island", None, "island"),
            ("ragnarok", None, "ragnarok"),
            ("trailing_", None, "trailing_"),
        ],
    )
    def test_runtime_name(self, directory, instance_dir, expected):
        assert runtime_name(directory, instance_dir) == expected

    def test_map_name(self):
        assert map_name("Rexodon-center") == "center"
        assert map_name("island") == "island"

    def test_diagnostics(self):
        out = "Starting...\nError: port 7777 in use\nok\nfailed to bind\n"
        assert extract_diagnostics(out) == ["Error: port 7777 in use", "failed to bind"]

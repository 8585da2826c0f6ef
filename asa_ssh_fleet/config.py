"""Runtime configuration loaded from environment variables."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple

import voluptuous as vol

from . import DOMAIN
from .reconciler import DEFAULT_FLEET_PREFIX, DEFAULT_SUFFIXES

DEFAULT_DEPENDENCY_URL = (
    "https://github.com/zedinke/ZedArkManager/releases/latest/download/xaudio2_9.dll"
)
# Pinned release, tried when the latest release has no asset.
DEFAULT_DEPENDENCY_FALLBACK_URL = (
    "https://github.com/zedinke/ZedArkManager/releases/download/v1.0.16/xaudio2_9.dll"
)


@dataclass(frozen=True)
class ConnectionCredential:
    """Where and how to open the SSH session. Exactly one of password/key_path is used."""

    host: str
    username: str
    port: int = 22
    password: Optional[str] = field(default=None, repr=False)
    key_path: Optional[str] = None

    @property
    def uses_key(self) -> bool:
        return bool(self.key_path)


@dataclass(frozen=True)
class Settings:
    credential: ConnectionCredential
    base_path: str
    sudo_password: Optional[str] = field(default=None, repr=False)
    interval: float = 1.0
    monitor_timeout: float = 5.0
    command_timeout: float = 60.0
    connect_timeout: float = 30.0
    start_settle: float = 20.0
    stop_drain: int = 10
    update_pre_wait: int = 15
    update_post_wait: int = 600
    cluster_stagger: float = 20.0
    fleet_prefix: str = DEFAULT_FLEET_PREFIX
    match_suffixes: Tuple[str, ...] = DEFAULT_SUFFIXES
    player_poll_every: int = 10
    discovery_concurrency: int = 8
    dependency_url: str = DEFAULT_DEPENDENCY_URL
    dependency_fallback_url: str = DEFAULT_DEPENDENCY_FALLBACK_URL
    mqtt_host: Optional[str] = None
    mqtt_port: int = 1883
    mqtt_user: Optional[str] = None
    mqtt_pass: Optional[str] = field(default=None, repr=False)
    mqtt_topic_prefix: str = DOMAIN
    log_level: str = "INFO"


def _suffix_list(value: Any) -> Tuple[str, ...]:
    """Parse a JSON list of suffix strings."""
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError) as err:
        raise vol.Invalid(f"not valid JSON: {err}") from err
    if not isinstance(parsed, list) or not all(isinstance(s, str) and s for s in parsed):
        raise vol.Invalid("expected a JSON list of non-empty strings")
    return tuple(parsed)


_SECONDS = vol.All(vol.Coerce(float), vol.Range(min=0))
_COUNT = vol.All(vol.Coerce(int), vol.Range(min=0))

ENV_SCHEMA = vol.Schema(
    {
        vol.Required("SSH_HOST"): vol.All(str, vol.Length(min=1)),
        vol.Required("SSH_USER"): vol.All(str, vol.Length(min=1)),
        vol.Optional("SSH_PORT", default=22): vol.All(vol.Coerce(int), vol.Range(min=1, max=65535)),
        vol.Optional("SSH_PASSWORD"): str,
        vol.Optional("SSH_KEY"): str,
        vol.Optional("SUDO_PASSWORD"): str,
        vol.Optional("CONFIG_DIR"): str,
        vol.Optional("SERVER_BASE_PATH"): str,
        vol.Optional("INTERVAL", default=1.0): vol.All(vol.Coerce(float), vol.Range(min=0.1)),
        vol.Optional("MONITOR_TIMEOUT", default=5.0): vol.All(vol.Coerce(float), vol.Range(min=0.5)),
        vol.Optional("COMMAND_TIMEOUT", default=60.0): vol.All(vol.Coerce(float), vol.Range(min=1)),
        vol.Optional("CONNECT_TIMEOUT", default=30.0): vol.All(vol.Coerce(float), vol.Range(min=1)),
        vol.Optional("START_SETTLE", default=20.0): _SECONDS,
        vol.Optional("STOP_DRAIN", default=10): _COUNT,
        vol.Optional("UPDATE_PRE_WAIT", default=15): _COUNT,
        vol.Optional("UPDATE_POST_WAIT", default=600): _COUNT,
        vol.Optional("CLUSTER_STAGGER", default=20.0): _SECONDS,
        vol.Optional("FLEET_PREFIX", default=DEFAULT_FLEET_PREFIX): str,
        vol.Optional("MATCH_SUFFIXES_JSON"): _suffix_list,
        vol.Optional("PLAYER_POLL_EVERY", default=10): _COUNT,
        vol.Optional("DISCOVERY_CONCURRENCY", default=8): vol.All(vol.Coerce(int), vol.Range(min=1)),
        vol.Optional("DEPENDENCY_URL", default=DEFAULT_DEPENDENCY_URL): vol.Url(),
        vol.Optional("DEPENDENCY_FALLBACK_URL", default=DEFAULT_DEPENDENCY_FALLBACK_URL): vol.Url(),
        vol.Optional("MQTT_HOST"): str,
        vol.Optional("MQTT_PORT", default=1883): vol.All(vol.Coerce(int), vol.Range(min=1, max=65535)),
        vol.Optional("MQTT_USER"): str,
        vol.Optional("MQTT_PASS"): str,
        vol.Optional("MQTT_TOPIC_PREFIX", default=DOMAIN): vol.All(str, vol.Length(min=1)),
        vol.Optional("LOG_LEVEL", default="INFO"): vol.All(
            vol.Upper, vol.In(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
        ),
    },
    extra=vol.REMOVE_EXTRA,
)


def resolve_private_key_path(key: Optional[str], config_dir: Optional[str] = None) -> Optional[str]:
    """Return an absolute path for an SSH private key.

    Keys may be given as absolute paths, paths relative to *config_dir* (the
    working directory when unset), or with a leading ``~``. Empty values pass
    through as ``None``.
    """

    if not key:
        return None

    path = Path(key).expanduser()
    if not path.is_absolute():
        path = Path(config_dir or os.getcwd()) / path
    return str(path)


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build :class:`Settings` from *env* (``os.environ`` by default)."""
    source = os.environ if env is None else env
    # Empty variables behave as unset.
    raw = {k: v for k, v in source.items() if v != ""}
    try:
        data = ENV_SCHEMA(raw)
    except vol.Invalid as err:
        key = err.path[0] if err.path else "environment"
        raise ValueError(f"Invalid configuration for {key}: {err.msg}") from err

    password = data.get("SSH_PASSWORD")
    key_path = resolve_private_key_path(data.get("SSH_KEY"), data.get("CONFIG_DIR"))
    if not password and not key_path:
        raise ValueError("Invalid configuration: one of SSH_PASSWORD or SSH_KEY is required")

    credential = ConnectionCredential(
        host=data["SSH_HOST"],
        port=data["SSH_PORT"],
        username=data["SSH_USER"],
        password=None if key_path else password,
        key_path=key_path,
    )
    sudo_password = data.get("SUDO_PASSWORD") or credential.password
    base_path = data.get("SERVER_BASE_PATH") or f"/home/{credential.username}/asa_server"

    return Settings(
        credential=credential,
        base_path=base_path.rstrip("/") or "/",
        sudo_password=sudo_password,
        interval=data["INTERVAL"],
        monitor_timeout=data["MONITOR_TIMEOUT"],
        command_timeout=data["COMMAND_TIMEOUT"],
        connect_timeout=data["CONNECT_TIMEOUT"],
        start_settle=data["START_SETTLE"],
        stop_drain=data["STOP_DRAIN"],
        update_pre_wait=data["UPDATE_PRE_WAIT"],
        update_post_wait=data["UPDATE_POST_WAIT"],
        cluster_stagger=data["CLUSTER_STAGGER"],
        fleet_prefix=data["FLEET_PREFIX"],
        match_suffixes=data.get("MATCH_SUFFIXES_JSON", DEFAULT_SUFFIXES),
        player_poll_every=data["PLAYER_POLL_EVERY"],
        discovery_concurrency=data["DISCOVERY_CONCURRENCY"],
        dependency_url=data["DEPENDENCY_URL"],
        dependency_fallback_url=data["DEPENDENCY_FALLBACK_URL"],
        mqtt_host=data.get("MQTT_HOST"),
        mqtt_port=data["MQTT_PORT"],
        mqtt_user=data.get("MQTT_USER"),
        mqtt_pass=data.get("MQTT_PASS"),
        mqtt_topic_prefix=data["MQTT_TOPIC_PREFIX"],
        log_level=data["LOG_LEVEL"],
    )

"""Control plane for ASA game-server instances managed over a single SSH session."""
from __future__ import annotations

DOMAIN = "asa_ssh_fleet"
__version__ = "0.3.0"

MANAGER_SCRIPT = "POK-manager.sh"

"""Exceptions raised by the ASA SSH fleet control plane."""
from __future__ import annotations

from typing import Optional, Sequence


class FleetError(Exception):
    """Base class for every error surfaced by the control plane."""

    kind = "fleet_error"


class ConnectError(FleetError):
    """The SSH session could not be opened (credential, timeout, unreachable host)."""

    kind = "connect_error"


class ExecError(FleetError):
    """A remote command failed without the session dropping."""

    kind = "exec_error"

    def __init__(
        self,
        message: str,
        command: Optional[str] = None,
        exit_status: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr


class ConnectionLost(FleetError):
    """The session dropped mid-flight; nothing is accepted until reconnect."""

    kind = "connection_lost"


class DependencyMissing(FleetError):
    """A file or tool the instance needs is absent and could not be installed."""

    kind = "dependency_missing"


class PermissionDenied(FleetError):
    """Every privilege escalation strategy was exhausted."""

    kind = "permission_denied"


class VerificationFailed(FleetError):
    """An operation ran but the expected outcome was not observed."""

    kind = "verification_failed"

    def __init__(self, message: str, diagnostics: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.diagnostics = list(diagnostics)


class ParseError(FleetError):
    """Remote output did not have the expected shape."""

    kind = "parse_error"


class OperationInProgress(FleetError):
    """Another lifecycle operation currently holds the instance."""

    kind = "operation_in_progress"


class UnknownInstance(FleetError):
    """The instance name is not registered."""

    kind = "unknown_instance"

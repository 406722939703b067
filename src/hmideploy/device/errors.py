"""
Device provisioning exceptions.

Raised inside the provisioning components when a step cannot continue and
converted to an ``OperationResult`` at the public operation boundary
(see ``hmideploy.device.service``).
"""
from typing import Optional

from hmideploy.device.types import CommandResult


class DeviceError(RuntimeError):
    """Base class for provisioning failures; ``str()`` is the user-facing message."""

    def __init__(self, message: str, result: Optional[CommandResult] = None):
        super().__init__(message)
        self.result = result


class ConnectivityError(DeviceError):
    """Device unreachable, or the connection dropped while no reboot was in flight."""


class AuthError(DeviceError):
    """Missing credentials or a failed trust bootstrap."""


class CommandTimeoutError(DeviceError):
    """A local timeout fired; the message names the elapsed bound."""


class RemoteStateError(DeviceError):
    """The device is reachable but not in the expected state (e.g. script missing)."""


class HardRemoteFailure(DeviceError):
    """Explicit permission-denied / command-not-found output. Never retried."""

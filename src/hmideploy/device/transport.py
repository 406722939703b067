"""
Transport abstraction for reaching a device.

Two implementations share one contract (never raise, exit code 124 on timeout):
    - OpenSSHTransport: spawns the local ``ssh``/``scp`` clients per call
    - ParamikoTransport: opens one paramiko session per call (see ``ssh.py``)
"""
from __future__ import annotations

import logging
import os
import re
from typing import List, Optional, Protocol, runtime_checkable

from hmideploy.device.runner import LocalCommandRunner
from hmideploy.device.types import CommandResult, CredentialKind, DeviceTarget

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10

_SAFE_REMOTE_PATH = re.compile(r"[A-Za-z0-9_./~@%+=,:-]+")


@runtime_checkable
class Transport(Protocol):
    """One remote operation per call; every outcome is a ``CommandResult``."""

    def exec(self, command: str, timeout: float) -> CommandResult:
        ...

    def upload(self, local_path: str, remote_path: str, timeout: float) -> CommandResult:
        ...

    def download(self, remote_path: str, local_path: str, timeout: float) -> CommandResult:
        ...


class OpenSSHTransport:
    """Drives the system OpenSSH client through ``LocalCommandRunner``."""

    def __init__(
        self,
        target: DeviceTarget,
        runner: Optional[LocalCommandRunner] = None,
        connect_timeout: int = CONNECT_TIMEOUT,
    ):
        self.target = target
        self.runner = runner or LocalCommandRunner()
        self.connect_timeout = connect_timeout

    def _base_options(self) -> List[str]:
        options = [
            "-o", "StrictHostKeyChecking=no",
            "-o", f"UserKnownHostsFile={os.devnull}",
            "-o", f"ConnectTimeout={self.connect_timeout}",
        ]
        credential = self.target.credential
        if credential.kind == CredentialKind.PASSWORD:
            options += ["-o", "PubkeyAuthentication=no", "-o", "NumberOfPasswordPrompts=1"]
        else:
            # Fail instead of hanging on an interactive password prompt.
            options += ["-o", "BatchMode=yes"]
        if credential.kind == CredentialKind.PRIVATE_KEY:
            options += ["-i", credential.private_key_path]
        return options

    def _invoke(self, program: str, arguments: List[str], timeout: float) -> CommandResult:
        credential = self.target.credential
        if credential.kind == CredentialKind.PASSWORD:
            if not self.runner.command_exists("sshpass"):
                return CommandResult(
                    exit_code=1,
                    stderr="Password authentication with the OpenSSH transport requires sshpass",
                )
            return self.runner.run(
                "sshpass",
                ["-e", program, *arguments],
                timeout=timeout,
                env={"SSHPASS": credential.password},
            )
        return self.runner.run(program, arguments, timeout=timeout)

    def exec(self, command: str, timeout: float) -> CommandResult:
        arguments = [
            "-p", str(self.target.port),
            *self._base_options(),
            self.target.identity,
            command,
        ]
        logger.debug(f"ssh {self.target.identity}: {command}")
        return self._invoke("ssh", arguments, timeout)

    def upload(self, local_path: str, remote_path: str, timeout: float) -> CommandResult:
        rejected = _reject_remote_path(remote_path)
        if rejected is not None:
            return rejected
        arguments = [
            "-P", str(self.target.port),
            *self._base_options(),
            str(local_path),
            f"{self._scp_host()}:{remote_path}",
        ]
        return self._invoke("scp", arguments, timeout)

    def download(self, remote_path: str, local_path: str, timeout: float) -> CommandResult:
        rejected = _reject_remote_path(remote_path)
        if rejected is not None:
            return rejected
        arguments = [
            "-P", str(self.target.port),
            *self._base_options(),
            f"{self._scp_host()}:{remote_path}",
            str(local_path),
        ]
        return self._invoke("scp", arguments, timeout)

    def _scp_host(self) -> str:
        host = self.target.host
        if ":" in host and not host.startswith("["):
            host = f"[{host}]"
        return f"{self.target.username}@{host}"


def _reject_remote_path(remote_path: str) -> Optional[CommandResult]:
    """
    scp hands the remote path to the device's shell unquoted in legacy mode,
    so only plain path characters are accepted.
    """
    if not _SAFE_REMOTE_PATH.fullmatch(str(remote_path)):
        return CommandResult(exit_code=1, stderr=f"Unsafe remote path for scp: {remote_path!r}")
    return None


def build_transport(target: DeviceTarget, kind: str = "paramiko") -> Transport:
    """
    Create the transport named by ``kind``.

    Args:
        target: Device to reach. Required.
        kind: "paramiko" (default) or "openssh".

    Raises:
        ValueError: If kind is unknown.
    """
    if kind == "paramiko":
        from hmideploy.device.ssh import ParamikoTransport

        return ParamikoTransport(target)
    if kind == "openssh":
        return OpenSSHTransport(target)
    raise ValueError(f"Unknown transport: {kind!r}. Expected 'paramiko' or 'openssh'")

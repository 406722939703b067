"""SSH session transport built on paramiko. One short-lived connection per call."""
import logging
import time
from pathlib import Path
from typing import Optional

import paramiko

from hmideploy.device.types import TIMEOUT_EXIT_CODE, CommandResult, CredentialKind, DeviceTarget

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 15
POLL_INTERVAL = 0.05
_CHUNK = 32768
_DEADLINE_SLACK = 0.1


class _TransferDeadline(Exception):
    """Raised from the SFTP progress callback once the deadline passes."""


class SessionTimeout(Exception):
    """A transfer exceeded its wall-clock bound."""


class SSHClient:
    """Secure SSH client for command execution and file transfer on a device."""

    def __init__(self, target: DeviceTarget, connect_timeout: float = CONNECT_TIMEOUT):
        """
        Initialize SSH client connection parameters.

        Args:
            target: Device to connect to. Required.
            connect_timeout: Seconds allowed for TCP connect, banner and auth.

        Raises:
            ValueError: If target is missing.
        """
        if target is None:
            raise ValueError("target must be a DeviceTarget")

        self.target = target
        self.connect_timeout = connect_timeout
        self.client: Optional[paramiko.SSHClient] = None

    def connect(self) -> None:
        """
        Establish SSH connection to the device.

        Raises:
            FileNotFoundError: If the configured private key file does not exist.
            paramiko.AuthenticationException: If authentication fails.
            paramiko.SSHException: If SSH negotiation fails.
            OSError: If the host is unreachable.
        """
        transport = self.client.get_transport() if self.client is not None else None
        if transport is not None and transport.is_active():
            logger.debug(f"Already connected to {self.target.host}")
            return

        self.client = paramiko.SSHClient()
        self.client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        credential = self.target.credential
        kwargs = {
            "hostname": self.target.host,
            "port": self.target.port,
            "username": self.target.username,
            "timeout": self.connect_timeout,
            "banner_timeout": self.connect_timeout,
            "auth_timeout": self.connect_timeout,
        }
        if credential.kind == CredentialKind.PASSWORD:
            kwargs.update(password=credential.password, allow_agent=False, look_for_keys=False)
        elif credential.kind == CredentialKind.PRIVATE_KEY:
            key_path = Path(credential.private_key_path)
            if not key_path.exists():
                raise FileNotFoundError(f"Private key file not found: {credential.private_key_path}")
            kwargs.update(key_filename=str(key_path), allow_agent=True, look_for_keys=False)
        else:
            kwargs.update(allow_agent=True, look_for_keys=True)

        try:
            self.client.connect(**kwargs)
            logger.debug(f"SSH connection established to {self.target.identity}:{self.target.port}")
        except Exception:
            self.client.close()
            self.client = None
            raise

    def disconnect(self) -> None:
        """Close SSH connection."""
        if self.client:
            self.client.close()
            self.client = None
            logger.debug(f"SSH connection closed to {self.target.host}")

    def execute(self, command: str, timeout: float) -> CommandResult:
        """
        Execute a command on the connected device within ``timeout`` seconds.

        Both channel streams are drained while waiting so a chatty command
        cannot stall on a full window. On timeout the channel is closed and
        exit code 124 is returned with whatever output arrived.

        Raises:
            ValueError: If command is empty.
            RuntimeError: If not connected.
        """
        if not command or not isinstance(command, str):
            raise ValueError("command must be a non-empty string")
        if not self.client or not self.client.get_transport() or not self.client.get_transport().is_active():
            raise RuntimeError("Not connected to remote host. Call connect() first.")

        channel = self.client.get_transport().open_session(timeout=self.connect_timeout)
        stdout_chunks = []
        stderr_chunks = []
        deadline = time.monotonic() + timeout
        try:
            channel.exec_command(command)
            while True:
                drained = False
                if channel.recv_ready():
                    stdout_chunks.append(channel.recv(_CHUNK))
                    drained = True
                if channel.recv_stderr_ready():
                    stderr_chunks.append(channel.recv_stderr(_CHUNK))
                    drained = True
                if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                    break
                if time.monotonic() >= deadline:
                    logger.warning(f"Command on {self.target.host} timed out after {timeout}s")
                    return CommandResult(
                        exit_code=TIMEOUT_EXIT_CODE,
                        stdout=_decode(stdout_chunks),
                        stderr=f"Command timeout after {timeout}s",
                    )
                if not drained:
                    time.sleep(POLL_INTERVAL)
            exit_code = channel.recv_exit_status()
        finally:
            channel.close()

        logger.debug(f"Command executed: {command} (exit code: {exit_code})")
        return CommandResult(
            exit_code=exit_code if exit_code >= 0 else 1,
            stdout=_decode(stdout_chunks),
            stderr=_decode(stderr_chunks),
        )

    def upload_file(self, local_path: str, remote_path: str, timeout: float) -> None:
        """
        Upload a local file to the device.

        Raises:
            FileNotFoundError: If local file does not exist.
            SessionTimeout: If the transfer exceeds ``timeout``.
            RuntimeError: If not connected.
        """
        local_file = Path(local_path)
        if not local_file.is_file():
            raise FileNotFoundError(f"Local file not found: {local_path}")
        self._transfer("put", str(local_file), remote_path, timeout)
        logger.info(f"File uploaded: {local_path} -> {self.target.host}:{remote_path}")

    def download_file(self, remote_path: str, local_path: str, timeout: float) -> None:
        """
        Download a file from the device.

        Raises:
            SessionTimeout: If the transfer exceeds ``timeout``.
            RuntimeError: If not connected.
        """
        self._transfer("get", remote_path, local_path, timeout)
        logger.info(f"File downloaded: {self.target.host}:{remote_path} -> {local_path}")

    def _transfer(self, direction: str, source: str, destination: str, timeout: float) -> None:
        if not self.client or not self.client.get_transport() or not self.client.get_transport().is_active():
            raise RuntimeError("Not connected to remote host. Call connect() first.")

        deadline = time.monotonic() + timeout

        def _check_deadline(transferred: int, total: int) -> None:
            if time.monotonic() >= deadline:
                raise _TransferDeadline()

        sftp = self.client.open_sftp()
        try:
            sftp.get_channel().settimeout(timeout)
            if direction == "put":
                sftp.put(source, destination, callback=_check_deadline)
            else:
                sftp.get(source, destination, callback=_check_deadline)
        except _TransferDeadline:
            raise SessionTimeout(f"SFTP {direction} timeout after {timeout}s") from None
        finally:
            sftp.close()


class ParamikoTransport:
    """``Transport`` implementation that opens one paramiko session per call."""

    def __init__(self, target: DeviceTarget, connect_timeout: float = CONNECT_TIMEOUT):
        self.target = target
        self.connect_timeout = connect_timeout

    def exec(self, command: str, timeout: float) -> CommandResult:
        deadline = time.monotonic() + timeout
        ssh = SSHClient(self.target, connect_timeout=min(self.connect_timeout, timeout))
        try:
            ssh.connect()
            return ssh.execute(command, timeout)
        except Exception as e:
            logger.debug(f"SSH exec failed on {self.target.host}: {e}")
            return _failure(e, timeout, deadline)
        finally:
            ssh.disconnect()

    def upload(self, local_path: str, remote_path: str, timeout: float) -> CommandResult:
        deadline = time.monotonic() + timeout
        ssh = SSHClient(self.target, connect_timeout=min(self.connect_timeout, timeout))
        try:
            ssh.connect()
            ssh.upload_file(local_path, remote_path, timeout)
            return CommandResult(exit_code=0)
        except Exception as e:
            logger.debug(f"SFTP upload failed to {self.target.host}: {e}")
            return _failure(e, timeout, deadline)
        finally:
            ssh.disconnect()

    def download(self, remote_path: str, local_path: str, timeout: float) -> CommandResult:
        deadline = time.monotonic() + timeout
        ssh = SSHClient(self.target, connect_timeout=min(self.connect_timeout, timeout))
        try:
            ssh.connect()
            ssh.download_file(remote_path, local_path, timeout)
            return CommandResult(exit_code=0)
        except Exception as e:
            logger.debug(f"SFTP download failed from {self.target.host}: {e}")
            return _failure(e, timeout, deadline)
        finally:
            ssh.disconnect()


def _failure(error: Exception, timeout: Optional[float] = None, deadline: Optional[float] = None) -> CommandResult:
    """
    Map a paramiko/socket error to a result the retry classifier understands.

    Any failure at or past ``deadline`` is reported as a timeout (exit 124),
    whatever paramiko called it.
    """
    if isinstance(error, SessionTimeout):
        return CommandResult(exit_code=TIMEOUT_EXIT_CODE, stderr=str(error))
    # Socket timeouts can fire marginally before the deadline.
    if deadline is not None and time.monotonic() >= deadline - _DEADLINE_SLACK:
        return CommandResult(exit_code=TIMEOUT_EXIT_CODE, stderr=f"Command timeout after {timeout}s")

    message = str(error) or type(error).__name__
    if isinstance(error, paramiko.AuthenticationException):
        message = f"Permission denied: {message}"
    elif isinstance(error, paramiko.ssh_exception.NoValidConnectionsError):
        message = f"Connection refused: {message}"
    elif isinstance(error, (ConnectionResetError, EOFError)):
        message = f"Connection reset: {message}"
    elif isinstance(error, TimeoutError):
        message = f"Connection timed out: {message}"
    elif isinstance(error, paramiko.SSHException):
        # Negotiation failures ("No existing session", banner errors).
        message = f"Connection closed during negotiation: {message}"
    return CommandResult(exit_code=1, stderr=message)


def _decode(chunks) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")

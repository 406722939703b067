"""
Fetch the newest telemetry file from a device.
"""
import logging
import posixpath
from dataclasses import replace
from pathlib import Path
from typing import Callable, Optional

from hmideploy.device import commands
from hmideploy.device.config import DeviceSettings
from hmideploy.device.errors import CommandTimeoutError, ConnectivityError
from hmideploy.device.retry import CHECK_POLICY, run_with_retry
from hmideploy.device.transport import Transport
from hmideploy.device.types import OperationResult

logger = logging.getLogger(__name__)

NO_TELEMETRY_MESSAGE = "No telemetry file found"


class TelemetryRetriever:
    """Lists the device's data directory and downloads the latest file."""

    def __init__(
        self,
        transport: Transport,
        settings: Optional[DeviceSettings] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.transport = transport
        self.settings = settings or DeviceSettings()
        self.policy = replace(CHECK_POLICY, interval=self.settings.retry_interval)
        self.sleep = sleep

    def latest_remote_file(self) -> Optional[str]:
        """
        Return the path of the newest telemetry file, or None if there is none.

        Raises:
            CommandTimeoutError: If the listing command timed out.
            ConnectivityError: If the listing command failed.
        """
        command = commands.latest_file(self.settings.telemetry_dir, self.settings.telemetry_extension)
        result = run_with_retry(self.transport.exec, command, self.settings.list_timeout, self.policy, sleep=self.sleep)
        if result.timed_out:
            raise CommandTimeoutError(
                f"Listing {self.settings.telemetry_dir} timed out after {self.settings.list_timeout:g}s", result
            )
        if not result.ok:
            raise ConnectivityError(f"Failed to list telemetry files: {result.diagnostic()}", result)

        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        return lines[0] if lines else None

    def fetch_latest(self, local_directory: Path) -> OperationResult:
        """
        Download the newest telemetry file into ``local_directory``.

        Args:
            local_directory: Destination directory; created if needed.

        Returns:
            OperationResult with ``local_path`` and ``remote_path`` on success.
            ``ok`` is False without raising when the device holds no file.

        Raises:
            DeviceError: If listing or downloading fails.
        """
        remote_path = self.latest_remote_file()
        if remote_path is None:
            logger.warning(f"No *.{self.settings.telemetry_extension} files in {self.settings.telemetry_dir}")
            return OperationResult(ok=False, message=NO_TELEMETRY_MESSAGE)

        local_directory = Path(local_directory).expanduser()
        local_directory.mkdir(parents=True, exist_ok=True)
        local_path = local_directory / posixpath.basename(remote_path)

        logger.info(f"Downloading {remote_path} -> {local_path}")
        result = self.transport.download(remote_path, str(local_path), self.settings.download_timeout)
        if result.timed_out:
            raise CommandTimeoutError(
                f"Download timed out after {self.settings.download_timeout:g}s: {remote_path}", result
            )
        if not result.ok:
            raise ConnectivityError(f"Download failed: {result.diagnostic()}", result)

        return OperationResult(
            ok=True,
            message=f"Downloaded {posixpath.basename(remote_path)}",
            local_path=str(local_path),
            remote_path=remote_path,
        )

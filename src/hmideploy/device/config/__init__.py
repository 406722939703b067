"""
Configuration module for device provisioning.
Loads connection details from the environment / .env and tunables from YAML.
"""
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from hmideploy.device.types import Credential, DeviceTarget

SETTINGS_FILE = Path(__file__).parent / "device_settings.yaml"
SCRIPT_DIR = Path(__file__).parent.parent / "scripts"


@dataclass
class DeviceSettings:
    """Remote paths, local paths and timing for provisioning runs."""

    local_script: str = str(SCRIPT_DIR / "shell_recordHMI.sh")
    remote_script: str = "/root/shell_recordHMI.sh"
    remote_log: str = "/root/shell_recordHMI.log"
    remote_pid_file: str = "/tmp/shell_recordHMI.sh.pid"
    telemetry_dir: str = "/hmi/data"
    telemetry_extension: str = "csv"
    key_path: str = "~/.ssh/id_rsa"
    cache_path: str = "~/.hmideploy/trust_cache.json"
    transport: str = "paramiko"
    probe_timeout: float = 8.0
    check_timeout: float = 15.0
    upload_timeout: float = 60.0
    reboot_timeout: float = 15.0
    start_timeout: float = 20.0
    list_timeout: float = 30.0
    download_timeout: float = 60.0
    online_poll_interval: float = 5.0
    online_wait_ceiling: float = 180.0
    retry_interval: float = 2.0

    @property
    def key_file(self) -> Path:
        return Path(self.key_path).expanduser()

    @property
    def cache_file(self) -> Path:
        return Path(self.cache_path).expanduser()


def load_device_settings(settings_path: Optional[Path] = None) -> DeviceSettings:
    """
    Load settings from YAML, then apply ``HMIDEPLOY_<FIELD>`` environment overrides.

    Args:
        settings_path: YAML file. Defaults to the packaged device_settings.yaml;
            built-in defaults are used when the file does not exist.

    Raises:
        ValueError: If the YAML names an unknown setting or a value has the wrong type.
    """
    path = Path(settings_path) if settings_path else SETTINGS_FILE
    values: Dict[str, Any] = {}
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            values = yaml.safe_load(f) or {}
        if not isinstance(values, dict):
            raise ValueError(f"Settings file must contain a mapping: {path}")

    known = {f.name: f for f in fields(DeviceSettings)}
    unknown = set(values) - set(known)
    if unknown:
        raise ValueError(f"Unknown settings in {path}: {', '.join(sorted(unknown))}")

    for name in known:
        env_value = os.getenv(f"HMIDEPLOY_{name.upper()}")
        if env_value is not None and env_value.strip():
            values[name] = env_value.strip()

    settings = DeviceSettings()
    for name, value in values.items():
        if value is None:
            continue
        default = getattr(settings, name)
        try:
            setattr(settings, name, type(default)(value))
        except (TypeError, ValueError):
            raise ValueError(f"Invalid value for setting '{name}': {value!r}") from None

    if settings.transport not in ("paramiko", "openssh"):
        raise ValueError(f"transport must be 'paramiko' or 'openssh', got {settings.transport!r}")
    return settings


class DeviceConfig:
    """Load and validate device connection details from the environment."""

    def __init__(self, env_file: Optional[Path] = None, host: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            env_file: Path to .env file. If None, looks for .env in the working directory.
            host: Device host; takes precedence over HMIDEPLOY_HOST.

        Raises:
            ValueError: If no host is given and HMIDEPLOY_HOST is not set, or the port is invalid.
        """
        self._load_env_file(env_file)
        self.host = host.strip() if host and host.strip() else self._get_required_env("HMIDEPLOY_HOST")
        self.username = os.getenv("HMIDEPLOY_USER", "root").strip() or "root"
        self.password = os.getenv("HMIDEPLOY_PASSWORD") or None
        self.key_path = os.getenv("HMIDEPLOY_IDENTITY_FILE") or None

        port = os.getenv("HMIDEPLOY_PORT", "22").strip() or "22"
        try:
            self.port = int(port)
        except ValueError:
            raise ValueError(f"HMIDEPLOY_PORT must be an integer, got {port!r}") from None

    @staticmethod
    def _load_env_file(env_file: Optional[Path]) -> None:
        """Load .env file if it exists. Existing environment variables win."""
        if env_file is None:
            env_file = Path.cwd() / ".env"
        if Path(env_file).exists():
            load_dotenv(env_file, override=False)

    @staticmethod
    def _get_required_env(key: str) -> str:
        value = os.getenv(key)
        if not value or not value.strip():
            raise ValueError(
                f"Required environment variable '{key}' is not set. "
                f"Pass --host or add it to the .env file."
            )
        return value.strip()

    def credential(self) -> Credential:
        if self.password:
            return Credential.password_auth(self.password)
        if self.key_path:
            return Credential.key_file(self.key_path)
        return Credential.trusted()

    def target(self) -> DeviceTarget:
        return DeviceTarget(
            host=self.host,
            port=self.port,
            username=self.username,
            credential=self.credential(),
        )


def get_device_config(env_file: Optional[Path] = None, host: Optional[str] = None) -> DeviceConfig:
    """
    Get device configuration.

    Args:
        env_file: Path to .env file (for testing).
        host: Optional host override.
    """
    return DeviceConfig(env_file, host=host)

from pathlib import Path

import pytest

from hmideploy.device.config import (
    SCRIPT_DIR,
    DeviceConfig,
    DeviceSettings,
    get_device_config,
    load_device_settings,
)
from hmideploy.device.types import CredentialKind

ENV_KEYS = ("HMIDEPLOY_HOST", "HMIDEPLOY_PORT", "HMIDEPLOY_USER", "HMIDEPLOY_PASSWORD", "HMIDEPLOY_IDENTITY_FILE")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    # setenv first so monkeypatch restores keys that load_dotenv adds.
    for key in ENV_KEYS + ("HMIDEPLOY_TRANSPORT", "HMIDEPLOY_PROBE_TIMEOUT"):
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)


class TestLoadDeviceSettings:
    """Test cases for load_device_settings."""

    def test_packaged_defaults(self):
        settings = load_device_settings()

        assert settings.remote_script == "/root/shell_recordHMI.sh"
        assert settings.remote_pid_file == "/tmp/shell_recordHMI.sh.pid"
        assert settings.telemetry_dir == "/hmi/data"
        assert settings.online_poll_interval == 5.0
        assert settings.online_wait_ceiling == 180.0
        assert settings.transport == "paramiko"

    def test_bundled_script_is_default(self):
        settings = load_device_settings()

        assert Path(settings.local_script) == SCRIPT_DIR / "shell_recordHMI.sh"
        assert Path(settings.local_script).is_file()

    def test_missing_file_uses_builtin_defaults(self, tmp_path):
        assert load_device_settings(tmp_path / "absent.yaml") == DeviceSettings()

    def test_yaml_overrides(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("remote_script: /opt/rec.sh\nprobe_timeout: 3\n")

        settings = load_device_settings(path)

        assert settings.remote_script == "/opt/rec.sh"
        assert settings.probe_timeout == 3.0
        assert isinstance(settings.probe_timeout, float)

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "settings.yaml"
        path.write_text("transport: paramiko\n")
        monkeypatch.setenv("HMIDEPLOY_TRANSPORT", "openssh")

        assert load_device_settings(path).transport == "openssh"

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("remote_scirpt: /typo.sh\n")

        with pytest.raises(ValueError, match="Unknown settings.*remote_scirpt"):
            load_device_settings(path)

    def test_bad_value(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("probe_timeout: soon\n")

        with pytest.raises(ValueError, match="probe_timeout"):
            load_device_settings(path)

    def test_bad_transport(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("transport: telnet\n")

        with pytest.raises(ValueError, match="transport"):
            load_device_settings(path)

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ValueError, match="mapping"):
            load_device_settings(path)


class TestDeviceConfig:
    """Test cases for DeviceConfig."""

    def test_missing_host(self, tmp_path):
        with pytest.raises(ValueError, match="HMIDEPLOY_HOST"):
            DeviceConfig(env_file=tmp_path / ".env")

    def test_loads_env_file(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("HMIDEPLOY_HOST=10.0.0.5\nHMIDEPLOY_PORT=2222\nHMIDEPLOY_PASSWORD=pw\n")

        config = get_device_config(env_file)
        target = config.target()

        assert target.host == "10.0.0.5"
        assert target.port == 2222
        assert target.credential.kind == CredentialKind.PASSWORD

    def test_process_env_wins_over_env_file(self, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("HMIDEPLOY_HOST=from-file\n")
        monkeypatch.setenv("HMIDEPLOY_HOST", "from-env")

        assert DeviceConfig(env_file=env_file).host == "from-env"

    def test_host_argument_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HMIDEPLOY_HOST", "from-env")

        assert DeviceConfig(env_file=tmp_path / ".env", host="10.1.1.1").host == "10.1.1.1"

    def test_identity_file_credential(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HMIDEPLOY_HOST", "h")
        monkeypatch.setenv("HMIDEPLOY_IDENTITY_FILE", "/keys/id_rsa")

        credential = DeviceConfig(env_file=tmp_path / ".env").credential()

        assert credential.kind == CredentialKind.PRIVATE_KEY
        assert credential.private_key_path == "/keys/id_rsa"

    def test_no_secret_means_trusted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HMIDEPLOY_HOST", "h")

        assert DeviceConfig(env_file=tmp_path / ".env").credential().kind == CredentialKind.ASSUME_TRUSTED

    def test_invalid_port(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HMIDEPLOY_HOST", "h")
        monkeypatch.setenv("HMIDEPLOY_PORT", "ssh")

        with pytest.raises(ValueError, match="HMIDEPLOY_PORT"):
            DeviceConfig(env_file=tmp_path / ".env")

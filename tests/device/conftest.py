import shlex
from pathlib import Path

import pytest

from hmideploy.device.config import DeviceSettings
from hmideploy.device.types import Credential, CommandResult, DeviceTarget

DISCONNECT = CommandResult(exit_code=255, stderr="Connection to 10.0.0.5 closed by remote host.")
REFUSED = CommandResult(exit_code=255, stderr="ssh: connect to host 10.0.0.5 port 22: Connection refused")


class FakeDevice:
    """
    In-memory device behind the Transport interface.

    Interprets the command builders' output the way the device shell would:
    files, a running recorder PID, authorized_keys lines and telemetry files.
    ``queue`` maps a command substring to results returned before the
    simulated behaviour kicks in.
    """

    def __init__(self):
        self.files = set()
        self.authorized_keys = []
        self.telemetry = []
        self.running_pid = None
        self.next_pid = 4242
        self.offline_probes = 0
        self.probes_offline_after_reboot = 2
        self.reboot_result = DISCONNECT
        self.start_output = None
        self.queue = {}
        self.calls = []
        self.uploads = []
        self.downloads = []
        self.reboots = 0

    def fail_next(self, fragment, *results):
        self.queue.setdefault(fragment, []).extend(results)

    def commands(self, fragment):
        return [c for c in self.calls if fragment in c]

    def exec(self, command, timeout):
        self.calls.append(command)
        for fragment, results in self.queue.items():
            if fragment in command and results:
                return results.pop(0)

        if command.startswith("echo __ONLINE__"):
            if self.offline_probes > 0:
                self.offline_probes -= 1
                return REFUSED
            return CommandResult(0, "__ONLINE__\n")
        if command.startswith("test -f") and "__EXISTS__" in command:
            path = shlex.split(command)[2]
            return CommandResult(0, "__EXISTS__\n" if path in self.files else "__NO__\n")
        if command == "sync; reboot":
            self.reboots += 1
            self.running_pid = None
            self.offline_probes = self.probes_offline_after_reboot
            return self.reboot_result
        if "nohup" in command:
            return self._start(command)
        if command.startswith("mkdir -p ~/.ssh") or command.startswith("chmod 600"):
            return CommandResult(0)
        if command.startswith("grep -qxF"):
            key = shlex.split(command)[2]
            if key not in self.authorized_keys:
                self.authorized_keys.append(key)
            return CommandResult(0)
        if command.startswith("ls -t"):
            return CommandResult(0, f"{self.telemetry[0]}\n" if self.telemetry else "")
        return CommandResult(127, stderr=f"sh: unexpected command: {command}")

    def _start(self, command):
        if self.start_output is not None:
            return self.start_output
        script = shlex.split(command)[2]
        if script not in self.files:
            return CommandResult(2, "__MISSING__\n")
        if self.running_pid is not None:
            return CommandResult(0, f"__ALREADY_RUNNING__:{self.running_pid}\n")
        self.running_pid = self.next_pid
        self.next_pid += 1
        return CommandResult(0, f"__STARTED__:{self.running_pid}\n")

    def upload(self, local_path, remote_path, timeout):
        self.uploads.append((local_path, remote_path))
        for fragment, results in self.queue.items():
            if fragment == "upload" and results:
                return results.pop(0)
        self.files.add(remote_path)
        return CommandResult(0)

    def download(self, remote_path, local_path, timeout):
        self.downloads.append((remote_path, local_path))
        for fragment, results in self.queue.items():
            if fragment == "download" and results:
                return results.pop(0)
        Path(local_path).write_text("timestamp,cpu_busy_pct,hmi_pid\n2024-01-01 00:00:00,5,100\n")
        return CommandResult(0)


class FakeClock:
    """Monotonic clock advanced only by ``sleep``."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def device():
    return FakeDevice()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return DeviceSettings(
        key_path=str(tmp_path / "keys" / "id_rsa"),
        cache_path=str(tmp_path / "trust_cache.json"),
    )


@pytest.fixture
def local_script(tmp_path):
    script = tmp_path / "shell_recordHMI.sh"
    script.write_text("#!/bin/sh\nwhile :; do sleep 10; done\n")
    return script


@pytest.fixture
def key_target():
    return DeviceTarget(host="10.0.0.5", credential=Credential.key_file("~/.ssh/id_rsa"))


@pytest.fixture
def password_target():
    return DeviceTarget(host="10.0.0.5", credential=Credential.password_auth("s3cret"))

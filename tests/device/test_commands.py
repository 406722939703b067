import os
import shlex
import shutil
import signal
import subprocess

import pytest

from hmideploy.device import commands


class TestQuote:
    """Test cases for remote shell quoting."""

    @pytest.mark.parametrize("value", [
        "/root/shell_recordHMI.sh",
        "/data/with space/file.sh",
        "it's; rm -rf /",
        "$(reboot)",
        "`id`",
        'ssh-rsa AAAA "quoted" comment',
    ])
    def test_quoted_value_round_trips(self, value):
        """Test the shell sees exactly the input text."""
        assert shlex.split(commands.quote(value)) == [value]

    def test_none_rejected(self):
        with pytest.raises(ValueError):
            commands.quote(None)


class TestBuilders:
    """Test cases for the remote command builders."""

    def test_file_exists_quotes_path(self):
        command = commands.file_exists("/root/my script.sh")
        assert command == "test -f '/root/my script.sh' && echo __EXISTS__ || echo __NO__"

    def test_probe_and_reboot(self):
        assert commands.probe_online() == "echo __ONLINE__"
        assert commands.reboot() == "sync; reboot"

    def test_append_public_key_is_conditional(self):
        """Test the key is only appended when no identical line exists."""
        command = commands.append_public_key("ssh-rsa AAAA user@host\n")
        assert command.startswith("grep -qxF 'ssh-rsa AAAA user@host' ~/.ssh/authorized_keys || ")
        assert ">> ~/.ssh/authorized_keys" in command

    def test_append_public_key_rejects_multiline(self):
        with pytest.raises(ValueError, match="single line"):
            commands.append_public_key("ssh-rsa AAAA\nssh-rsa BBBB")

    def test_append_public_key_rejects_empty(self):
        with pytest.raises(ValueError):
            commands.append_public_key("   ")

    def test_start_single_instance_quotes_all_paths(self):
        """Test every embedded path is quoted."""
        command = commands.start_single_instance("/root/a b.sh", "/root/a b.log", "/tmp/a b.pid")
        assert "'/root/a b.sh'" in command
        assert ">'/root/a b.log' 2>&1 </dev/null &" in command
        assert "cat '/tmp/a b.pid'" in command
        assert "kill -0" in command

    def test_start_single_instance_uses_posix_sh(self):
        command = commands.start_single_instance("/root/x.sh", "/root/x.log", "/tmp/x.pid")
        assert "nohup /bin/sh /root/x.sh" in command
        assert "[[" not in command

    def test_latest_file_keeps_glob_unquoted(self):
        assert commands.latest_file("/hmi/data/", "csv") == "ls -t /hmi/data/*.csv 2>/dev/null | head -n 1"

    def test_latest_file_rejects_odd_extension(self):
        with pytest.raises(ValueError, match="Invalid file extension"):
            commands.latest_file("/hmi/data", "csv; reboot")


class TestParseStartOutput:
    """Test cases for parse_start_output."""

    def test_started_with_pid(self):
        outcome = commands.parse_start_output("__STARTED__:1234\n")
        assert outcome.started is True
        assert outcome.pid == 1234

    def test_already_running_with_pid(self):
        outcome = commands.parse_start_output("noise\n__ALREADY_RUNNING__:99\n")
        assert outcome.already_running is True
        assert outcome.pid == 99

    def test_missing(self):
        outcome = commands.parse_start_output("__MISSING__\n")
        assert outcome.missing is True
        assert outcome.recognised is True

    def test_unrecognised(self):
        outcome = commands.parse_start_output("")
        assert outcome.recognised is False
        assert outcome.pid is None


def run_sh(command, home):
    env = dict(os.environ, HOME=str(home))
    return subprocess.run(["sh", "-c", command], env=env, capture_output=True, text=True, timeout=10)


@pytest.fixture
def home(tmp_path):
    (tmp_path / ".ssh").mkdir()
    return tmp_path


@pytest.mark.skipif(shutil.which("sh") is None, reason="requires a POSIX shell")
class TestCommandsInShell:
    """Test cases running the built commands under a real /bin/sh."""

    def test_append_keeps_unterminated_last_line(self, home):
        """Test an existing key without a trailing newline survives the append."""
        authorized_keys = home / ".ssh" / "authorized_keys"
        authorized_keys.write_text("ssh-ed25519 AAAAexisting admin@laptop")
        command = commands.append_public_key("ssh-rsa AAAAnew hmideploy@ws")

        for _ in range(2):
            assert run_sh(command, home).returncode == 0

        assert authorized_keys.read_text().splitlines() == [
            "ssh-ed25519 AAAAexisting admin@laptop",
            "ssh-rsa AAAAnew hmideploy@ws",
        ]

    def test_append_to_empty_file(self, home):
        authorized_keys = home / ".ssh" / "authorized_keys"
        authorized_keys.write_text("")

        run_sh(commands.append_public_key("ssh-rsa AAAAnew hmideploy@ws"), home)

        assert authorized_keys.read_text() == "ssh-rsa AAAAnew hmideploy@ws\n"

    def test_append_metacharacter_key_is_idempotent(self, home):
        """Test a key full of shell metacharacters ends up as exactly one line."""
        key = "ssh-rsa AAAA'x\"$(id)`id`;|&*? hmideploy@ws"
        authorized_keys = home / ".ssh" / "authorized_keys"
        authorized_keys.write_text("ssh-ed25519 AAAAexisting admin@laptop\n")
        command = commands.append_public_key(key)

        for _ in range(3):
            run_sh(command, home)

        lines = authorized_keys.read_text().splitlines()
        assert lines == ["ssh-ed25519 AAAAexisting admin@laptop", key]

    def test_prepare_then_append_from_scratch(self, tmp_path):
        run_sh(commands.prepare_ssh_dir(), tmp_path)
        run_sh(commands.append_public_key("ssh-rsa AAAAnew hmideploy@ws"), tmp_path)

        assert (tmp_path / ".ssh" / "authorized_keys").read_text() == "ssh-rsa AAAAnew hmideploy@ws\n"


@pytest.mark.skipif(not os.path.exists("/bin/sh"), reason="requires /bin/sh")
class TestStartInShell:
    """Test cases running the single-instance start under a real /bin/sh."""

    @pytest.fixture
    def paths(self, tmp_path):
        script = tmp_path / "rec dir" / "recorder.sh"
        script.parent.mkdir()
        return script, tmp_path / "recorder.log", tmp_path / "recorder.pid"

    @pytest.fixture
    def started(self):
        pids = []
        yield pids
        for pid in pids:
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass

    def test_second_start_reports_running_pid(self, paths, started, tmp_path):
        script, log, pid_file = paths
        script.write_text("exec sleep 30\n")
        command = commands.start_single_instance(str(script), str(log), str(pid_file))

        first = commands.parse_start_output(run_sh(command, tmp_path).stdout)
        if first.pid is not None:
            started.append(first.pid)
        second = commands.parse_start_output(run_sh(command, tmp_path).stdout)

        assert first.started is True
        assert pid_file.read_text().strip() == str(first.pid)
        assert second.already_running is True
        assert second.pid == first.pid

    def test_stale_pid_file_starts_again(self, paths, started, tmp_path):
        script, log, pid_file = paths
        script.write_text("exec sleep 30\n")
        pid_file.write_text("999999999\n")

        output = run_sh(commands.start_single_instance(str(script), str(log), str(pid_file)), tmp_path).stdout
        outcome = commands.parse_start_output(output)
        if outcome.pid is not None:
            started.append(outcome.pid)

        assert outcome.started is True
        assert outcome.pid != 999999999

    def test_missing_script(self, paths, tmp_path):
        script, log, pid_file = paths

        completed = run_sh(commands.start_single_instance(str(script), str(log), str(pid_file)), tmp_path)

        assert completed.returncode == 2
        assert commands.parse_start_output(completed.stdout).missing is True
        assert not pid_file.exists()

    def test_crlf_line_endings_are_stripped(self, paths, started, tmp_path):
        script, log, pid_file = paths
        script.write_bytes(b"#!/bin/sh\r\nexec sleep 30\r\n")

        output = run_sh(commands.start_single_instance(str(script), str(log), str(pid_file)), tmp_path).stdout
        outcome = commands.parse_start_output(output)
        if outcome.pid is not None:
            started.append(outcome.pid)

        assert outcome.started is True
        assert b"\r" not in script.read_bytes()

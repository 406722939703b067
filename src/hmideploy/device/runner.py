"""Local process runner with an enforced wall-clock timeout."""
from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
from typing import Mapping, Optional, Sequence

from hmideploy.device.types import TIMEOUT_EXIT_CODE, CommandResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class LocalCommandRunner:
    """Spawns one local process per call and always returns a ``CommandResult``."""

    def run(
        self,
        command: str,
        arguments: Sequence[str] = (),
        timeout: float = DEFAULT_TIMEOUT,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        """
        Run ``command`` with ``arguments`` and capture both output streams.

        Args:
            command: Executable name or path. Required.
            arguments: Arguments passed verbatim (no shell).
            timeout: Seconds before the process is killed.
            env: Extra environment variables layered over ``os.environ``.

        Returns:
            CommandResult. Exit code 124 on timeout, 1 when the process
            cannot be launched.
        """
        argv = [command, *arguments]
        proc_env = None
        if env:
            proc_env = dict(os.environ)
            proc_env.update(env)

        logger.debug(f"Running: {command} (timeout {timeout}s)")
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                env=proc_env,
                start_new_session=os.name == "posix",
            )
        except OSError as e:
            logger.debug(f"Failed to launch {command}: {e}")
            return CommandResult(exit_code=1, stdout="", stderr=str(e))

        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            _kill(proc)
            stdout, stderr = proc.communicate()
            stdout = stdout or _as_text(e.stdout)
            logger.warning(f"{command} killed after {timeout}s timeout")
            return CommandResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=stdout or "",
                stderr=f"Command timeout after {timeout}s",
            )
        finally:
            if proc.poll() is None:
                _kill(proc)
                proc.wait()

        exit_code = proc.returncode if proc.returncode is not None else 1
        return CommandResult(exit_code=exit_code, stdout=stdout or "", stderr=stderr or "")

    @staticmethod
    def command_exists(command: str) -> bool:
        return shutil.which(command) is not None


def _kill(proc: subprocess.Popen) -> None:
    """Kill the process and everything it spawned (sshpass -> ssh)."""
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value

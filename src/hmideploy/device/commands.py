"""
Remote POSIX command builders.

Every value embedded in a remote command (paths, public keys) goes through
``quote`` so that the text the device's shell sees round-trips exactly.
Commands stick to ``/bin/sh`` syntax; some devices ship without bash.
"""
import re
import shlex
from dataclasses import dataclass
from typing import Optional

ONLINE_MARKER = "__ONLINE__"
EXISTS_MARKER = "__EXISTS__"
ABSENT_MARKER = "__NO__"
MISSING_MARKER = "__MISSING__"
ALREADY_RUNNING_MARKER = "__ALREADY_RUNNING__"
STARTED_MARKER = "__STARTED__"

AUTHORIZED_KEYS = "~/.ssh/authorized_keys"

_MARKER_PID = re.compile(r"(__ALREADY_RUNNING__|__STARTED__):(\d+)")


def quote(value: str) -> str:
    """Quote one value for the remote shell."""
    if value is None:
        raise ValueError("cannot quote None")
    return shlex.quote(str(value))


def probe_online() -> str:
    return f"echo {ONLINE_MARKER}"


def file_exists(remote_path: str) -> str:
    path = quote(remote_path)
    return f"test -f {path} && echo {EXISTS_MARKER} || echo {ABSENT_MARKER}"


def reboot() -> str:
    return "sync; reboot"


def prepare_ssh_dir() -> str:
    return f"mkdir -p ~/.ssh && chmod 700 ~/.ssh && touch {AUTHORIZED_KEYS}"


def append_public_key(public_key: str) -> str:
    """Append ``public_key`` as a line of authorized_keys unless an identical line exists."""
    key = public_key.strip()
    if not key:
        raise ValueError("public_key must be a non-empty string")
    if "\n" in key or "\r" in key:
        raise ValueError("public_key must be a single line")
    quoted = quote(key)
    # Terminate an unterminated last line before appending.
    return (
        f"grep -qxF {quoted} {AUTHORIZED_KEYS} || {{ "
        f'[ -s {AUTHORIZED_KEYS} ] && [ -n "$(tail -c 1 {AUTHORIZED_KEYS})" ] && echo >> {AUTHORIZED_KEYS}; '
        f"printf '%s\\n' {quoted} >> {AUTHORIZED_KEYS}; }}"
    )


def restrict_authorized_keys() -> str:
    return f"chmod 600 {AUTHORIZED_KEYS}"


def start_single_instance(remote_script: str, remote_log: str, pid_file: str) -> str:
    """
    Launch ``remote_script`` detached unless the PID in ``pid_file`` is alive.

    Output markers:
        __MISSING__                 script absent (exit 2)
        __ALREADY_RUNNING__:<pid>   recorded process still alive (exit 0)
        __STARTED__:<pid>           launched, PID written to pid_file
    """
    script = quote(remote_script)
    log = quote(remote_log)
    pid = quote(pid_file)
    return (
        f'test -f {script} || {{ echo "{MISSING_MARKER}"; exit 2; }}; '
        f"(sed -i 's/\\r$//' {script} >/dev/null 2>&1 || true); "
        f"chmod 755 {script}; "
        f"if [ -f {pid} ]; then "
        f"oldpid=$(cat {pid} 2>/dev/null); "
        f'if [ -n "$oldpid" ] && kill -0 "$oldpid" >/dev/null 2>&1; then '
        f'echo "{ALREADY_RUNNING_MARKER}:$oldpid"; exit 0; '
        f"fi; "
        f"fi; "
        f"nohup /bin/sh {script} >{log} 2>&1 </dev/null & "
        f'newpid=$!; echo "$newpid" > {pid}; '
        f'echo "{STARTED_MARKER}:$newpid";'
    )


def latest_file(data_dir: str, extension: str) -> str:
    """List the newest ``*.<extension>`` under ``data_dir``. The glob stays unquoted."""
    ext = extension.lstrip(".")
    if not re.fullmatch(r"[A-Za-z0-9_]+", ext):
        raise ValueError(f"Invalid file extension: {extension!r}")
    directory = data_dir.rstrip("/") or "/"
    return f"ls -t {quote(directory)}/*.{ext} 2>/dev/null | head -n 1"


@dataclass(frozen=True)
class StartOutcome:
    """Classification of the single-instance start output."""

    missing: bool = False
    already_running: bool = False
    started: bool = False
    pid: Optional[int] = None

    @property
    def recognised(self) -> bool:
        return self.missing or self.already_running or self.started


def parse_start_output(output: str) -> StartOutcome:
    text = output or ""
    if MISSING_MARKER in text:
        return StartOutcome(missing=True)
    pid = None
    match = _MARKER_PID.search(text)
    if match:
        pid = int(match.group(2))
    if ALREADY_RUNNING_MARKER in text:
        return StartOutcome(already_running=True, pid=pid)
    if STARTED_MARKER in text:
        return StartOutcome(started=True, pid=pid)
    return StartOutcome()

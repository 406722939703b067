"""Type definitions for device provisioning."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

TIMEOUT_EXIT_CODE = 124


class CredentialKind(str, Enum):
    PASSWORD = "password"
    PRIVATE_KEY = "private_key"
    ASSUME_TRUSTED = "assume_trusted"


@dataclass(frozen=True, slots=True)
class Credential:
    """How to authenticate against a device. Exactly one kind is active."""

    kind: CredentialKind
    password: Optional[str] = field(default=None, repr=False)
    private_key_path: Optional[str] = None

    @classmethod
    def password_auth(cls, password: str) -> "Credential":
        if not password:
            raise ValueError("password must be a non-empty string")
        return cls(kind=CredentialKind.PASSWORD, password=password)

    @classmethod
    def key_file(cls, private_key_path: str) -> "Credential":
        if not private_key_path:
            raise ValueError("private_key_path must be a non-empty string")
        return cls(kind=CredentialKind.PRIVATE_KEY, private_key_path=str(Path(private_key_path).expanduser()))

    @classmethod
    def trusted(cls) -> "Credential":
        return cls(kind=CredentialKind.ASSUME_TRUSTED)


@dataclass(frozen=True, slots=True)
class DeviceTarget:
    """Connection details for one device. ``identity`` keys the trust cache."""

    host: str
    port: int = 22
    username: str = "root"
    credential: Credential = field(default_factory=Credential.trusted)

    def __post_init__(self) -> None:
        if not self.host or not isinstance(self.host, str):
            raise ValueError("host must be a non-empty string")
        if not isinstance(self.port, int) or self.port <= 0 or self.port > 65535:
            raise ValueError("port must be an integer between 1 and 65535")
        if not self.username or not isinstance(self.username, str):
            raise ValueError("username must be a non-empty string")

    @property
    def identity(self) -> str:
        return f"{self.username}@{self.host}"

    def with_credential(self, credential: Credential) -> "DeviceTarget":
        return replace(self, credential=credential)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of one local process or one remote session."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def timed_out(self) -> bool:
        return self.exit_code == TIMEOUT_EXIT_CODE

    @property
    def output(self) -> str:
        return (self.stdout or "") + (self.stderr or "")

    def diagnostic(self) -> str:
        """Best text to show a user: stderr if present, else stdout."""
        return (self.stderr or self.stdout or "").strip()


@dataclass(slots=True)
class TrustCacheEntry:
    """Readiness flag for one device identity. Never holds credentials."""

    identity: str
    ready: bool
    timestamp: float


@dataclass(slots=True)
class DeployJob:
    """A single deploy invocation."""

    target: DeviceTarget
    local_script_path: Path
    remote_script_path: str
    remote_log_path: str
    remote_pid_file: str
    reboot_first: bool = False


@dataclass(slots=True)
class OperationResult:
    """Structured outcome of a public operation; ``message`` is user-facing."""

    ok: bool
    message: str
    local_path: Optional[str] = None
    remote_path: Optional[str] = None
    pid: Optional[int] = None
    raw_output: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"ok": self.ok, "message": self.message}
        if self.local_path is not None:
            data["localPath"] = str(self.local_path)
        if self.remote_path is not None:
            data["remotePath"] = self.remote_path
        if self.pid is not None:
            data["pid"] = self.pid
        if self.raw_output is not None:
            data["raw"] = self.raw_output
        return data

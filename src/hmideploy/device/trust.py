"""
Passwordless trust bootstrap.

Makes sure a local key pair exists and that the device's authorized_keys
holds the public key exactly once. Success is memoized per device identity
in the trust cache so later runs skip the network round-trips.
"""
import logging
from pathlib import Path
from typing import Callable, Optional

from hmideploy.device import commands
from hmideploy.device.cache import TrustCache
from hmideploy.device.errors import AuthError, DeviceError
from hmideploy.device.retry import TRUST_POLICY, RetryPolicy, run_with_retry
from hmideploy.device.runner import LocalCommandRunner
from hmideploy.device.transport import Transport, build_transport
from hmideploy.device.types import CredentialKind, DeviceTarget, OperationResult

logger = logging.getLogger(__name__)

KEYGEN = "ssh-keygen"
KEYGEN_TIMEOUT = 60
REMOTE_STEP_TIMEOUT = 20

TransportFactory = Callable[[DeviceTarget], Transport]


class TrustBootstrapper:
    """Installs the local public key on a device once per identity."""

    def __init__(
        self,
        cache: Optional[TrustCache] = None,
        key_path: Optional[Path] = None,
        runner: Optional[LocalCommandRunner] = None,
        transport_factory: Optional[TransportFactory] = None,
        policy: RetryPolicy = TRUST_POLICY,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """
        Args:
            cache: Trust cache. Defaults to the JSON file store.
            key_path: Private key path; the public key is ``<key_path>.pub``.
            runner: Local runner used for ``ssh-keygen``.
            transport_factory: Builds the password-authenticated transport.
            policy: Retry policy for each remote step.
            sleep: Sleep function used between retries.
        """
        self.cache = cache or TrustCache()
        self.key_path = Path(key_path).expanduser() if key_path else Path.home() / ".ssh" / "id_rsa"
        self.runner = runner or LocalCommandRunner()
        self.transport_factory = transport_factory or build_transport
        self.policy = policy
        self.sleep = sleep

    @property
    def public_key_path(self) -> Path:
        return self.key_path.with_name(self.key_path.name + ".pub")

    def ensure_trust(self, target: DeviceTarget) -> OperationResult:
        """
        Guarantee the device accepts the local key, then mark it ready.

        Returns:
            OperationResult; ``message`` names the failing step on error.
        """
        identity = target.identity
        if self.cache.is_ready(identity):
            logger.info(f"Trust already established for {identity}")
            return OperationResult(ok=True, message="Passwordless login already initialized")

        try:
            self._require_keygen()
            self._ensure_key_pair()
            public_key = self._read_public_key()
            self._install_public_key(target, public_key)
        except DeviceError as e:
            logger.error(f"Trust bootstrap failed for {identity}: {e}")
            return OperationResult(ok=False, message=str(e))

        self.cache.mark_ready(identity)
        logger.info(f"Passwordless login initialized for {identity}")
        return OperationResult(ok=True, message="Passwordless login initialized")

    def _require_keygen(self) -> None:
        if not self.runner.command_exists(KEYGEN):
            raise AuthError(f"{KEYGEN} not found; install the OpenSSH client first")

    def _ensure_key_pair(self) -> None:
        if self.key_path.exists() and self.public_key_path.exists():
            return

        try:
            self.key_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as e:
            raise AuthError(f"Failed to create local key directory {self.key_path.parent}: {e}") from e

        if self.key_path.exists() and not self.public_key_path.exists():
            # ssh-keygen prompts before overwriting and stdin is closed.
            logger.warning(f"Public key missing for {self.key_path}; regenerating key pair")
            self.key_path.unlink()

        logger.info(f"Generating SSH key pair at {self.key_path}")
        result = self.runner.run(
            KEYGEN,
            ["-t", "rsa", "-b", "2048", "-N", "", "-q", "-f", str(self.key_path)],
            timeout=KEYGEN_TIMEOUT,
        )
        if not result.ok:
            raise AuthError(f"Failed to generate SSH key: {result.diagnostic()}", result)

    def _read_public_key(self) -> str:
        try:
            public_key = self.public_key_path.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise AuthError(f"Failed to read public key {self.public_key_path}: {e}") from e
        if not public_key:
            raise AuthError(f"Public key is empty: {self.public_key_path}")
        return public_key

    def _install_public_key(self, target: DeviceTarget, public_key: str) -> None:
        if target.credential.kind != CredentialKind.PASSWORD:
            raise AuthError(f"A password is required to initialize passwordless login for {target.identity}")

        transport = self.transport_factory(target)
        steps = (
            ("prepare remote ~/.ssh", commands.prepare_ssh_dir()),
            ("append public key to authorized_keys", commands.append_public_key(public_key)),
            ("chmod authorized_keys", commands.restrict_authorized_keys()),
        )
        for label, command in steps:
            logger.info(f"[{target.identity}] {label}")
            result = run_with_retry(transport.exec, command, REMOTE_STEP_TIMEOUT, self.policy, sleep=self.sleep)
            if not result.ok:
                raise AuthError(f"Failed to {label}: {result.diagnostic()}", result)

"""Public provisioning operations. Each returns an OperationResult and never raises."""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Optional

from hmideploy.device.cache import JsonTrustStore, TrustCache
from hmideploy.device.config import DeviceSettings
from hmideploy.device.errors import DeviceError
from hmideploy.device.orchestration import DeploymentOrchestrator
from hmideploy.device.telemetry import TelemetryRetriever
from hmideploy.device.transport import Transport, build_transport
from hmideploy.device.trust import TrustBootstrapper
from hmideploy.device.types import Credential, CredentialKind, DeployJob, DeviceTarget, OperationResult

logger = logging.getLogger(__name__)

TransportFactory = Callable[[DeviceTarget], Transport]


def _transport_factory(settings: DeviceSettings) -> TransportFactory:
    return lambda target: build_transport(target, settings.transport)


def _bootstrapper(settings: DeviceSettings, factory: TransportFactory) -> TrustBootstrapper:
    return TrustBootstrapper(
        cache=TrustCache(JsonTrustStore(settings.cache_file)),
        key_path=settings.key_file,
        transport_factory=factory,
    )


def _gate(
    target: DeviceTarget,
    settings: DeviceSettings,
    bootstrapper: TrustBootstrapper,
) -> tuple[Optional[DeviceTarget], Optional[OperationResult]]:
    """
    Run the trust bootstrap when a password is supplied.

    Returns:
        (target to use for the remaining steps, None) on success, or
        (None, failing result) when the bootstrap failed.
    """
    if target.credential.kind != CredentialKind.PASSWORD:
        return target, None

    trust = bootstrapper.ensure_trust(target)
    if not trust.ok:
        return None, trust
    # Everything after the bootstrap authenticates with the installed key.
    return target.with_credential(Credential.key_file(str(settings.key_file))), None


def ensure_trust(
    target: DeviceTarget,
    settings: Optional[DeviceSettings] = None,
    bootstrapper: Optional[TrustBootstrapper] = None,
) -> OperationResult:
    """
    Make the device accept the local key (password required on first use).

    Args:
        target: Device with a password credential.
        settings: Key and cache paths. Defaults to ``DeviceSettings()``.
        bootstrapper: Pre-built bootstrapper (for tests).
    """
    settings = settings or DeviceSettings()
    try:
        bootstrapper = bootstrapper or _bootstrapper(settings, _transport_factory(settings))
        return bootstrapper.ensure_trust(target)
    except (DeviceError, OSError, ValueError) as exc:
        logger.error(f"Trust bootstrap failed: {exc}")
        return OperationResult(ok=False, message=str(exc))


def deploy_script(
    target: DeviceTarget,
    settings: Optional[DeviceSettings] = None,
    local_script: Optional[Path] = None,
    reboot: bool = False,
    transport_factory: Optional[TransportFactory] = None,
    bootstrapper: Optional[TrustBootstrapper] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> OperationResult:
    """
    Upload the recording script if needed, optionally reboot, and start one instance.

    Args:
        target: Device to deploy to.
        settings: Remote paths and timing. Defaults to ``DeviceSettings()``.
        local_script: Script to upload. Defaults to ``settings.local_script``.
        reboot: Reboot the device and wait for it before starting.
        transport_factory: Builds the transport for a target (for tests).
        bootstrapper: Pre-built trust bootstrapper (for tests).
        sleep: Sleep function used by polls and retries.
        clock: Monotonic clock used by the online wait.
    """
    settings = settings or DeviceSettings()
    factory = transport_factory or _transport_factory(settings)
    try:
        active_target, failure = _gate(target, settings, bootstrapper or _bootstrapper(settings, factory))
        if failure is not None:
            return failure

        job = DeployJob(
            target=active_target,
            local_script_path=Path(local_script or settings.local_script).expanduser(),
            remote_script_path=settings.remote_script,
            remote_log_path=settings.remote_log,
            remote_pid_file=settings.remote_pid_file,
            reboot_first=reboot,
        )
        orchestrator = DeploymentOrchestrator(factory(active_target), settings, sleep=sleep, clock=clock)
        return orchestrator.deploy(job)
    except (DeviceError, OSError, ValueError) as exc:
        logger.error(f"Deploy failed: {exc}")
        return OperationResult(ok=False, message=str(exc))


def download_latest(
    target: DeviceTarget,
    local_directory: Path,
    settings: Optional[DeviceSettings] = None,
    transport_factory: Optional[TransportFactory] = None,
    bootstrapper: Optional[TrustBootstrapper] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> OperationResult:
    """
    Download the newest telemetry file from the device into ``local_directory``.

    Args:
        target: Device to read from.
        local_directory: Destination directory, created if needed.
        settings: Telemetry location and timing. Defaults to ``DeviceSettings()``.
        transport_factory: Builds the transport for a target (for tests).
        bootstrapper: Pre-built trust bootstrapper (for tests).
        sleep: Sleep function used between retries.
    """
    settings = settings or DeviceSettings()
    factory = transport_factory or _transport_factory(settings)
    try:
        active_target, failure = _gate(target, settings, bootstrapper or _bootstrapper(settings, factory))
        if failure is not None:
            return failure

        retriever = TelemetryRetriever(factory(active_target), settings, sleep=sleep)
        result = retriever.fetch_latest(Path(local_directory))
        if result.ok:
            logger.info(f"Telemetry saved to {result.local_path}")
        return result
    except (DeviceError, OSError, ValueError) as exc:
        logger.error(f"Telemetry download failed: {exc}")
        return OperationResult(ok=False, message=str(exc))

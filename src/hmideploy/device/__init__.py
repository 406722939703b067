"""Provision HMI devices over SSH: trust bootstrap, script deployment, telemetry retrieval."""

from hmideploy.device.cache import JsonTrustStore, MemoryTrustStore, TrustCache
from hmideploy.device.config import DeviceConfig, DeviceSettings, get_device_config, load_device_settings
from hmideploy.device.errors import (
    AuthError,
    CommandTimeoutError,
    ConnectivityError,
    DeviceError,
    HardRemoteFailure,
    RemoteStateError,
)
from hmideploy.device.orchestration import DeployEvent, DeploymentOrchestrator, DeployState
from hmideploy.device.service import deploy_script, download_latest, ensure_trust
from hmideploy.device.telemetry import TelemetryRetriever
from hmideploy.device.transport import OpenSSHTransport, Transport, build_transport
from hmideploy.device.trust import TrustBootstrapper
from hmideploy.device.types import (
    CommandResult,
    Credential,
    CredentialKind,
    DeployJob,
    DeviceTarget,
    OperationResult,
)

__all__ = [
    "ensure_trust",
    "deploy_script",
    "download_latest",
    "DeviceTarget",
    "Credential",
    "CredentialKind",
    "CommandResult",
    "DeployJob",
    "OperationResult",
    "DeviceConfig",
    "DeviceSettings",
    "get_device_config",
    "load_device_settings",
    "Transport",
    "OpenSSHTransport",
    "build_transport",
    "TrustBootstrapper",
    "TrustCache",
    "JsonTrustStore",
    "MemoryTrustStore",
    "DeploymentOrchestrator",
    "DeployState",
    "DeployEvent",
    "TelemetryRetriever",
    "DeviceError",
    "ConnectivityError",
    "AuthError",
    "CommandTimeoutError",
    "RemoteStateError",
    "HardRemoteFailure",
]

"""CLI for provisioning HMI devices over SSH."""
from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Callable, Optional

from hmideploy.device import service
from hmideploy.device.config import DeviceSettings, get_device_config, load_device_settings
from hmideploy.device.types import CredentialKind, DeviceTarget, OperationResult

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(message)s")
    else:
        root.setLevel(level)
    # paramiko's transport logging is noisy at INFO.
    logging.getLogger("paramiko").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _add_connection_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--host", type=str, default=None, help="Device host or IP (defaults to HMIDEPLOY_HOST)")
    parser.add_argument("--port", type=int, default=None, help="SSH port (defaults to HMIDEPLOY_PORT or 22)")
    parser.add_argument("--user", type=str, default=None, help="SSH user (defaults to HMIDEPLOY_USER or root)")
    parser.add_argument("--password", type=str, default=None, help="Device password; enables the trust bootstrap")
    parser.add_argument("--key", type=str, default=None, help="Private key to authenticate with")
    parser.add_argument("--env-file", type=str, default=None, help="Path to .env file (default: ./.env)")
    parser.add_argument("--settings", type=str, default=None, help="Settings YAML (default: packaged defaults)")
    parser.add_argument("--transport", type=str, default=None, choices=["paramiko", "openssh"], help="SSH transport")
    parser.add_argument("--json", action="store_true", help="Print the result as JSON")


def _load_settings(args: argparse.Namespace) -> DeviceSettings:
    settings = load_device_settings(Path(args.settings) if args.settings else None)
    if args.transport:
        settings.transport = args.transport
    if args.key:
        settings.key_path = args.key
    return settings


def _build_target(args: argparse.Namespace) -> DeviceTarget:
    config = get_device_config(Path(args.env_file) if args.env_file else None, host=args.host)
    if args.port is not None:
        config.port = args.port
    if args.user:
        config.username = args.user
    if args.password:
        config.password = args.password
    if args.key:
        config.key_path = args.key
    return config.target()


def _report(result: OperationResult, as_json: bool) -> int:
    if as_json:
        print(json.dumps(result.as_dict(), indent=2))
    else:
        print(result.message)
        if result.local_path:
            print(f"  Local file  : {result.local_path}")
        if result.remote_path:
            print(f"  Remote path : {result.remote_path}")
        if result.pid is not None:
            print(f"  PID         : {result.pid}")
        if result.raw_output:
            print(f"  Raw output  : {result.raw_output.strip()}")
    return 0 if result.ok else 1


def handle_bootstrap(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    target = _build_target(args)
    if target.credential.kind != CredentialKind.PASSWORD:
        print("A password is required: pass --password or set HMIDEPLOY_PASSWORD")
        return 1
    return _report(service.ensure_trust(target, settings), args.json)


def handle_deploy(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    target = _build_target(args)
    result = service.deploy_script(
        target,
        settings,
        local_script=Path(args.script) if args.script else None,
        reboot=args.reboot,
    )
    return _report(result, args.json)


def handle_fetch(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    target = _build_target(args)
    return _report(service.download_latest(target, Path(args.dest), settings), args.json)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Deploy the HMI recording script and fetch telemetry over SSH")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # bootstrap
    bootstrap_parser = subparsers.add_parser("bootstrap", help="Initialize passwordless login on a device")
    _add_connection_arguments(bootstrap_parser)
    bootstrap_parser.set_defaults(handler=handle_bootstrap)

    # deploy
    deploy_parser = subparsers.add_parser("deploy", help="Upload (if needed) and start the recording script")
    _add_connection_arguments(deploy_parser)
    deploy_parser.add_argument("--script", type=str, default=None, help="Local script (default: bundled shell_recordHMI.sh)")
    deploy_parser.add_argument("--reboot", action="store_true", help="Reboot the device before starting the script")
    deploy_parser.set_defaults(handler=handle_deploy)

    # fetch
    fetch_parser = subparsers.add_parser("fetch", help="Download the latest telemetry file")
    _add_connection_arguments(fetch_parser)
    fetch_parser.add_argument("--dest", type=str, default="output/telemetry", help="Local directory (default: output/telemetry)")
    fetch_parser.set_defaults(handler=handle_fetch)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    handler: Callable[[argparse.Namespace], int] = args.handler
    try:
        return handler(args)
    except ValueError as exc:
        logger.error(f"Configuration error: {exc}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

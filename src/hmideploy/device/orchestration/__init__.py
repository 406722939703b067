"""
Deployment orchestration for the recording script.

The flow is an explicit state machine: every step handler returns a
``DeployEvent`` and the pure ``transition`` function picks the next state.

    IDLE -> PROBING -> CHECKING_EXISTENCE -> [UPLOADING] -> REBOOT_DECISION
         -> [REBOOTING -> WAITING_ONLINE] -> STARTING -> DONE | FAILED
"""
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from hmideploy.device import commands
from hmideploy.device.config import DeviceSettings
from hmideploy.device.errors import (
    CommandTimeoutError,
    ConnectivityError,
    DeviceError,
    HardRemoteFailure,
    RemoteStateError,
)
from hmideploy.device.retry import CHECK_POLICY, START_POLICY, RetryPolicy, is_hard_failure, is_transient, run_with_retry
from hmideploy.device.transport import Transport
from hmideploy.device.types import CommandResult, DeployJob, OperationResult

logger = logging.getLogger(__name__)


class DeployState(str, Enum):
    IDLE = "idle"
    PROBING = "probing"
    CHECKING_EXISTENCE = "checking_existence"
    UPLOADING = "uploading"
    REBOOT_DECISION = "reboot_decision"
    REBOOTING = "rebooting"
    WAITING_ONLINE = "waiting_online"
    STARTING = "starting"
    DONE = "done"
    FAILED = "failed"


class DeployEvent(str, Enum):
    LOCAL_SCRIPT_FOUND = "local_script_found"
    LOCAL_SCRIPT_MISSING = "local_script_missing"
    ONLINE = "online"
    UNREACHABLE = "unreachable"
    SCRIPT_PRESENT = "script_present"
    SCRIPT_ABSENT = "script_absent"
    CHECK_FAILED = "check_failed"
    UPLOADED = "uploaded"
    UPLOAD_FAILED = "upload_failed"
    REBOOT_REQUESTED = "reboot_requested"
    REBOOT_SKIPPED = "reboot_skipped"
    REBOOT_ISSUED = "reboot_issued"
    REBOOT_FAILED = "reboot_failed"
    ONLINE_TIMEOUT = "online_timeout"
    STARTED = "started"
    ALREADY_RUNNING = "already_running"
    START_AMBIGUOUS = "start_ambiguous"
    SCRIPT_MISSING = "script_missing"
    START_FAILED = "start_failed"


class InvalidTransition(ValueError):
    """Raised when an event is not valid in the current state."""


TERMINAL_STATES = frozenset({DeployState.DONE, DeployState.FAILED})

TRANSITIONS: Dict[Tuple[DeployState, DeployEvent], DeployState] = {
    (DeployState.IDLE, DeployEvent.LOCAL_SCRIPT_FOUND): DeployState.PROBING,
    (DeployState.IDLE, DeployEvent.LOCAL_SCRIPT_MISSING): DeployState.FAILED,
    (DeployState.PROBING, DeployEvent.ONLINE): DeployState.CHECKING_EXISTENCE,
    (DeployState.PROBING, DeployEvent.UNREACHABLE): DeployState.FAILED,
    (DeployState.CHECKING_EXISTENCE, DeployEvent.SCRIPT_PRESENT): DeployState.REBOOT_DECISION,
    (DeployState.CHECKING_EXISTENCE, DeployEvent.SCRIPT_ABSENT): DeployState.UPLOADING,
    (DeployState.CHECKING_EXISTENCE, DeployEvent.CHECK_FAILED): DeployState.FAILED,
    (DeployState.UPLOADING, DeployEvent.UPLOADED): DeployState.REBOOT_DECISION,
    (DeployState.UPLOADING, DeployEvent.UPLOAD_FAILED): DeployState.FAILED,
    (DeployState.REBOOT_DECISION, DeployEvent.REBOOT_SKIPPED): DeployState.STARTING,
    (DeployState.REBOOT_DECISION, DeployEvent.REBOOT_REQUESTED): DeployState.REBOOTING,
    (DeployState.REBOOTING, DeployEvent.REBOOT_ISSUED): DeployState.WAITING_ONLINE,
    (DeployState.REBOOTING, DeployEvent.REBOOT_FAILED): DeployState.FAILED,
    (DeployState.WAITING_ONLINE, DeployEvent.ONLINE): DeployState.STARTING,
    (DeployState.WAITING_ONLINE, DeployEvent.ONLINE_TIMEOUT): DeployState.FAILED,
    (DeployState.STARTING, DeployEvent.STARTED): DeployState.DONE,
    (DeployState.STARTING, DeployEvent.ALREADY_RUNNING): DeployState.DONE,
    (DeployState.STARTING, DeployEvent.START_AMBIGUOUS): DeployState.DONE,
    (DeployState.STARTING, DeployEvent.SCRIPT_MISSING): DeployState.FAILED,
    (DeployState.STARTING, DeployEvent.START_FAILED): DeployState.FAILED,
}


def transition(state: DeployState, event: DeployEvent) -> DeployState:
    """Return the state following ``event`` or raise ``InvalidTransition``."""
    key = (state, event)
    if key not in TRANSITIONS:
        raise InvalidTransition(f"Invalid transition: state={state.value}, event={event.value}")
    return TRANSITIONS[key]


@dataclass
class DeployRun:
    """Mutable context of one ``deploy`` call."""

    job: DeployJob
    script_existed: bool = False
    uploaded: bool = False
    rebooted: bool = False
    result: Optional[OperationResult] = None
    error: Optional[DeviceError] = None
    history: List[Tuple[DeployState, DeployEvent]] = field(default_factory=list)


class DeploymentOrchestrator:
    """Drives one deploy job from probe to single-instance start."""

    def __init__(
        self,
        transport: Transport,
        settings: Optional[DeviceSettings] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            transport: Transport for the job's device. Required.
            settings: Timeouts and poll parameters. Defaults to ``DeviceSettings()``.
            sleep: Sleep function (injected for tests).
            clock: Monotonic clock (injected for tests).
        """
        if transport is None:
            raise ValueError("transport is required")
        self.transport = transport
        self.settings = settings or DeviceSettings()
        self.sleep = sleep
        self.clock = clock
        self.check_policy = replace(CHECK_POLICY, interval=self.settings.retry_interval)
        self.start_policy = replace(START_POLICY, interval=self.settings.retry_interval)
        self._handlers: Dict[DeployState, Callable[[DeployRun], DeployEvent]] = {
            DeployState.IDLE: self._check_local_script,
            DeployState.PROBING: self._probe,
            DeployState.CHECKING_EXISTENCE: self._check_existence,
            DeployState.UPLOADING: self._upload,
            DeployState.REBOOT_DECISION: self._decide_reboot,
            DeployState.REBOOTING: self._reboot,
            DeployState.WAITING_ONLINE: self._wait_online,
            DeployState.STARTING: self._start,
        }
        self.last_run: Optional[DeployRun] = None

    def deploy(self, job: DeployJob) -> OperationResult:
        """Run ``job`` to a terminal state and return its outcome."""
        run = DeployRun(job=job)
        self.last_run = run
        state = DeployState.IDLE
        logger.info(f"Deploying {job.local_script_path} to {job.target.identity}:{job.remote_script_path}")

        while state not in TERMINAL_STATES:
            event = self._handlers[state](run)
            next_state = transition(state, event)
            run.history.append((state, event))
            logger.debug(f"{state.value} --{event.value}--> {next_state.value}")
            state = next_state

        if run.result is None:
            run.result = OperationResult(ok=state == DeployState.DONE, message=state.value)
        if run.result.ok:
            logger.info(run.result.message)
        else:
            logger.error(run.result.message)
        return run.result

    # -- step handlers ------------------------------------------------------

    def _check_local_script(self, run: DeployRun) -> DeployEvent:
        if not run.job.local_script_path.is_file():
            return self._fail(
                run,
                DeployEvent.LOCAL_SCRIPT_MISSING,
                DeviceError(f"Local script not found: {run.job.local_script_path}"),
            )
        return DeployEvent.LOCAL_SCRIPT_FOUND

    def _probe(self, run: DeployRun) -> DeployEvent:
        result = self._probe_once()
        if not self._is_online(result):
            # One more try: the first session after idle often trips on a blip.
            result = self._probe_once()
        if self._is_online(result):
            return DeployEvent.ONLINE

        if result.timed_out:
            error: DeviceError = CommandTimeoutError(
                "Connection timed out: ssh may be waiting for interactive input "
                "(host key confirmation or password). Initialize passwordless login first.",
                result,
            )
        else:
            error = ConnectivityError(f"Cannot reach device {run.job.target.identity}: {result.diagnostic()}", result)
        return self._fail(run, DeployEvent.UNREACHABLE, error)

    def _check_existence(self, run: DeployRun) -> DeployEvent:
        command = commands.file_exists(run.job.remote_script_path)
        result = self._exec_with_retry(command, self.settings.check_timeout, self.check_policy)
        if result.timed_out:
            return self._fail(
                run,
                DeployEvent.CHECK_FAILED,
                CommandTimeoutError(
                    f"Cannot check remote state: ssh timed out after {self.settings.check_timeout:g}s", result
                ),
            )
        if not result.ok:
            return self._fail(
                run,
                DeployEvent.CHECK_FAILED,
                ConnectivityError(f"Cannot check remote state: {result.diagnostic()}", result),
            )

        run.script_existed = commands.EXISTS_MARKER in result.output
        if run.script_existed:
            logger.info(f"Remote script already present: {run.job.remote_script_path}")
            return DeployEvent.SCRIPT_PRESENT
        return DeployEvent.SCRIPT_ABSENT

    def _upload(self, run: DeployRun) -> DeployEvent:
        logger.info(f"Uploading {run.job.local_script_path} -> {run.job.remote_script_path}")
        result = self.transport.upload(
            str(run.job.local_script_path),
            run.job.remote_script_path,
            self.settings.upload_timeout,
        )
        if result.timed_out:
            return self._fail(
                run,
                DeployEvent.UPLOAD_FAILED,
                CommandTimeoutError(
                    f"Upload timed out after {self.settings.upload_timeout:g}s: the transfer may be "
                    "waiting for interactive input. Initialize passwordless login first.",
                    result,
                ),
            )
        if not result.ok:
            return self._fail(
                run,
                DeployEvent.UPLOAD_FAILED,
                ConnectivityError(f"Upload failed: {result.diagnostic()}", result),
            )
        run.uploaded = True
        return DeployEvent.UPLOADED

    def _decide_reboot(self, run: DeployRun) -> DeployEvent:
        return DeployEvent.REBOOT_REQUESTED if run.job.reboot_first else DeployEvent.REBOOT_SKIPPED

    def _reboot(self, run: DeployRun) -> DeployEvent:
        logger.info(f"Rebooting {run.job.target.identity}")
        result = self.transport.exec(commands.reboot(), self.settings.reboot_timeout)
        run.rebooted = True

        # The reboot severs the session, so only unambiguous shell errors count.
        if result.timed_out:
            logger.info("Reboot command did not return; assuming the device is restarting")
        elif not result.ok and is_hard_failure(result) and not is_transient(result):
            return self._fail(
                run,
                DeployEvent.REBOOT_FAILED,
                HardRemoteFailure(f"Reboot failed: {result.diagnostic()}", result),
            )
        elif not result.ok:
            logger.info(f"Reboot dropped the connection as expected: {result.diagnostic()[:200]}")
        return DeployEvent.REBOOT_ISSUED

    def _wait_online(self, run: DeployRun) -> DeployEvent:
        ceiling = self.settings.online_wait_ceiling
        interval = self.settings.online_poll_interval
        logger.info(f"Waiting for {run.job.target.identity} to come back online (timeout: {ceiling:g}s)...")

        start = self.clock()
        # sshd can still answer until the reboot takes hold.
        self.sleep(interval)
        attempt = 0
        while self.clock() - start < ceiling:
            attempt += 1
            if self._is_online(self._probe_once()):
                logger.info(f"Device online after {attempt} attempts")
                return DeployEvent.ONLINE
            logger.debug(f"  Attempt {attempt} failed, retrying in {interval:g}s...")
            self.sleep(interval)

        return self._fail(
            run,
            DeployEvent.ONLINE_TIMEOUT,
            CommandTimeoutError(f"Reboot timeout: device did not come back online within {ceiling:g}s"),
        )

    def _start(self, run: DeployRun) -> DeployEvent:
        job = run.job
        command = commands.start_single_instance(job.remote_script_path, job.remote_log_path, job.remote_pid_file)
        result = self._exec_with_retry(command, self.settings.start_timeout, self.start_policy)
        outcome = commands.parse_start_output(result.output)

        if outcome.missing:
            return self._fail(
                run,
                DeployEvent.SCRIPT_MISSING,
                RemoteStateError(
                    f"Remote script not found: {job.remote_script_path} (check the upload path and permissions)",
                    result,
                ),
            )
        if result.timed_out:
            return self._fail(
                run,
                DeployEvent.START_FAILED,
                CommandTimeoutError(
                    f"Start command timed out after {self.settings.start_timeout:g}s: "
                    "remote shell blocked or ssh unstable",
                    result,
                ),
            )
        if not result.ok and not outcome.recognised:
            detail = f"{result.stderr} {result.stdout}".strip()
            error_type = HardRemoteFailure if is_hard_failure(result) else ConnectivityError
            return self._fail(run, DeployEvent.START_FAILED, error_type(f"Start command failed: {detail}", result))

        if outcome.already_running:
            message = "Script already running (not restarted)"
            if run.rebooted:
                message = "Device rebooted; script already running (not restarted)"
            run.result = OperationResult(ok=True, message=message, remote_path=job.remote_script_path, pid=outcome.pid)
            return DeployEvent.ALREADY_RUNNING

        if outcome.started:
            if run.rebooted:
                message = "Device rebooted and script started"
            elif run.script_existed:
                message = "Script already present; started (single instance)"
            else:
                message = "Script uploaded and started (single instance)"
            run.result = OperationResult(ok=True, message=message, remote_path=job.remote_script_path, pid=outcome.pid)
            return DeployEvent.STARTED

        # Some device shells do not echo reliably; report success but surface the raw output.
        logger.warning(f"Unrecognised start output from {job.target.identity}: {result.output!r}")
        run.result = OperationResult(
            ok=True,
            message=f"Start command sent but no confirmation received. Check {job.remote_log_path}",
            remote_path=job.remote_script_path,
            raw_output=result.output,
        )
        return DeployEvent.START_AMBIGUOUS

    # -- helpers ------------------------------------------------------------

    def _probe_once(self) -> CommandResult:
        return self.transport.exec(commands.probe_online(), self.settings.probe_timeout)

    @staticmethod
    def _is_online(result: CommandResult) -> bool:
        return result.ok and commands.ONLINE_MARKER in (result.stdout or "")

    def _exec_with_retry(self, command: str, timeout: float, policy: RetryPolicy) -> CommandResult:
        return run_with_retry(self.transport.exec, command, timeout, policy, sleep=self.sleep)

    @staticmethod
    def _fail(run: DeployRun, event: DeployEvent, error: DeviceError) -> DeployEvent:
        run.error = error
        run.result = OperationResult(ok=False, message=str(error))
        return event

"""Transient-failure classification and bounded retries for remote commands."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from hmideploy.device.types import CommandResult

logger = logging.getLogger(__name__)

# Connectivity hiccups worth another attempt. Matched against lower-cased stdout+stderr.
TRANSIENT_PHRASES = (
    "connection reset",
    "connection refused",
    "connection timed out",
    "broken pipe",
    "closed by remote host",
    "connection closed",
    "banner exchange",
    "error reading ssh protocol banner",
)

# Text that means the command itself failed; never a benign disconnect.
HARD_FAILURE_PHRASES = (
    "permission denied",
    "not found",
)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    interval: float

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.interval < 0:
            raise ValueError("interval must be non-negative")


CHECK_POLICY = RetryPolicy(max_attempts=3, interval=2.0)
START_POLICY = RetryPolicy(max_attempts=3, interval=2.0)
TRUST_POLICY = RetryPolicy(max_attempts=2, interval=2.0)


def is_transient(result: CommandResult) -> bool:
    """Return True if a failed result looks like a one-off connectivity blip."""
    if result.ok:
        return False
    text = result.output.lower()
    return any(phrase in text for phrase in TRANSIENT_PHRASES)


def is_hard_failure(result: CommandResult) -> bool:
    """Return True for explicit shell errors (permission / command not found / usage)."""
    text = result.output.lower()
    if any(phrase in text for phrase in HARD_FAILURE_PHRASES):
        return True
    return "reboot:" in text and "usage" in text


def run_with_retry(
    execute: Callable[[str, float], CommandResult],
    command: str,
    timeout: float,
    policy: RetryPolicy,
    sleep: Optional[Callable[[float], None]] = None,
) -> CommandResult:
    """
    Run ``command`` through ``execute`` and retry transient failures.

    Args:
        execute: Callable taking (command, timeout), e.g. ``Transport.exec``.
        command: Remote command text.
        timeout: Per-attempt timeout in seconds.
        policy: Attempt bound and spacing.
        sleep: Sleep function (defaults to ``time.sleep``).

    Returns:
        The first successful or non-transient result, or the last result once
        ``policy.max_attempts`` attempts are spent.
    """
    sleep = sleep or time.sleep
    result = execute(command, timeout)
    attempt = 1
    while not result.ok and is_transient(result) and attempt < policy.max_attempts:
        logger.warning(
            f"Transient failure (attempt {attempt}/{policy.max_attempts}): "
            f"{result.diagnostic()[:200]}. Retrying in {policy.interval:g}s..."
        )
        sleep(policy.interval)
        result = execute(command, timeout)
        attempt += 1
    return result

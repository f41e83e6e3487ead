from __future__ import annotations

import logging
import subprocess
import time
from typing import Callable, Sequence

import click


LOGGER = logging.getLogger("docker_step")


def _run_command(command: Sequence[str]) -> int:
    return subprocess.run(list(command), check=False).returncode


def backoff_seconds(attempt: int) -> int:
    """Delay slept before ``attempt`` (1-based): 0s before the 2nd try, 2s before the 3rd."""
    return max(attempt - 2, 0) * 2


def run_with_retries(
    max_attempts: int,
    command: Sequence[str],
    *,
    runner: Callable[[Sequence[str]], int] = _run_command,
    sleep: Callable[[float], None] | None = None,
) -> int:
    """Run ``command`` up to ``max_attempts`` times and return its final exit code.

    ``max_attempts == 0`` disables retries: the first failure is returned as-is.
    """
    if max_attempts < 0:
        raise ValueError(f"max_attempts must not be negative: {max_attempts}")

    sleeper = sleep or time.sleep
    attempts = 1
    while True:
        LOGGER.debug("Attempt %d of %d: %s", attempts, max_attempts, " ".join(command))
        status = runner(command)
        if status == 0:
            return 0
        click.echo(f"Exited with {status}", err=True)
        if max_attempts == 0:
            return status
        if attempts >= max_attempts:
            click.echo(f"Failed {attempts} retries", err=True)
            return status
        click.echo(f"Retrying {max_attempts - attempts} more times...", err=True)
        attempts += 1
        sleeper(backoff_seconds(attempts))

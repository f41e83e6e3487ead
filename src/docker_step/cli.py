from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import sys
from typing import Iterable, Mapping

import click

from docker_step.assembler import JOB_ID_LABEL, RunPlan, assemble_run_plan
from docker_step.environment import EnvironmentView, plugin_key
from docker_step.errors import DockerCommandError
from docker_step.platforms import platform_defaults
from docker_step.retry import run_with_retries


DOCKER_BINARY = "docker"
LOG_LEVEL_CHOICES = ("debug", "info", "warning", "error")
DEFAULT_LOG_LEVEL = "warning"
PATH_CONVERSION_ENV = "MSYS_NO_PATHCONV"

LOGGER = logging.getLogger("docker_step")
LOGGER.addHandler(logging.NullHandler())


def _normalize_log_level(value: object) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in LOG_LEVEL_CHOICES:
        return normalized
    return DEFAULT_LOG_LEVEL


def _configure_logging(level: str) -> None:
    normalized = _normalize_log_level(level)
    handler = logging.StreamHandler(sys.__stderr__)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    LOGGER.handlers.clear()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(getattr(logging, normalized.upper(), logging.WARNING))
    LOGGER.propagate = False


def _docker_available() -> bool:
    return shutil.which(DOCKER_BINARY) is not None


def _run(cmd: Iterable[str], env: Mapping[str, str] | None = None) -> int:
    command = list(cmd)
    LOGGER.debug("Running %s", shlex.join(command))
    return subprocess.run(command, env=dict(env) if env is not None else None, check=False).returncode


def _capture(cmd: Iterable[str]) -> subprocess.CompletedProcess[str]:
    command = list(cmd)
    LOGGER.debug("Querying %s", shlex.join(command))
    return subprocess.run(command, check=False, text=True, capture_output=True)


def _docker_network_exists(name: str) -> bool:
    result = _capture([DOCKER_BINARY, "network", "ls", "--quiet", "--filter", f"name={name}"])
    if result.returncode != 0:
        raise DockerCommandError(
            f"Unable to list docker networks: {result.stderr.strip() or result.stdout.strip()}",
            returncode=result.returncode,
        )
    return bool(result.stdout.strip())


def _ensure_network(name: str) -> None:
    if _docker_network_exists(name):
        click.echo(f"docker network {name} already exists")
        return
    click.echo(f"creating network {name}")
    returncode = _run([DOCKER_BINARY, "network", "create", name])
    if returncode != 0:
        raise DockerCommandError(f"Failed to create docker network {name}", returncode=returncode)


def _pull_image(image: str, retries: int) -> None:
    click.echo(f"--- :docker: Pulling {image}")
    returncode = run_with_retries(retries, [DOCKER_BINARY, "pull", image], runner=_run)
    if returncode != 0:
        raise DockerCommandError(f"Pull failed for {image}", returncode=returncode)


def _run_environment(plan: RunPlan) -> dict[str, str] | None:
    if not plan.platform.is_windows:
        return None
    # Git for Windows must not rewrite the already-resolved paths and options.
    env = dict(os.environ)
    env[PATH_CONVERSION_ENV] = "1"
    return env


def _exit_status(returncode: int) -> int:
    # subprocess reports a signal death as -signum; shells report 128 + signum.
    if returncode < 0:
        return 128 - returncode
    return returncode


def _docker_run_command(plan: RunPlan) -> list[str]:
    return [DOCKER_BINARY, "run", *plan.args]


def _execute_run_plan(plan: RunPlan) -> int:
    if plan.network:
        _ensure_network(plan.network)
    if plan.pull:
        _pull_image(plan.image, plan.pull_retries)

    click.echo(f"--- :docker: Running command in {plan.image}")
    click.echo(f"$ {shlex.join(_docker_run_command(plan))}", err=True)
    return _exit_status(_run(_docker_run_command(plan), env=_run_environment(plan)))


def _docker_container_ids_for_job(job_id: str) -> list[str]:
    result = _capture([DOCKER_BINARY, "ps", "-a", "-q", "--filter", f"label={JOB_ID_LABEL}={job_id}"])
    if result.returncode != 0:
        click.echo(
            f"Warning: unable to list containers for job {job_id}: {result.stderr.strip()}",
            err=True,
        )
        return []
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def _docker_rm_force(container_ids: list[str]) -> None:
    result = _capture([DOCKER_BINARY, "rm", "-f", *container_ids])
    if result.returncode != 0:
        click.echo(
            f"Warning: unable to remove containers {' '.join(container_ids)}: {result.stderr.strip()}",
            err=True,
        )


@click.group(help="Run a Buildkite step inside a docker container configured through plugin environment variables.")
@click.option(
    "--log-level",
    default=DEFAULT_LOG_LEVEL,
    show_default=True,
    type=click.Choice(LOG_LEVEL_CHOICES, case_sensitive=False),
    help="Verbosity of the docker_step logger.",
)
@click.pass_context
def main(ctx: click.Context, log_level: str) -> None:
    view = EnvironmentView.from_environ()
    if view.flag(plugin_key("DEBUG")):
        log_level = "debug"
    _configure_logging(log_level)
    ctx.obj = view


@main.command(help="Assemble the docker run command for this step and execute it.")
@click.pass_context
def run(ctx: click.Context) -> None:
    view: EnvironmentView = ctx.obj
    plan = assemble_run_plan(view, defaults=platform_defaults())
    if not _docker_available():
        raise click.ClickException(f"{DOCKER_BINARY} command not found in PATH")
    ctx.exit(_execute_run_plan(plan))


@main.command(help="Remove containers left behind by this job.")
@click.pass_context
def cleanup(ctx: click.Context) -> None:
    view: EnvironmentView = ctx.obj
    if view.flag(plugin_key("LEAVE_CONTAINER")):
        LOGGER.debug("Leaving containers in place for inspection.")
        return
    job_id = view.value("BUILDKITE_JOB_ID")
    if not job_id:
        LOGGER.debug("No BUILDKITE_JOB_ID set; nothing to clean up.")
        return
    container_ids = _docker_container_ids_for_job(job_id)
    if not container_ids:
        return
    click.echo(f"~~~ :docker: Cleaning up left-over containers for job {job_id}")
    _docker_rm_force(container_ids)


if __name__ == "__main__":
    main()

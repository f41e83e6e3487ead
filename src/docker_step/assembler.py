from __future__ import annotations

import logging
import os
import shutil
import stat
from dataclasses import dataclass
from pathlib import Path

import click

from docker_step.environment import (
    EnvironmentView,
    is_falsy,
    names_present,
    plugin_key,
    read_list,
    scan_indexed,
)
from docker_step.errors import ConfigurationError
from docker_step.paths import expand_relative_volume_path
from docker_step.platforms import PlatformDefaults, platform_defaults


DEFAULT_PULL_RETRIES = 3
JOB_ID_LABEL = "com.buildkite.job-id"
AGENT_BINARY_NAME = "buildkite-agent"
AGENT_CONTAINER_PATH = "/usr/bin/buildkite-agent"
AGENT_IDENTITY_ENV = ("BUILDKITE_JOB_ID", "BUILDKITE_BUILD_ID", "BUILDKITE_AGENT_ACCESS_TOKEN")
AWS_AUTH_ENV = (
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_SESSION_TOKEN",
    "AWS_REGION",
    "AWS_DEFAULT_REGION",
)
SSH_AGENT_CONTAINER_SOCKET = "/ssh-agent"
SSH_KNOWN_HOSTS_CONTAINER_PATH = "/root/.ssh/known_hosts"
SHELL_STRING_ERROR = (
    "The Docker Plugin's shell configuration option must be specified as an array. "
    'Please update your pipeline.yml to use an array, for example: ["/bin/sh", "-e", "-u"]. '
    "Note that a shell will be inferred if one is required, so you might be able to remove the option entirely."
)

LOGGER = logging.getLogger("docker_step")


@dataclass(frozen=True)
class ListOption:
    keys: tuple[str, ...]
    flag: str

    def emit(self, view: EnvironmentView) -> list[str]:
        values, _found = read_list(view, *(plugin_key(key) for key in self.keys))
        return _pairs(self.flag, values)


@dataclass(frozen=True)
class ScalarOption:
    key: str
    flag: str
    joined: bool = False

    def emit(self, view: EnvironmentView) -> list[str]:
        value = view.value(plugin_key(self.key))
        if not value:
            return []
        if self.joined:
            return [f"{self.flag}={value}"]
        return [self.flag, value]


LIST_OPTIONS: tuple[ListOption, ...] = (
    ListOption(("DEVICES",), "--device"),
    ListOption(("SYSCTLS",), "--sysctl"),
    ListOption(("ADD_CAPS",), "--cap-add"),
    ListOption(("DROP_CAPS",), "--cap-drop"),
    ListOption(("SECURITY_OPTS",), "--security-opt"),
    ListOption(("PUBLISH",), "--publish"),
)

SCALAR_OPTIONS: tuple[ScalarOption, ...] = (
    ScalarOption("PLATFORM", "--platform"),
    ScalarOption("PID", "--pid"),
    ScalarOption("GPUS", "--gpus"),
    ScalarOption("RUNTIME", "--runtime"),
    ScalarOption("IPC", "--ipc"),
    ScalarOption("STORAGE_OPT", "--storage-opt"),
    ScalarOption("SHM_SIZE", "--shm-size"),
    ScalarOption("CPUS", "--cpus", joined=True),
    ScalarOption("MEMORY", "--memory", joined=True),
    ScalarOption("MEMORY_SWAP", "--memory-swap", joined=True),
    ScalarOption("MEMORY_SWAPPINESS", "--memory-swappiness", joined=True),
)


@dataclass(frozen=True)
class RunPlan:
    args: tuple[str, ...]
    image: str
    platform: PlatformDefaults
    network: str = ""
    pull: bool = False
    pull_retries: int = DEFAULT_PULL_RETRIES


def _pairs(flag: str, values: list[str]) -> list[str]:
    args: list[str] = []
    for value in values:
        args.extend([flag, value])
    return args


def _invoking_user() -> str:
    return f"{os.getuid()}:{os.getgid()}"


def _is_socket(path: str) -> bool:
    try:
        return stat.S_ISSOCK(os.stat(path).st_mode)
    except OSError:
        return False


def _read_env_file_names(path: str) -> list[str]:
    try:
        lines = Path(path).read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeError) as exc:
        raise ConfigurationError(f"Unable to read BUILDKITE_ENV_FILE {path}: {exc}") from exc
    names: list[str] = []
    for line in lines:
        if not line:
            continue
        name, _, _ = line.partition("=")
        names.append(name)
    return names


def _parse_pull_retries(view: EnvironmentView) -> int:
    raw_value = view.value(plugin_key("PULL_RETRIES")).strip()
    if not raw_value:
        return DEFAULT_PULL_RETRIES
    if not raw_value.isdigit():
        raise ConfigurationError(
            f"Invalid {plugin_key('PULL_RETRIES')}: {raw_value!r} (expected a non-negative integer)"
        )
    return int(raw_value, 10)


def _container_flags(view: EnvironmentView, defaults: PlatformDefaults) -> list[str]:
    args: list[str] = []
    if view.flag(plugin_key("TTY"), "on" if defaults.tty else ""):
        args.append("-t")
    if view.flag(plugin_key("INTERACTIVE"), "on" if defaults.interactive else ""):
        args.append("-i")
    if not view.flag(plugin_key("LEAVE_CONTAINER"), "off"):
        args.append("--rm")
    if view.flag(plugin_key("INIT"), "on" if defaults.init else ""):
        args.append("--init")
    return args


def _resolve_workdir(view: EnvironmentView, defaults: PlatformDefaults) -> str:
    # An empty result means no --workdir argument at all.
    explicit = view.value(plugin_key("WORKDIR"))
    if explicit:
        return explicit
    if view.flag(plugin_key("MOUNT_CHECKOUT"), "on"):
        return defaults.workdir
    return ""


def _checkout_mounts(view: EnvironmentView, defaults: PlatformDefaults, workdir: str) -> list[str]:
    if not view.flag(plugin_key("MOUNT_CHECKOUT"), "on"):
        return []
    args = ["--volume", f"{defaults.pwd}:{workdir}"]
    mirror = view.value("BUILDKITE_REPO_MIRROR")
    if mirror:
        args.extend(["--volume", f"{mirror}:{mirror}:ro"])
    return args


def _volume_mounts(view: EnvironmentView, defaults: PlatformDefaults) -> list[str]:
    volumes, _found = read_list(view, plugin_key("VOLUMES"), plugin_key("MOUNTS"))
    return _pairs("--volume", [expand_relative_volume_path(volume, defaults.pwd) for volume in volumes])


def _user_args(view: EnvironmentView) -> list[str]:
    user = view.value(plugin_key("USER"))
    propagate_uid_gid = view.flag(plugin_key("PROPAGATE_UID_GID"))
    if user and propagate_uid_gid:
        raise ConfigurationError("Can't set both user and propagate-uid-gid")
    if user:
        return ["-u", user]
    if propagate_uid_gid:
        return ["-u", _invoking_user()]
    return []


def _userns_args(view: EnvironmentView) -> list[str]:
    userns = view.value(plugin_key("USERNS"))
    if not userns:
        return []
    # docker refuses remapped user namespaces for privileged containers.
    if view.flag(plugin_key("PRIVILEGED")):
        return ["--userns", "host"]
    return ["--userns", userns]


def _ssh_agent_args(view: EnvironmentView) -> list[str]:
    if not view.flag(plugin_key("MOUNT_SSH_AGENT")):
        return []
    socket_path = view.value("SSH_AUTH_SOCK")
    if not socket_path:
        raise ConfigurationError("$SSH_AUTH_SOCK isn't set, has ssh-agent started?")
    if not _is_socket(socket_path):
        raise ConfigurationError(
            f"The file at {socket_path} does not exist or is not a socket, was ssh-agent started?"
        )
    home = view.value("HOME") or str(Path.home())
    return [
        "--env",
        f"SSH_AUTH_SOCK={SSH_AGENT_CONTAINER_SOCKET}",
        "--volume",
        f"{socket_path}:{SSH_AGENT_CONTAINER_SOCKET}",
        "--volume",
        f"{home}/.ssh/known_hosts:{SSH_KNOWN_HOSTS_CONTAINER_PATH}",
    ]


def _agent_mount_args(view: EnvironmentView, defaults: PlatformDefaults) -> list[str]:
    if not view.flag(plugin_key("MOUNT_BUILDKITE_AGENT"), "on" if defaults.mount_agent else ""):
        return []
    binary_path = view.value("BUILDKITE_AGENT_BINARY_PATH")
    if not binary_path:
        binary_path = shutil.which(AGENT_BINARY_NAME) or ""
        LOGGER.debug("Discovered %s on PATH: %r", AGENT_BINARY_NAME, binary_path)
    if not binary_path:
        click.echo(
            f"Warning: failed to find {AGENT_BINARY_NAME} in PATH to mount into container, "
            "you can disable this behaviour with 'mount-buildkite-agent: false'",
            err=True,
        )
        return []
    args: list[str] = []
    for name in AGENT_IDENTITY_ENV:
        args.extend(["--env", name])
    args.extend(["--volume", f"{binary_path}:{AGENT_CONTAINER_PATH}:ro"])
    return args


def _propagated_environment_args(view: EnvironmentView) -> list[str]:
    if not view.flag(plugin_key("PROPAGATE_ENVIRONMENT")):
        return []
    env_file = view.value("BUILDKITE_ENV_FILE")
    if not env_file:
        click.echo(
            "Warning: not propagating environment variables to container as $BUILDKITE_ENV_FILE is not set",
            err=True,
        )
        return []
    # Names only; docker resolves the values from its own environment.
    return _pairs("--env", _read_env_file_names(env_file))


def _aws_auth_args(view: EnvironmentView) -> list[str]:
    if not view.flag(plugin_key("PROPAGATE_AWS_AUTH_TOKENS")):
        return []
    return _pairs("--env", names_present(view, AWS_AUTH_ENV))


def _resolve_entrypoint_and_shell(view: EnvironmentView) -> tuple[list[str], list[str] | None]:
    """Return the entrypoint arguments and the shell tokens.

    Shell tokens are ``[]`` when the shell is disabled and ``None`` when nothing
    was configured and a default shell may be inferred.
    """
    entrypoint_key = plugin_key("ENTRYPOINT")
    if view.is_set(entrypoint_key):
        return ["--entrypoint", view.value(entrypoint_key)], []
    shell_key = plugin_key("SHELL")
    shell_value = view.value(shell_key)
    if is_falsy(shell_value):
        return [], []
    if shell_value:
        raise ConfigurationError(SHELL_STRING_ERROR)
    shell, found = read_list(view, shell_key)
    if found:
        return [], shell
    return [], None


def assemble_run_plan(
    view: EnvironmentView,
    *,
    defaults: PlatformDefaults | None = None,
) -> RunPlan:
    """Translate the plugin configuration in ``view`` into a ``docker run`` plan.

    Every configuration error is raised from here, before docker is touched.
    """
    platform = defaults if defaults is not None else platform_defaults()

    image = view.value(plugin_key("IMAGE"))
    if not image:
        raise ConfigurationError(f"{plugin_key('IMAGE')} is required")

    step_command = view.value("BUILDKITE_COMMAND")
    plugin_command, has_plugin_command = read_list(view, plugin_key("COMMAND"))
    if has_plugin_command and step_command:
        raise ConfigurationError("Can't use both a step level command and the command parameter of the plugin")

    entrypoint_args, shell = _resolve_entrypoint_and_shell(view)
    if shell is None:
        shell = list(platform.default_shell)

    pull_retries = _parse_pull_retries(view)
    user_args = _user_args(view)
    network = view.value(plugin_key("NETWORK"))
    workdir = _resolve_workdir(view, platform)

    args = _container_flags(view, platform)
    args.extend(ListOption(("TMPFS",), "--tmpfs").emit(view))
    args.extend(_checkout_mounts(view, platform, workdir))
    args.extend(_volume_mounts(view, platform))
    for option in LIST_OPTIONS:
        args.extend(option.emit(view))
    if workdir:
        args.extend(["--workdir", workdir])
    args.extend(user_args)
    args.extend(_pairs("--group-add", scan_indexed(view, plugin_key("ADDITIONAL_GROUPS"))))
    args.extend(_userns_args(view))
    args.extend(_ssh_agent_args(view))
    if network:
        args.extend(["--network", network])
    for scalar_option in SCALAR_OPTIONS:
        args.extend(scalar_option.emit(view))
    args.extend(_agent_mount_args(view, platform))
    args.extend(_propagated_environment_args(view))
    args.extend(_aws_auth_args(view))
    args.extend(_pairs("--env", scan_indexed(view, plugin_key("ENVIRONMENT"))))
    args.extend(_pairs("--add-host", scan_indexed(view, plugin_key("ADD_HOST"))))
    if view.flag(plugin_key("PRIVILEGED")):
        args.append("--privileged")
    args.extend(entrypoint_args)

    args.extend(["--label", f"{JOB_ID_LABEL}={view.value('BUILDKITE_JOB_ID')}"])
    args.append(image)
    args.extend(shell)
    if step_command:
        args.append(platform.join_step_command(step_command))
    elif has_plugin_command:
        args.extend(plugin_command)

    LOGGER.debug("Assembled docker run arguments: %s", args)
    return RunPlan(
        args=tuple(args),
        image=image,
        platform=platform,
        network=network,
        pull=view.flag(plugin_key("ALWAYS_PULL")),
        pull_retries=pull_retries,
    )

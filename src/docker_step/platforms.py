from __future__ import annotations

import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from typing import Callable


PLATFORM_POSIX = "posix"
PLATFORM_WINDOWS = "windows"
PLATFORM_MACOS = "macos"
POSIX_DEFAULT_WORKDIR = "/workdir"
WINDOWS_DEFAULT_WORKDIR = "C:\\workdir"
POSIX_DEFAULT_SHELL = ("/bin/sh", "-e", "-c")
WINDOWS_DEFAULT_SHELL = ("CMD.EXE", "/c")
WINDOWS_COMMAND_SEPARATOR = " && "

LOGGER = logging.getLogger("docker_step")


@dataclass(frozen=True)
class PlatformDefaults:
    family: str
    tty: bool
    interactive: bool
    init: bool
    mount_agent: bool
    workdir: str
    pwd: str

    @property
    def is_windows(self) -> bool:
        return self.family == PLATFORM_WINDOWS

    @property
    def default_shell(self) -> tuple[str, ...]:
        return WINDOWS_DEFAULT_SHELL if self.is_windows else POSIX_DEFAULT_SHELL

    def join_step_command(self, command: str) -> str:
        # CMD.EXE only chains statements with &&.
        if self.is_windows:
            return command.replace("\n", WINDOWS_COMMAND_SEPARATOR)
        return command


def platform_family(platform: str | None = None) -> str:
    identifier = str(sys.platform if platform is None else platform).strip().lower()
    if identifier.startswith(("win", "msys", "cygwin")):
        return PLATFORM_WINDOWS
    if identifier.startswith("darwin"):
        return PLATFORM_MACOS
    return PLATFORM_POSIX


def _process_cwd() -> str:
    return os.getcwd()


def _windows_shell_cwd() -> str:
    result = subprocess.run(
        ["cmd.exe", "/C", "echo %CD%"],
        check=True,
        text=True,
        capture_output=True,
    )
    return result.stdout.strip()


def platform_defaults(
    platform: str | None = None,
    *,
    process_cwd: Callable[[], str] = _process_cwd,
    shell_cwd: Callable[[], str] = _windows_shell_cwd,
) -> PlatformDefaults:
    family = platform_family(platform)
    if family == PLATFORM_WINDOWS:
        defaults = PlatformDefaults(
            family=family,
            tty=False,
            interactive=True,
            init=False,
            mount_agent=False,
            workdir=WINDOWS_DEFAULT_WORKDIR,
            pwd=shell_cwd(),
        )
    else:
        defaults = PlatformDefaults(
            family=family,
            tty=True,
            interactive=True,
            init=True,
            mount_agent=family != PLATFORM_MACOS,
            workdir=POSIX_DEFAULT_WORKDIR,
            pwd=process_cwd(),
        )
    LOGGER.debug("Resolved platform defaults: %s", defaults)
    return defaults

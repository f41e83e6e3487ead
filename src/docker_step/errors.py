from __future__ import annotations

import click


class ConfigurationError(click.ClickException):
    """Invalid plugin configuration detected before docker is invoked."""

    exit_code = 1


class DockerCommandError(click.ClickException):
    """A docker invocation failed; the process exits with docker's own status."""

    def __init__(self, message: str, *, returncode: int) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.exit_code = returncode if returncode > 0 else 1

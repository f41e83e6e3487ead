from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping

from docker_step.errors import ConfigurationError


PLUGIN_PREFIX = "BUILDKITE_PLUGIN_DOCKER"
TRUTHY_VALUES = frozenset({"true", "on", "1"})
FALSY_VALUES = frozenset({"false", "off", "0"})


def plugin_key(name: str) -> str:
    return f"{PLUGIN_PREFIX}_{name}"


def is_truthy(value: str | None) -> bool:
    return value in TRUTHY_VALUES


def is_falsy(value: str | None) -> bool:
    return value in FALSY_VALUES


@dataclass(frozen=True)
class EnvironmentView:
    """Read-only snapshot of the process environment.

    Captured once at process entry so that every lookup during assembly sees the
    same values. ``get`` distinguishes a variable that is unset (``None``) from one
    that is set to the empty string.
    """

    variables: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> "EnvironmentView":
        source = os.environ if environ is None else environ
        return cls(dict(source))

    def get(self, name: str, default: str | None = None) -> str | None:
        return self.variables.get(name, default)

    def is_set(self, name: str) -> bool:
        return name in self.variables

    def value(self, name: str) -> str:
        return str(self.variables.get(name) or "")

    def flag(self, name: str, default: str = "") -> bool:
        """Truthy match of ``name`` against ``{true, on, 1}``; unset or empty falls back to ``default``."""
        return is_truthy(self.variables.get(name) or default)

    def names(self) -> list[str]:
        return sorted(self.variables)


def read_list(view: EnvironmentView, *prefixes: str) -> tuple[list[str], bool]:
    """Decode list options spread over ``PREFIX_0, PREFIX_1, ...``.

    Indices are read in order until the first missing one, so a gap truncates the
    list. A non-empty scalar stored under the prefix itself is rejected.
    """
    result: list[str] = []
    for prefix in prefixes:
        if view.value(prefix):
            raise ConfigurationError(f"Plugin received a string for {prefix}, expected an array")
        index = 0
        while True:
            item = view.value(f"{prefix}_{index}")
            if not item:
                break
            result.append(item)
            index += 1
    return result, bool(result)


def _indexed_name_pattern(prefix: str) -> re.Pattern[str]:
    return re.compile(re.escape(prefix) + r"_[0-9]+")


def scan_indexed(view: EnvironmentView, prefix: str) -> list[str]:
    # Names sort as plain strings: PREFIX_10 comes before PREFIX_2.
    pattern = _indexed_name_pattern(prefix)
    return [view.value(name) for name in view.names() if pattern.fullmatch(name)]


def names_present(view: EnvironmentView, names: Iterable[str]) -> list[str]:
    return [name for name in names if view.value(name)]

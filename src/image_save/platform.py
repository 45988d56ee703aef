from __future__ import annotations

import platform as py_platform
import re
from dataclasses import dataclass
from typing import Sequence


@dataclass(frozen=True)
class Platform:
    """Platform a manifest targets. Any field may be empty (unknown)"""

    architecture: str = ""
    os: str = ""
    variant: str = ""
    os_version: str = ""

    def __str__(self):
        value = f"{self.os or '?'}/{self.architecture or '?'}"
        if self.variant:
            value += f"/{self.variant}"
        if self.os_version:
            value += f" ({self.os_version})"
        return value

    @classmethod
    def from_payload(cls, payload: dict[str, str] | None) -> Platform:
        payload = payload or {}
        return cls(
            architecture=payload.get("architecture", ""),
            os=payload.get("os", ""),
            variant=payload.get("variant", ""),
            os_version=payload.get("os.version", ""),
        )


@dataclass(frozen=True)
class PlatformFilter:
    """OS and architecture patterns: bare value (`arm`) or `value:qualifier`"""

    os: tuple[str, ...] = ()
    architecture: tuple[str, ...] = ()

    def __str__(self):
        return f"os[{','.join(self.os)}] architecture[{','.join(self.architecture)}]"

    @classmethod
    def create(
        cls,
        os: Sequence[str] | None = None,
        architecture: Sequence[str] | None = None,
    ) -> PlatformFilter:
        return cls(
            os=tuple(value for value in (os or []) if value),
            architecture=tuple(value for value in (architecture or []) if value),
        )

    def swapped(self) -> PlatformFilter:
        return PlatformFilter(os=self.architecture, architecture=self.os)

    def matches(self, platform: Platform) -> bool:
        return matches(self, platform)


def colon_match(pattern: str, value: str, qualifier: str) -> bool:
    """whether `pattern` accepts `value` with its sub-qualifier

    `arm` accepts arm with any variant, `arm:v7` only arm/v7"""
    if not pattern.startswith(value):
        return False
    if len(pattern) == len(value):
        return True
    return pattern[len(value)] == ":" and pattern[len(value) + 1 :] == qualifier


def _axis_matches(patterns: Sequence[str], value: str, qualifier: str) -> bool:
    # unknown platform info cannot be filtered
    if not patterns or not value:
        return True
    return any(colon_match(pattern, value, qualifier) for pattern in patterns)


def matches(platform_filter: PlatformFilter, platform: Platform) -> bool:
    return _axis_matches(
        platform_filter.os, platform.os, platform.os_version
    ) and _axis_matches(
        platform_filter.architecture, platform.architecture, platform.variant
    )


def host_architecture(machine: str | None = None) -> str:
    """architecture pattern for the running host, registry naming"""
    machine = (machine or py_platform.machine()).lower()
    if machine in ("x86_64", "amd64"):
        return "amd64"
    if machine in ("aarch64", "arm64") or machine.startswith("armv8"):
        return "arm64"
    # bare architecture, any variant
    if machine.startswith("arm"):
        return "arm"
    if re.match(r"^i(3|4|5|6)86", machine):
        return "386"
    return machine

"""MPS-specific checks on devices, including semantic-version comparison."""

from __future__ import annotations

import re
from dataclasses import dataclass

_NUMBER = r"(?:0|[1-9][0-9]*)"
_PRERELEASE_IDENT = r"(?:0|[1-9][0-9]*|[0-9A-Za-z-]*[A-Za-z-][0-9A-Za-z-]*)"
_BUILD_IDENT = r"[0-9A-Za-z-]+"
_SEMVER = re.compile(
    rf"^v({_NUMBER})"
    rf"(?:\.({_NUMBER})"
    rf"(?:\.({_NUMBER})"
    rf"(?:-({_PRERELEASE_IDENT}(?:\.{_PRERELEASE_IDENT})*))?"
    rf"(?:\+({_BUILD_IDENT}(?:\.{_BUILD_IDENT})*))?"
    r")?)?$"
)


class InvalidDeviceError(ValueError):
    """Raised when a device cannot be shared with MPS as configured."""


def _parse(version: str) -> tuple[int, int, int, str] | None:
    match = _SEMVER.match(version)
    if match is None:
        return None
    major, minor, patch, prerelease, _build = match.groups()
    return int(major), int(minor or 0), int(patch or 0), prerelease or ""


def canonical_version(version: str) -> str:
    """Return the canonical vMAJOR.MINOR.PATCH[-PRE] form, or '' if invalid."""
    parsed = _parse(version)
    if parsed is None:
        return ""
    major, minor, patch, prerelease = parsed
    canonical = f"v{major}.{minor}.{patch}"
    if prerelease:
        canonical += f"-{prerelease}"
    return canonical


def _compare_identifier(a: str, b: str) -> int:
    a_numeric, b_numeric = a.isdigit(), b.isdigit()
    if a_numeric and b_numeric:
        return (int(a) > int(b)) - (int(a) < int(b))
    if a_numeric:
        return -1
    if b_numeric:
        return 1
    return (a > b) - (a < b)


def _compare_prerelease(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return 1
    if not b:
        return -1
    a_parts, b_parts = a.split("."), b.split(".")
    for a_part, b_part in zip(a_parts, b_parts):
        outcome = _compare_identifier(a_part, b_part)
        if outcome:
            return outcome
    return (len(a_parts) > len(b_parts)) - (len(a_parts) < len(b_parts))


def compare_versions(a: str, b: str) -> int:
    """Compare two semantic versions, returning -1, 0 or 1.

    An invalid version compares lower than any valid one and equal to
    another invalid one.
    """
    parsed_a, parsed_b = _parse(a), _parse(b)
    if parsed_a is None or parsed_b is None:
        if parsed_a is None and parsed_b is None:
            return 0
        return -1 if parsed_a is None else 1
    core_a, core_b = parsed_a[:3], parsed_b[:3]
    if core_a != core_b:
        return -1 if core_a < core_b else 1
    return _compare_prerelease(parsed_a[3], parsed_b[3])


@dataclass
class MpsDevice:
    """A device considered for sharing through an MPS server."""

    compute_capability: str = ""
    replicas: int = 0

    def assert_replicas(self) -> None:
        """Raise InvalidDeviceError if there are more replicas than MPS clients allowed."""
        max_clients = self.max_clients()
        if self.replicas > max_clients:
            raise InvalidDeviceError(
                f"invalid device maximum allowed replicas exceeded: "
                f"{self.replicas} > {max_clients}"
            )

    def max_clients(self) -> int:
        """The maximum number of clients one MPS server supports on this device."""
        return 48 if self.is_at_least_volta() else 16

    def is_at_least_volta(self) -> bool:
        """Whether the compute capability is 7.5 or newer."""
        versioned = "v" + self.compute_capability.removeprefix("v")
        return (
            compare_versions(canonical_version(versioned), canonical_version("v7.5"))
            >= 0
        )
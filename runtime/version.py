"""Version metadata for ChannelSync.

Import-safe: exposes version identifiers for other modules without side
effects.
"""

from __future__ import annotations

PROJECT_NAME = "ChannelSync"
VERSION = "0.1.0"
BUILD = "2026.10"
LICENSE = "Proprietary"

__all__ = [
    "PROJECT_NAME",
    "VERSION",
    "BUILD",
    "LICENSE",
    "as_dict",
    "as_string",
]


def as_dict() -> dict[str, str]:
    """Return version metadata as a dictionary."""

    return {
        "project": PROJECT_NAME,
        "version": VERSION,
        "build": BUILD,
        "license": LICENSE,
    }


def as_string() -> str:
    return f"{PROJECT_NAME} {VERSION} (Build {BUILD})"

"""Locating files below an NVIDIA driver installation root."""

from __future__ import annotations

import os
import posixpath
from dataclasses import dataclass

_LIBRARY_SEARCH_PATHS = (
    "/usr/lib64",
    "/usr/lib/x86_64-linux-gnu",
    "/usr/lib/aarch64-linux-gnu",
    "/lib64",
    "/lib/x86_64-linux-gnu",
    "/lib/aarch64-linux-gnu",
)


def _join_paths(*parts: str) -> str:
    nonempty = [part for part in parts if part]
    if not nonempty:
        return ""
    cleaned = posixpath.normpath("/".join(nonempty))
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def resolve_link(path: str) -> str:
    """Return the final target of a symlink chain, like ``readlink -f``."""
    try:
        return os.path.realpath(path, strict=True)
    except OSError as err:
        raise OSError(f"error resolving link '{path}': {err}") from err


@dataclass(frozen=True)
class DriverRoot:
    """The root path of a driver installation."""

    path: str

    def __str__(self) -> str:
        return self.path

    def join(self, *args: str) -> str:
        """Join path parts below the root, treating absolute parts as relative."""
        return _join_paths(self.path, *args)

    def dev_root(self) -> str:
        """Return the root itself if it holds a dev directory, else '/'."""
        if self.is_dev_root():
            return self.path
        return "/"

    def is_dev_root(self) -> bool:
        """Whether the root contains a /dev directory."""
        return os.path.isdir(_join_paths(self.path, "dev"))

    def try_resolve_library(self, library_name: str) -> str:
        """Find a library below the root, falling back to the bare name."""
        if self.path in ("", "/"):
            return library_name
        for directory in _LIBRARY_SEARCH_PATHS:
            try:
                return resolve_link(self.join(directory, library_name))
            except OSError:
                continue
        return library_name
"""Layout of the per-resource MPS directories below an MPS root."""

from __future__ import annotations

import posixpath
from dataclasses import dataclass


def _join_paths(*parts: str) -> str:
    nonempty = [part for part in parts if part]
    if not nonempty:
        return ""
    cleaned = posixpath.normpath("/".join(nonempty))
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


@dataclass(frozen=True)
class MpsRoot:
    """The directory under which MPS pipe, log and shm directories live."""

    root: str

    def __str__(self) -> str:
        return self.root

    def log_dir(self, resource_name: str) -> str:
        """The per-resource log directory."""
        return self.path(resource_name, "log")

    def pipe_dir(self, resource_name: str) -> str:
        """The per-resource pipe directory."""
        return self.path(resource_name, "pipe")

    def shm_dir(self, resource_name: str) -> str:
        """The shm directory; it is shared by all resources."""
        return self.path("shm")

    def started_file(self, resource_name: str) -> str:
        """The per-resource marker file written once a daemon has started."""
        return self.path(resource_name, ".started")

    def path(self, *args: str) -> str:
        """A path relative to the MPS root."""
        return _join_paths(self.root, *args)


CONTAINER_ROOT = MpsRoot("/mps")
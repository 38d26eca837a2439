"""Set up the tmpfs mount that the MPS control daemon uses as shared memory."""

from __future__ import annotations

import argparse
import logging
import os
import re
import shutil
import subprocess

log = logging.getLogger(__name__)

FALLBACK_SHM_SIZE = "65536k"
DEFAULT_SHM_DIR = "/mps/shm"
MOUNT_OPTIONS = ("rw", "nosuid", "nodev", "noexec", "relatime")

_INTEGER = re.compile(r"[+-]?[0-9]+")
_MEMTOTAL = "MemTotal:"


class MountError(Exception):
    """Raised when the shm directory cannot be cleaned up or mounted."""


def default_shm_size(meminfo_path: str = "/proc/meminfo") -> str:
    """Half of the total memory in meminfo, keeping the unit's first letter.

    Falls back to 65536k when meminfo cannot be read or parsed.
    """
    try:
        with open(meminfo_path, encoding="utf-8", errors="replace") as meminfo:
            for line in meminfo:
                line = line.removesuffix("\n").removesuffix("\r")
                if not line.startswith(_MEMTOTAL):
                    continue
                parts = line[len(_MEMTOTAL):].strip().split(" ", 1)
                if not _INTEGER.fullmatch(parts[0]):
                    log.error("could not convert MemTotal to an integer: %r", parts[0])
                    return FALLBACK_SHM_SIZE
                total = int(parts[0])
                half = abs(total) // 2 if total >= 0 else -(abs(total) // 2)
                unit = parts[1][0] if len(parts) == 2 and parts[1] else ""
                return f"{half}{unit}"
    except OSError as err:
        log.error("failed to open %s: %s", meminfo_path, err)
        return FALLBACK_SHM_SIZE
    return FALLBACK_SHM_SIZE


def _cleanup_mount_point(path: str) -> None:
    """Unmount path if it is a mount point, then remove it."""
    if not os.path.lexists(path):
        return
    if os.path.ismount(path):
        umount = shutil.which("umount") or "umount"
        try:
            result = subprocess.run([umount, path], capture_output=True, text=True)
        except OSError as err:
            raise MountError(f"error unmounting {path}: {err}") from err
        if result.returncode != 0:
            output = (result.stdout + result.stderr).strip()
            raise MountError(f"error unmounting {path}: {output}")
        if os.path.ismount(path):
            raise MountError(f"error unmounting {path}: still mounted")
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            os.rmdir(path)
        else:
            os.unlink(path)
    except OSError as err:
        raise MountError(f"error unmounting {path}: {err}") from err


def mount_shm(shm_dir: str = DEFAULT_SHM_DIR) -> None:
    """Create a fresh tmpfs mount at shm_dir sized from the host memory."""
    mount_executable = shutil.which("mount")
    if mount_executable is None:
        raise MountError("error finding 'mount' executable: not found in PATH")

    _cleanup_mount_point(shm_dir)

    try:
        os.makedirs(shm_dir, 0o755, exist_ok=True)
    except OSError as err:
        raise MountError(f"error creating directory {shm_dir}: {err}") from err

    options = [*MOUNT_OPTIONS, f"size={default_shm_size()}"]
    command = [mount_executable, "-t", "tmpfs", "-o", ",".join(options), "shm", shm_dir]
    try:
        result = subprocess.run(command, capture_output=True, text=True)
    except OSError as err:
        raise MountError(f"error mounting {shm_dir} as tmpfs: {err}") from err
    if result.returncode != 0:
        output = ((result.stdout or "") + (result.stderr or "")).strip()
        raise MountError(f"error mounting {shm_dir} as tmpfs: {output}")


def main(argv: list[str] | None = None) -> int:
    """Mount the shm directory; return the process exit status."""
    parser = argparse.ArgumentParser(
        prog="mount-shm",
        description="Set up the /dev/shm mount required by the MPS daemon",
    )
    parser.add_argument("--shm-dir", default=DEFAULT_SHM_DIR,
                        help="the directory to mount the tmpfs at")
    args = parser.parse_args(argv)
    try:
        mount_shm(args.shm_dir)
    except MountError as err:
        log.error("%s", err)
        return 1
    return 0
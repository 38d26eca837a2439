"""Control of an MPS daemon serving the devices of one resource."""

from __future__ import annotations

import enum
import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Any, Protocol, Sequence

from gpunode.mps.root import CONTAINER_ROOT, MpsRoot
from gpunode.mps.tailer import Tailer

log = logging.getLogger(__name__)

MPS_CONTROL_BIN = "nvidia-cuda-mps-control"
NVIDIA_SMI_BIN = "nvidia-smi"

_SELINUX_ENFORCE = "/sys/fs/selinux/enforce"
_SELINUX_XATTR = "security.selinux"
_SELINUX_LABEL = "container_file_t"


class ComputeMode(str, enum.Enum):
    """GPU compute modes set through nvidia-smi."""

    EXCLUSIVE_PROCESS = "EXCLUSIVE_PROCESS"
    DEFAULT = "DEFAULT"


class DaemonError(Exception):
    """Raised when the MPS daemon cannot be started, stopped or reached."""


class ResourceManager(Protocol):
    """The devices behind one resource.

    Each device has ``index`` (str), ``total_memory`` (bytes) and ``uuid`` attributes.
    """

    def resource(self) -> str:
        """The resource name."""
        ...

    def devices(self) -> Sequence[Any]:
        """The devices that make up the resource, one per replica."""
        ...


def _unique_uuids(devices: Sequence[Any]) -> list[str]:
    return list(dict.fromkeys(device.uuid for device in devices))


def _selinux_enforcing() -> bool:
    try:
        return Path(_SELINUX_ENFORCE).read_text().strip() == "1"
    except OSError:
        return False


def _chcon(path: str, label: str) -> None:
    value = label.encode()
    os.setxattr(path, _SELINUX_XATTR, value, follow_symlinks=False)
    for dirpath, dirnames, filenames in os.walk(path):
        for name in (*dirnames, *filenames):
            os.setxattr(os.path.join(dirpath, name), _SELINUX_XATTR, value,
                        follow_symlinks=False)


class Daemon:
    """An MPS control daemon for the devices of one resource.

    It starts and stops the daemon and applies the per-device memory and
    thread limits implied by the number of replicas.
    """

    def __init__(
        self,
        rm: ResourceManager,
        root: MpsRoot = CONTAINER_ROOT,
        *,
        control_bin: str = MPS_CONTROL_BIN,
        smi_bin: str = NVIDIA_SMI_BIN,
    ) -> None:
        self.rm = rm
        self.root = root
        self.control_bin = control_bin
        self.smi_bin = smi_bin
        self.log_tailer: Tailer | None = None

    @property
    def resource(self) -> str:
        return self.rm.resource()

    def devices(self) -> Sequence[Any]:
        """The devices under the control of this daemon."""
        return self.rm.devices()

    def envvars(self) -> dict[str, str]:
        """Environment that clients of the shared devices must use."""
        return {
            "CUDA_MPS_PIPE_DIRECTORY": self.pipe_dir(),
            "CUDA_MPS_LOG_DIRECTORY": self.log_dir(),
        }

    def log_dir(self) -> str:
        return self.root.log_dir(self.resource)

    def pipe_dir(self) -> str:
        return self.root.pipe_dir(self.resource)

    def shm_dir(self) -> str:
        return "/dev/shm"

    def _started_file(self) -> str:
        return self.root.started_file(self.resource)

    def _control_command(self, *args: str) -> list[str]:
        return [shutil.which(self.control_bin) or self.control_bin, *args]

    def start(self) -> None:
        """Start the MPS daemon in the background and apply its limits."""
        try:
            self._set_compute_mode(ComputeMode.EXCLUSIVE_PROCESS)
        except DaemonError as err:
            raise DaemonError(
                f"error setting compute mode {ComputeMode.EXCLUSIVE_PROCESS.value}: {err}"
            ) from err

        log.info("Starting MPS daemon for resource %s", self.resource)

        pipe_dir = self.pipe_dir()
        try:
            os.makedirs(pipe_dir, 0o755, exist_ok=True)
        except OSError as err:
            raise DaemonError(f"error creating directory {pipe_dir}: {err}") from err

        if _selinux_enforcing():
            try:
                _chcon(pipe_dir, _SELINUX_LABEL)
            except OSError as err:
                raise DaemonError(f"error setting SELinux context: {err}") from err

        log_dir = self.log_dir()
        try:
            os.makedirs(log_dir, 0o755, exist_ok=True)
        except OSError as err:
            raise DaemonError(f"error creating directory {log_dir}: {err}") from err

        try:
            result = subprocess.run(
                self._control_command("-d"),
                env=self.envvars(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as err:
            raise DaemonError(f"error starting MPS control daemon: {err}") from err
        if result.returncode != 0:
            raise DaemonError(
                f"error starting MPS control daemon: exit status {result.returncode}"
            )

        for index, limit in self.pinned_device_memory_limits().items():
            try:
                self.echo_pipe_to_control(
                    f"set_default_device_pinned_mem_limit {index} {limit}"
                )
            except DaemonError as err:
                raise DaemonError(
                    f"error setting pinned memory limit for device {index}: {err}"
                ) from err

        percentage = self.active_thread_percentage()
        if percentage:
            try:
                self.echo_pipe_to_control(f"set_default_active_thread_percentage {percentage}")
            except DaemonError as err:
                raise DaemonError(f"error setting active thread percentage: {err}") from err

        try:
            Path(self._started_file()).touch()
        except OSError as err:
            raise DaemonError(f"error creating started file: {err}") from err

        self.log_tailer = Tailer(os.path.join(log_dir, "control.log"))
        log.info("Starting log tailer for resource %s", self.resource)
        try:
            self.log_tailer.start()
        except OSError as err:
            log.error("Could not start tail command on control.log; ignoring logs: %s", err)

    def stop(self) -> None:
        """Quit the MPS daemon and restore the default compute mode."""
        try:
            self.echo_pipe_to_control("quit")
        except DaemonError as err:
            raise DaemonError(f"error sending quit message: {err}") from err
        log.info("Stopped MPS control daemon for resource %s", self.resource)

        if self.log_tailer is not None:
            status = self.log_tailer.stop()
            log.info("Stopped log tailer for resource %s (status %s)", self.resource, status)

        try:
            self._set_compute_mode(ComputeMode.DEFAULT)
        except DaemonError as err:
            raise DaemonError(
                f"error setting compute mode {ComputeMode.DEFAULT.value}: {err}"
            ) from err

        try:
            os.remove(self._started_file())
        except FileNotFoundError:
            pass
        except OSError as err:
            raise DaemonError(f"failed to remove started file: {err}") from err

        log_dir = self.log_dir()
        try:
            shutil.rmtree(log_dir)
        except FileNotFoundError:
            pass
        except OSError as err:
            log.error("Failed to remove log directory %s: %s", log_dir, err)

    def assert_healthy(self) -> None:
        """Raise DaemonError if the MPS control daemon does not respond."""
        self.echo_pipe_to_control("get_default_active_thread_percentage")

    def echo_pipe_to_control(self, command: str) -> str:
        """Send a command to the MPS control daemon and return its output."""
        try:
            process = subprocess.Popen(
                self._control_command(),
                env=self.envvars(),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
            )
        except OSError as err:
            raise DaemonError(f"failed to start NVIDIA MPS command: {err}") from err
        try:
            output, _ = process.communicate(command.encode())
        except OSError as err:
            process.kill()
            process.wait()
            raise DaemonError(f"failed to write message to pipe: {err}") from err
        if process.returncode != 0:
            raise DaemonError(
                f"failed to send command to MPS daemon: exit status {process.returncode}"
            )
        return output.decode("utf-8", errors="replace")

    def _set_compute_mode(self, mode: ComputeMode) -> None:
        for uuid in _unique_uuids(self.devices()):
            try:
                result = subprocess.run(
                    [self.smi_bin, "-i", uuid, "-c", mode.value],
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                )
            except OSError as err:
                raise DaemonError(f"error running nvidia-smi: {err}") from err
            if result.returncode != 0:
                log.error("\n%s", result.stdout.decode("utf-8", errors="replace"))
                raise DaemonError(
                    f"error running nvidia-smi: exit status {result.returncode}"
                )

    def pinned_device_memory_limits(self) -> dict[str, str]:
        """Per-device pinned memory limit: total memory split across replicas, in MiB."""
        total_memory: dict[str, int] = {}
        replicas: dict[str, int] = {}
        for device in self.devices():
            total_memory[device.index] = device.total_memory
            replicas[device.index] = replicas.get(device.index, 0) + 1
        return {
            index: f"{total // replicas[index] // 1024 // 1024}M"
            for index, total in total_memory.items()
            if total != 0
        }

    def active_thread_percentage(self) -> str:
        """Share of threads each replica may use, or '' without devices."""
        devices = self.devices()
        if not devices:
            return ""
        replicas_per_device = len(devices) // len(_unique_uuids(devices))
        return str(100 // replicas_per_device)
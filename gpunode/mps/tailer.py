"""Follow a log file by running ``tail -f`` in the background."""

from __future__ import annotations

import subprocess


class Tailer:
    """Tails the contents of a file to this process's standard output."""

    def __init__(self, filename: str, executable: str = "tail") -> None:
        self.filename = filename
        self.executable = executable
        self._process: subprocess.Popen | None = None

    @property
    def running(self) -> bool:
        """Whether the tail process is still alive."""
        return self._process is not None and self._process.poll() is None

    def start(self) -> None:
        """Start tailing the file from its first line."""
        self._process = subprocess.Popen(
            [self.executable, "-n", "+1", "-f", self.filename]
        )

    def stop(self) -> int | None:
        """Kill the tail process and return its exit status, or None if never started."""
        process = self._process
        if process is None:
            return None
        if process.poll() is None:
            process.kill()
        return process.wait()

    def __enter__(self) -> "Tailer":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
"""Safe execution wrapper for GDAL/OGR command-line utilities.

This module provides a safe interface for executing GDAL and OGR command-line
tools (ogr2ogr, ogrinfo, etc.) as subprocesses. It handles error checking,
turns GDAL's textual progress meter into callbacks, and enforces a wall-clock
limit by killing the process once it is exceeded.

Example:
    Probe a vector source:
        >>> from tilestore.utils.gdal_helpers import run_command, CommandError

        >>> try:
        ...     run_command(["ogrinfo", "-so", "-q", "roads.shp"])
        ... except CommandError as e:
        ...     print(f"Command failed: {e}")

    Build an MBTiles archive while following progress:
        >>> run_command_with_progress(
        ...     ["ogr2ogr", "-f", "MBTILES", "out.mbtiles", "roads.shp",
        ...      "-progress"],
        ...     on_progress=lambda percent: print(percent),
        ...     timeout=120,
        ... )
"""

from __future__ import annotations

import subprocess
import tempfile
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Callable, Iterable


class CommandError(RuntimeError):
    """Exception raised when a GDAL/OGR subprocess command fails.

    Contains the error message from the failed command's stderr output.
    """


class CommandTimeoutError(CommandError):
    """Exception raised when a command is killed for exceeding its timeout."""


def run_command(
    command: Iterable[str | pathlib.Path],
    workdir: pathlib.Path | None = None,
    timeout: float | None = None,
) -> str:
    """Execute a command and raise on non-zero exit.

    Args:
        command: Iterable arguments to execute (e.g., ["ogrinfo", ...]).
        workdir: Optional working directory for the command execution.
        timeout: Optional limit in seconds for the command to finish.

    Returns:
        The command's standard output.

    Raises:
        CommandError: if the command exits with a non-zero status code.
            The exception message contains the stderr output from the command.
        CommandTimeoutError: if the command runs longer than ``timeout``.
    """
    args = [str(arg) for arg in command]
    try:
        result = subprocess.run(
            args,
            cwd=workdir,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise CommandTimeoutError(
            f"{args[0]} timed out after {timeout} seconds"
        ) from exc
    except FileNotFoundError as exc:
        raise CommandError(f"{args[0]} is not installed") from exc
    if result.returncode != 0:
        raise CommandError(result.stderr.strip() or "Unknown command failure")

    return result.stdout


class ProgressParser:
    """Incrementally decode GDAL's ``0...10...20...100 - done.`` meter.

    Characters are fed as they arrive on stdout; every complete number
    between 0 and 100 is passed to the callback.
    """

    def __init__(self, on_progress: Callable[[int], None]) -> None:
        self._on_progress = on_progress
        self._digits = ""

    def feed(self, text: str) -> None:
        for char in text:
            if char.isdigit():
                self._digits += char
                continue
            self._emit()

    def close(self) -> None:
        self._emit()

    def _emit(self) -> None:
        if self._digits:
            value = int(self._digits)
            self._digits = ""
            if 0 <= value <= 100:
                self._on_progress(value)


def run_command_with_progress(
    command: Iterable[str | pathlib.Path],
    on_progress: Callable[[int], None],
    timeout: float | None = None,
) -> None:
    """Execute a command that prints a GDAL progress meter on stdout.

    Args:
        command: Iterable arguments to execute.
        on_progress: Called with each percentage (0-100) GDAL reports.
        timeout: Optional limit in seconds; the process is killed when the
            limit passes.

    Raises:
        CommandError: if the command exits with a non-zero status code.
        CommandTimeoutError: if the command was killed by the timeout.
    """
    args = [str(arg) for arg in command]
    parser = ProgressParser(on_progress)
    with tempfile.TemporaryFile(mode="w+") as stderr:
        try:
            process = subprocess.Popen(
                args,
                stdout=subprocess.PIPE,
                stderr=stderr,
                text=True,
            )
        except FileNotFoundError as exc:
            raise CommandError(f"{args[0]} is not installed") from exc

        timed_out = threading.Event()

        def _kill() -> None:
            timed_out.set()
            process.kill()

        timer = threading.Timer(timeout, _kill) if timeout is not None else None
        if timer is not None:
            timer.start()
        try:
            stdout = process.stdout
            if stdout is None:
                raise CommandError(f"{args[0]} has no output stream")
            for chunk in iter(lambda: stdout.read(1), ""):
                parser.feed(chunk)
            parser.close()
            returncode = process.wait()
        finally:
            if timer is not None:
                timer.cancel()
            if process.poll() is None:
                process.kill()
                process.wait()

        if timed_out.is_set():
            raise CommandTimeoutError(
                f"{args[0]} timed out after {timeout} seconds"
            )
        if returncode != 0:
            stderr.seek(0)
            raise CommandError(stderr.read().strip() or "Unknown command failure")

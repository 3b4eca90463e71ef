"""Throttled progress reporting from converters into the record store.

Converters call ``update(done, total)`` as often as they like. The reporter
turns that into percentage writes that never go backwards and are spaced at
least ``interval`` seconds apart. Updates stop at 99; only ``finish``
writes 100. ``finish`` performs the terminal write (completion flag plus
final progress or error) exactly once, bypassing the throttle, and closes
the reporter against any further writes.

Example:
    >>> reporter = ProgressReporter(
    ...     lambda fields: repo.update("acme", "roads", fields),
    ...     interval=1.0,
    ... )
    >>> reporter.update(5, 10)      # writes {"progress": 50}
    >>> reporter.update(6, 10)      # throttled
    >>> reporter.finish()           # writes complete/progress=100/error=None
"""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

MAX_UPDATE_PERCENT = 99


class ProgressReporter:
    """Rate-limited writer of one import attempt's progress.

    Args:
        write: Callable persisting a partial record update.
        interval: Minimum number of seconds between two progress writes.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        write: Callable[[Mapping[str, object]], object],
        *,
        interval: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._write = write
        self._interval = interval
        self._clock = clock
        self._lock = threading.Lock()
        self._last_percent = 0
        self._last_write_at: float | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def last_percent(self) -> int:
        return self._last_percent

    def update(self, done: int, total: int) -> None:
        """Report that ``done`` out of ``total`` work units are finished."""
        if total <= 0:
            return
        percent = max(0, min(MAX_UPDATE_PERCENT, round(100 * done / total)))
        with self._lock:
            if self._closed or percent <= self._last_percent:
                return
            now = self._clock()
            if (
                self._last_write_at is not None
                and now - self._last_write_at < self._interval
            ):
                return
            self._last_percent = percent
            self._last_write_at = now
            self._write({"progress": percent})

    def finish(self, error: str | None = None) -> bool:
        """Write the terminal state of the attempt.

        Args:
            error: Failure detail, or None when the import succeeded.

        Returns:
            True if this call performed the terminal write, False if the
            reporter had already been finished.
        """
        with self._lock:
            if self._closed:
                return False
            self._closed = True
            fields: dict[str, object] = {"complete": True, "error": error}
            if error is None:
                fields["progress"] = 100
                self._last_percent = 100
            self._write(fields)
            return True

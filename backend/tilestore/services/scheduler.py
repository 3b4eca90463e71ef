"""Background executor for import attempts.

ImportScheduler runs conversions on a thread pool, detached from the HTTP
request that started them, and keeps a registry of which tilesets have an
attempt in flight, so at most one attempt per tileset can write its
destination archive.

A tileset's slot is claimed while the request is open and released by the
worker once the attempt returns or raises.
"""

from __future__ import annotations

import concurrent.futures
import threading
from typing import TYPE_CHECKING, Any

from tilestore.core import errors, log

if TYPE_CHECKING:
    from collections.abc import Callable

LOGGER = log.get_logger(__name__)

ImportKey = tuple[str, str]


class ImportScheduler:
    """Thread pool plus per-tileset in-flight registry."""

    def __init__(self, max_workers: int = 4) -> None:
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="tileset-import",
        )
        self._lock = threading.Lock()
        self._active: dict[ImportKey, concurrent.futures.Future[Any] | None] = {}

    def claim(self, key: ImportKey) -> None:
        """Reserve the slot for a tileset.

        Raises:
            ImportInProgressError: If another attempt holds the slot.
        """
        with self._lock:
            if key in self._active:
                owner, tileset_id = key
                raise errors.ImportInProgressError(
                    f"Tileset {owner}/{tileset_id} is already being imported"
                )
            self._active[key] = None

    def release(self, key: ImportKey) -> None:
        with self._lock:
            self._active.pop(key, None)

    def is_active(self, key: ImportKey) -> bool:
        with self._lock:
            return key in self._active

    def submit(
        self,
        key: ImportKey,
        fn: Callable[..., Any],
        *args: Any,
    ) -> concurrent.futures.Future[Any]:
        """Run ``fn(*args)`` in the background under a claimed slot.

        The slot is released before the future resolves, whatever the
        outcome, so a caller woken by the future sees the slot free.
        """
        with self._lock:
            future = self._executor.submit(self._run, key, fn, args)
            self._active[key] = future
        return future

    def _run(
        self,
        key: ImportKey,
        fn: Callable[..., Any],
        args: tuple[Any, ...],
    ) -> Any:
        try:
            return fn(*args)
        except Exception:
            LOGGER.exception("import of %s/%s crashed", *key)
            raise
        finally:
            self.release(key)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until every running attempt has finished.

        Returns:
            True if nothing is left running, False on timeout.
        """
        with self._lock:
            futures = [f for f in self._active.values() if f is not None]
        _, pending = concurrent.futures.wait(futures, timeout=timeout)
        return not pending

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

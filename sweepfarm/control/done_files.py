"""Completion detection for work dispatched without a notification channel.

Remote sweep steps touch a "done file" on a shared filesystem when they finish.
The waiter polls until every file exists, then removes them.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterable
from pathlib import Path

from sweepfarm.errors import FarmTimeoutError
from sweepfarm.models.compute import DEFAULT_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0


def clear_done_files(paths: Iterable[Path | str]):
    for path in paths:
        Path(path).unlink(missing_ok=True)


def all_present(paths: Iterable[Path | str]) -> bool:
    return all(Path(p).exists() for p in paths)


def wait_for_done_files(
    paths: Iterable[Path | str],
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] | None = None,
    stop_event: threading.Event | None = None,
) -> bool:
    """Block until every path exists, then delete them all.

    Returns False only when ``stop_event`` is set before the files appear.
    Raises FarmTimeoutError once ``timeout`` seconds have elapsed.
    """
    files = [Path(p) for p in paths]
    if sleep is None:
        sleep = stop_event.wait if stop_event is not None else time.sleep
    started = clock()
    while not all_present(files):
        if stop_event is not None and stop_event.is_set():
            logger.info("Stopped waiting for %d done file(s)", len(files))
            return False
        elapsed = clock() - started
        if elapsed > timeout:
            missing = [str(f) for f in files if not f.exists()]
            raise FarmTimeoutError(
                f"Timed out after {elapsed:.0f}s waiting for done files: {', '.join(missing)}"
            )
        sleep(poll_interval)
    clear_done_files(files)
    logger.info("All %d done file(s) present after %.1fs", len(files), clock() - started)
    return True


def wait_until(
    predicate: Callable[[], bool],
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
    what: str = "condition",
):
    started = clock()
    while not predicate():
        elapsed = clock() - started
        if elapsed > timeout:
            raise FarmTimeoutError(f"Timed out after {elapsed:.0f}s waiting for {what}")
        sleep(poll_interval)

import logging
from collections import deque
from collections.abc import Callable
from typing import Any

from sweepfarm.control.engine import ComputeBackend
from sweepfarm.errors import TypeMismatchError

logger = logging.getLogger(__name__)


class LocalQueueComputation(ComputeBackend):
    """Runs enqueued callables in FIFO order, synchronously, during broadcast.

    Enqueue must complete before ``execute`` is called. An exception from a
    queued callable aborts the drain and propagates.
    """

    description = "local queue"

    def __init__(self):
        super().__init__()
        self._queue: deque[tuple[Callable[..., Any], Any]] = deque()

    def __len__(self) -> int:
        return len(self._queue)

    def enqueue_method(self, fn: Callable[..., Any], state: Any = None):
        if not callable(fn):
            raise TypeMismatchError(f"Expected a callable, got {type(fn).__name__}")
        self._queue.append((fn, state))

    def initialize(self) -> bool:
        return bool(self._queue)

    def broadcast(self) -> bool:
        while self._queue:
            fn, state = self._queue.popleft()
            logger.debug("Invoking %s", getattr(fn, "__name__", fn))
            if state is None:
                fn()
            else:
                fn(state)
        return True

import io
import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Any, TextIO

from sweepfarm.agent.detector import cpu_count
from sweepfarm.control.engine import ComputeBackend
from sweepfarm.control.process_manager import run_command
from sweepfarm.errors import ConfigurationError, ParallelExecutionError, TypeMismatchError

logger = logging.getLogger(__name__)

_LOG_LOCK = threading.Lock()


class DelayedLog:
    """Buffers one work item's log lines and emits them as a single record on exit."""

    def __init__(self, target: logging.Logger | None = None):
        self.target = target or logger
        self._buffer = io.StringIO()

    @property
    def writer(self) -> TextIO:
        return self._buffer

    def __enter__(self) -> "DelayedLog":
        return self

    def __exit__(self, *exc_info):
        text = self._buffer.getvalue().rstrip("\n")
        self._buffer.close()
        if text:
            with _LOG_LOCK:
                self.target.info("%s", text)


class ParallelParameter:
    def __init__(self, description: str = "", log: logging.Logger | None = None):
        self.description = description or type(self).__name__
        self.log = log
        self.inner_exception: BaseException | None = None

    def invoke(self, writer: TextIO):
        raise NotImplementedError

    def run(self):
        with DelayedLog(self.log) as delayed:
            delayed.writer.write(f"{self.description} starts at time {datetime.now()}\n{self}\n")
            try:
                self.invoke(delayed.writer)
            except Exception as e:
                self.inner_exception = e
                delayed.writer.write(f"{self.description} failed: {e}\n")
                return
            delayed.writer.write(f"{self.description} ends at time {datetime.now()}\n")


class ParallelCommand(ParallelParameter):
    def __init__(
        self,
        executable: str,
        argument: str = "",
        description: str = "",
        result_log: Path | None = None,
        working_dir: Path | None = None,
        log: logging.Logger | None = None,
    ):
        super().__init__(description or executable, log)
        self.executable = executable
        self.argument = argument
        self.result_log = result_log
        self.working_dir = working_dir

    def __str__(self) -> str:
        return f"{self.executable} {self.argument}".strip()

    def invoke(self, writer: TextIO):
        code = run_command(
            self.executable, self.argument or None, self.working_dir, log_file=self.result_log
        )
        if code != 0:
            raise RuntimeError(
                f"The return code of the following command is {code}, not zero, "
                f"indicating error in the target command.\n{self}"
            )


class ParallelMethod(ParallelParameter):
    def __init__(
        self,
        callback: Callable[[Any, TextIO], Any],
        argument: Any = None,
        description: str = "",
        log: logging.Logger | None = None,
    ):
        super().__init__(description or getattr(callback, "__name__", "method"), log)
        self.callback = callback
        self.argument = argument

    def __str__(self) -> str:
        return f"{getattr(self.callback, '__name__', self.callback)} {self.argument!r}"

    def invoke(self, writer: TextIO):
        self.callback(self.argument, writer)


class _QueuedCall(ParallelParameter):
    def __init__(self, fn: Callable[..., Any], state: Any):
        super().__init__(getattr(fn, "__name__", "call"))
        self.fn = fn
        self.state = state

    def __str__(self) -> str:
        return self.description

    def invoke(self, writer: TextIO):
        if self.state is None:
            self.fn()
        else:
            self.fn(self.state)


class MultiWorkerComputation(ComputeBackend):
    description = "multi-worker"

    def __init__(self, max_workers: int = 0):
        super().__init__()
        self.max_workers = max_workers
        self._parameters: list[ParallelParameter] = []
        self.reduce_callback: Callable[[Sequence[str]], Any] | None = None
        self.reduce_arguments: Sequence[str] | None = None

    @property
    def parameters(self) -> list[ParallelParameter]:
        return self._parameters

    @parameters.setter
    def parameters(self, value: Sequence[ParallelParameter]):
        if not value:
            raise ConfigurationError("At least one parallel parameter is required")
        self._parameters = list(value)

    def enqueue_method(self, fn: Callable[..., Any], state: Any = None):
        if not callable(fn):
            raise TypeMismatchError(f"Expected a callable, got {type(fn).__name__}")
        self._parameters.append(_QueuedCall(fn, state))

    def set_reduce(self, callback: Callable[[Sequence[str]], Any], arguments: Sequence[str]):
        if callback is None:
            raise ConfigurationError("The reduce method should not be None")
        if not arguments:
            raise ConfigurationError("Reduce arguments should not be empty")
        self.reduce_callback = callback
        self.reduce_arguments = list(arguments)

    def initialize(self) -> bool:
        if self.max_workers <= 0:
            self.max_workers = cpu_count()
        return bool(self._parameters)

    def broadcast(self) -> bool:
        params = list(self._parameters)
        if len(params) == 1:
            params[0].run()
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                for future in [pool.submit(p.run) for p in params]:
                    future.result()
        failures = [p for p in params if p.inner_exception is not None]
        if not failures:
            return True
        for p in failures:
            logger.error("%s: %s", p.description, p.inner_exception)
        message = "Exceptions are found inside some of the parallel workers:\n" + "\n".join(
            f"{p.description}: {p.inner_exception}" for p in failures
        )
        return self.fail(ParallelExecutionError(message, [p.inner_exception for p in failures]))

    def reduce(self) -> bool:
        if self.reduce_callback is not None and self.reduce_arguments is not None:
            try:
                self.reduce_callback(self.reduce_arguments)
            except Exception as e:
                return self.fail(e)
        return True

    def validate_result(self) -> bool:
        self.reduce_callback = None
        self.reduce_arguments = None
        self._parameters = []
        return True

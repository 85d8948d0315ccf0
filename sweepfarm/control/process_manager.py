import logging
import shlex
import subprocess
import threading
from pathlib import Path

logger = logging.getLogger(__name__)


def split_command(command_line: str) -> list[str]:
    return shlex.split(command_line, posix=True)


def _build_argv(command: str | list[str], args: str | list[str] | None) -> list[str]:
    argv = split_command(command) if isinstance(command, str) else list(command)
    if not argv:
        raise ValueError("Command must not be empty")
    if args:
        argv.extend(split_command(args) if isinstance(args, str) else args)
    return argv


def run_command(
    command: str | list[str],
    args: str | list[str] | None = None,
    working_dir: Path | str | None = None,
    log_file: Path | None = None,
) -> int:
    argv = _build_argv(command, args)
    logger.debug("Running %s in %s", argv, working_dir or ".")
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(log_file, "a") as f:
            result = subprocess.run(argv, cwd=working_dir, stdout=f, stderr=subprocess.STDOUT)
        return result.returncode
    result = subprocess.run(argv, cwd=working_dir, capture_output=True, text=True)
    for line in (result.stdout + result.stderr).splitlines():
        logger.debug("[%s] %s", argv[0], line)
    return result.returncode


def start_detached(
    command: str | list[str],
    working_dir: Path | str | None = None,
    log_file: Path | None = None,
) -> int:
    argv = _build_argv(command, None)
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(log_file, "a") as f:
            process = subprocess.Popen(
                argv, cwd=working_dir, stdout=f, stderr=subprocess.STDOUT, start_new_session=True
            )
    else:
        process = subprocess.Popen(
            argv,
            cwd=working_dir,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    logger.debug("Started %s (PID: %s)", argv[0], process.pid)
    return process.pid


def run_until_stopped(
    command: str | list[str],
    stop_event: threading.Event,
    poll_interval: float = 0.5,
    working_dir: Path | str | None = None,
) -> int | None:
    process = subprocess.Popen(
        _build_argv(command, None),
        cwd=working_dir,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    while True:
        code = process.poll()
        if code is not None:
            return code
        if stop_event.wait(poll_interval):
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
            logger.info("Stopped %s (PID: %s)", command, process.pid)
            return None

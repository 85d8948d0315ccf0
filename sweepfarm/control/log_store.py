from __future__ import annotations

import re
import threading
from collections.abc import Iterable
from pathlib import Path

_LOG_DIR = Path.home() / ".sweepfarm" / "logs"
_LOCK = threading.Lock()
_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def _ensure_dir(log_dir: Path | None) -> Path:
    path = log_dir or _LOG_DIR
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_log_path(name: str, log_dir: Path | None = None) -> Path:
    safe = _UNSAFE.sub("_", name).strip("_") or "task"
    return _ensure_dir(log_dir) / f"{safe}.log"


def append_lines(path: Path, lines: Iterable[str]):
    items = [line.rstrip("\n") for line in lines if line is not None]
    if not items:
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    with _LOCK, open(path, "a", encoding="utf-8") as f:
        for line in items:
            f.write(f"{line}\n")


def read_lines(path: Path, tail: int | None = None) -> list[str]:
    if not path.exists():
        return []
    lines = path.read_text(encoding="utf-8").splitlines()
    return lines[-tail:] if tail else lines

import getpass
import os
from dataclasses import dataclass, field
from pathlib import Path

from sweepfarm.errors import ConfigurationError

DEFAULT_TIMEOUT_SECONDS = 2 * 24 * 60 * 60


@dataclass
class CPUSpec:
    cores: int
    memory_gb: int
    name: str | None = None
    utilization_percent: float | None = None
    memory_used_mib: int | None = None

    def to_dict(self) -> dict:
        return {
            "cores": self.cores,
            "memory_gb": self.memory_gb,
            "name": self.name,
            "utilization_percent": self.utilization_percent,
            "memory_used_mib": self.memory_used_mib,
        }


def _default_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


@dataclass
class FarmConfig:
    head_node: str | None = None
    job_name: str = "sweepfarm"
    user_name: str = field(default_factory=_default_user)
    max_nodes: int = 4
    max_cores: int = 72
    poll_interval: float = 5.0
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    state_dir: Path = field(default_factory=lambda: Path.home() / ".sweepfarm")

    def __post_init__(self):
        if self.poll_interval <= 0:
            raise ConfigurationError(f"poll_interval must be positive, got {self.poll_interval}")
        if self.timeout <= 0:
            raise ConfigurationError(f"timeout must be positive, got {self.timeout}")
        if self.max_nodes <= 0 and self.max_cores <= 0:
            raise ConfigurationError("At least one of max_nodes or max_cores must be positive")
        self.state_dir = Path(self.state_dir).expanduser()

    def to_dict(self) -> dict:
        return {
            "head_node": self.head_node,
            "job_name": self.job_name,
            "user_name": self.user_name,
            "max_nodes": self.max_nodes,
            "max_cores": self.max_cores,
            "poll_interval": self.poll_interval,
            "timeout": self.timeout,
            "state_dir": str(self.state_dir),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FarmConfig":
        kwargs = {k: v for k, v in data.items() if k in cls.__dataclass_fields__ and v is not None}
        if "state_dir" in kwargs:
            kwargs["state_dir"] = Path(kwargs["state_dir"])
        return cls(**kwargs)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "FarmConfig":
        env = os.environ if environ is None else environ
        converters = {
            "head_node": ("SWEEPFARM_HEAD_NODE", str),
            "job_name": ("SWEEPFARM_JOB_NAME", str),
            "user_name": ("SWEEPFARM_USER", str),
            "max_nodes": ("SWEEPFARM_MAX_NODES", int),
            "max_cores": ("SWEEPFARM_MAX_CORES", int),
            "poll_interval": ("SWEEPFARM_POLL_INTERVAL", float),
            "timeout": ("SWEEPFARM_TIMEOUT", float),
            "state_dir": ("SWEEPFARM_STATE_DIR", Path),
        }
        values = {}
        for key, (var, convert) in converters.items():
            raw = env.get(var)
            if raw is None or raw == "":
                continue
            try:
                values[key] = convert(raw)
            except ValueError as err:
                raise ConfigurationError(f"Invalid value for {var}: {raw!r}") from err
        return cls.from_dict(values)

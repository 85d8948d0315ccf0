from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any

from sweepfarm.errors import ConfigurationError


class JobState(str, Enum):
    CREATE = "create"
    WAIT = "wait"
    PEND = "pend"
    RUNNING = "running"
    FINISHED = "finished"
    SUCCEED = "succeed"
    FAILED = "failed"
    CANCELED = "canceled"


class Priority(IntEnum):
    LOWEST = 0
    BELOW_NORMAL = 1
    NORMAL = 2
    ABOVE_NORMAL = 3
    HIGHEST = 4


class TaskState(str, Enum):
    """State reported by the external scheduler for container jobs and their tasks."""

    CONFIGURING = "configuring"
    SUBMITTED = "submitted"
    VALIDATING = "validating"
    EXTERNAL_VALIDATION = "external_validation"
    QUEUED = "queued"
    DISPATCHING = "dispatching"
    RUNNING = "running"
    FINISHING = "finishing"
    FINISHED = "finished"
    FAILED = "failed"
    CANCELING = "canceling"
    CANCELED = "canceled"


# a container in one of these states is never reused
CONTAINER_DONE_STATES = frozenset(
    {TaskState.FINISHING, TaskState.FINISHED, TaskState.FAILED, TaskState.CANCELED}
)

CONTAINER_ACTIVE_STATES = frozenset(
    {
        TaskState.CONFIGURING,
        TaskState.SUBMITTED,
        TaskState.QUEUED,
        TaskState.RUNNING,
        TaskState.VALIDATING,
        TaskState.EXTERNAL_VALIDATION,
    }
)

TASK_ACTIVE_STATES = frozenset(
    {
        TaskState.RUNNING,
        TaskState.QUEUED,
        TaskState.DISPATCHING,
        TaskState.SUBMITTED,
        TaskState.VALIDATING,
    }
)


def convert_state(state: TaskState) -> JobState:
    # success, failure and cancellation all collapse into FINISHED at task level
    match state:
        case TaskState.RUNNING:
            return JobState.RUNNING
        case TaskState.QUEUED | TaskState.DISPATCHING | TaskState.SUBMITTED:
            return JobState.PEND
        case (
            TaskState.FINISHING
            | TaskState.FINISHED
            | TaskState.CANCELED
            | TaskState.FAILED
            | TaskState.CANCELING
        ):
            return JobState.FINISHED
        case _:
            return JobState.WAIT


@dataclass
class JobHandle:
    id: int = -1
    state: JobState = JobState.CREATE
    name: str | None = None
    command: str | None = None
    log_path: str | None = None
    priority: Priority = Priority.NORMAL
    machine: str | None = None
    cpu_time: float = 0.0
    submit_time: datetime | None = None
    custom_info: dict[str, Any] = field(default_factory=dict)

    @property
    def submitted(self) -> bool:
        return self.id != -1

    def sync_from(self, other: "JobHandle"):
        self.id = other.id
        self.state = other.state
        self.priority = other.priority
        self.machine = other.machine
        self.cpu_time = other.cpu_time


@dataclass
class SweepTask:
    command: str
    name: str
    log_path: str | None = None
    exclusive: bool = False
    start_value: int = 0
    end_value: int = 0
    increment_value: int = 1
    priority: Priority = Priority.NORMAL
    owner: str | None = None
    requested_nodes: list[str] = field(default_factory=list)
    handle: JobHandle = field(default_factory=JobHandle)

    def validate_range(self):
        if self.start_value > self.end_value:
            raise ConfigurationError(
                f"Sweep start value {self.start_value} is greater than end value {self.end_value}"
            )
        if self.increment_value <= 0:
            raise ConfigurationError(
                f"Sweep increment must be positive, got {self.increment_value}"
            )

    def sweep_values(self) -> list[int]:
        self.validate_range()
        return list(range(self.start_value, self.end_value + 1, self.increment_value))


@dataclass
class PipelineResult:
    initialize: bool | None = None
    broadcast: bool | None = None
    reduce: bool | None = None
    validate: bool | None = None
    inner_exception: BaseException | None = None

    @property
    def succeeded(self) -> bool:
        return all(
            value is True for value in (self.initialize, self.broadcast, self.reduce, self.validate)
        )

    @property
    def failed_phase(self) -> str | None:
        for name in ("initialize", "broadcast", "reduce", "validate"):
            if getattr(self, name) is False:
                return name
        return None

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Protocol

from sweepfarm.models.job import Priority, TaskState


class UnitType(str, Enum):
    CORE = "core"
    NODE = "node"
    SOCKET = "socket"


@dataclass
class FarmTask:
    name: str
    command: str
    start_value: int = 0
    end_value: int = 0
    increment_value: int = 1
    parametric: bool = True
    rerunnable: bool = True
    exclusive: bool = False
    stdout_path: str | None = None
    stderr_path: str | None = None
    requested_nodes: list[str] = field(default_factory=list)
    task_id: int = -1
    state: TaskState = TaskState.CONFIGURING
    allocated_nodes: list[str] = field(default_factory=list)
    cpu_time: float = 0.0
    submit_time: datetime | None = None


@dataclass
class ContainerJob:
    job_id: int
    name: str
    owner: str | None
    user_name: str
    priority: Priority = Priority.NORMAL
    exclusive: bool = False
    unit_type: UnitType = UnitType.CORE
    minimum_units: int = 1
    maximum_units: int = 1
    state: TaskState = TaskState.CONFIGURING
    tasks: list[FarmTask] = field(default_factory=list)

    def find_task(self, task_id: int) -> FarmTask | None:
        return next((t for t in self.tasks if t.task_id == task_id), None)


class SchedulerClient(Protocol):
    def connect(self, cluster: str | None): ...

    def close(self): ...

    def create_job(self, name: str, owner: str | None, user_name: str) -> ContainerJob: ...

    def add_task(self, job: ContainerJob, task: FarmTask): ...

    def submit_job(self, job: ContainerJob, user_name: str): ...

    def submit_task(self, job: ContainerJob, task: FarmTask): ...

    def refresh_job(self, job: ContainerJob) -> TaskState: ...

    def refresh_task(self, job: ContainerJob, task: FarmTask) -> TaskState: ...

    def cancel_task(self, job: ContainerJob, task_id: int): ...

    def list_nodes(self) -> list[str]: ...

    def list_jobs(
        self,
        name: str | None = None,
        user_name: str | None = None,
        owner: str | None = None,
        states: Iterable[TaskState] | None = None,
    ) -> list[ContainerJob]: ...

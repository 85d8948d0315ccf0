from sweepfarm.control.engine import ComputeBackend, ParallelComputation
from sweepfarm.control.local_queue import LocalQueueComputation
from sweepfarm.control.platform import PlatformKind, create_platform
from sweepfarm.control.remote_farm import ComputeFarm, RemoteFarmComputation, SweepTaskFarm
from sweepfarm.control.thread_pool import (
    MultiWorkerComputation,
    ParallelCommand,
    ParallelMethod,
    ParallelParameter,
)
from sweepfarm.errors import (
    BackendCommunicationError,
    ConfigurationError,
    FarmTimeoutError,
    ParallelExecutionError,
    SweepFarmError,
    TypeMismatchError,
)
from sweepfarm.models.compute import FarmConfig
from sweepfarm.models.job import JobHandle, JobState, PipelineResult, Priority, SweepTask, TaskState

__all__ = [
    "BackendCommunicationError",
    "ComputeBackend",
    "ComputeFarm",
    "ConfigurationError",
    "FarmConfig",
    "FarmTimeoutError",
    "JobHandle",
    "JobState",
    "LocalQueueComputation",
    "MultiWorkerComputation",
    "ParallelCommand",
    "ParallelComputation",
    "ParallelExecutionError",
    "ParallelMethod",
    "ParallelParameter",
    "PipelineResult",
    "PlatformKind",
    "Priority",
    "RemoteFarmComputation",
    "SweepFarmError",
    "SweepTask",
    "SweepTaskFarm",
    "TaskState",
    "TypeMismatchError",
    "create_platform",
]

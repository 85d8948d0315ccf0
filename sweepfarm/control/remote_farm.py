import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path

from sweepfarm.control import log_store
from sweepfarm.control.done_files import clear_done_files, wait_for_done_files, wait_until
from sweepfarm.control.engine import ComputeBackend, ParallelComputation
from sweepfarm.control.local_queue import LocalQueueComputation
from sweepfarm.control.process_manager import run_command, split_command
from sweepfarm.control.ray_manager import RayScheduler
from sweepfarm.control.scheduler_client import ContainerJob, FarmTask, SchedulerClient, UnitType
from sweepfarm.errors import (
    BackendCommunicationError,
    ConfigurationError,
    FarmTimeoutError,
    SweepFarmError,
    TypeMismatchError,
)
from sweepfarm.models.compute import FarmConfig
from sweepfarm.models.job import (
    CONTAINER_ACTIVE_STATES,
    CONTAINER_DONE_STATES,
    TASK_ACTIVE_STATES,
    JobHandle,
    JobState,
    Priority,
    SweepTask,
    TaskState,
    convert_state,
)

logger = logging.getLogger(__name__)

_CONNECT_LOCK = threading.Lock()

_CONTAINER_END_STATES = {TaskState.FINISHED, TaskState.FAILED, TaskState.CANCELED}


class ComputeFarm(ABC):
    @abstractmethod
    def create_task(
        self,
        command: str,
        name: str,
        log_file: str | None,
        exclusive: bool,
        start_value: int,
        end_value: int,
        increment_value: int,
        priority: Priority,
    ) -> SweepTask: ...

    @abstractmethod
    def submit(self, task: SweepTask) -> bool: ...

    @abstractmethod
    def kill(self, task: SweepTask) -> bool: ...

    @abstractmethod
    def query_job_by_owner(self, owner: str | None) -> list[JobHandle]: ...

    @abstractmethod
    def wait_for_done(self, stop_event: threading.Event | None = None) -> JobState: ...

    @abstractmethod
    def list_nodes(self) -> list[str]: ...

    @abstractmethod
    def farm_info(self) -> dict: ...

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class SweepTaskFarm(ComputeFarm):
    """Submits parametric sweep tasks into one reusable container job.

    The container is keyed by (job name, owner, user name). It is replaced once
    the scheduler reports it finishing, finished, failed or canceled.
    """

    def __init__(
        self,
        client: SchedulerClient,
        config: FarmConfig,
        job_name: str | None = None,
        owner: str | None = None,
        on_error: Callable[[str], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] | None = None,
    ):
        self.client = client
        self.config = config
        self.cluster_name = config.head_node
        self.user_name = config.user_name
        self.job_name = job_name or config.job_name
        self.owner = owner or config.user_name
        self.priority = Priority.NORMAL
        self.exclusive = False
        self.on_error = on_error
        self.last_error: BaseException | None = None
        self._clock = clock
        self._sleep = sleep
        self._done_files: list[Path] = []
        self._container: ContainerJob | None = None
        self._job_creating = False
        self._lock = threading.Lock()
        with _CONNECT_LOCK:
            self.client.connect(self.cluster_name)
        self._find_active_job()

    @property
    def container(self) -> ContainerJob | None:
        return self._container

    @property
    def done_files(self) -> list[Path]:
        return self._done_files

    @done_files.setter
    def done_files(self, value):
        if value is not None:
            self._done_files = [Path(p) for p in value]

    def _find_active_job(self):
        jobs = self.client.list_jobs(
            name=self.job_name,
            user_name=self.user_name,
            owner=self.owner,
            states=CONTAINER_ACTIVE_STATES,
        )
        if jobs:
            self._container = jobs[0]
            logger.info("Reusing active job %d (%s)", self._container.job_id, self.job_name)

    def _report(self, message: str, error: BaseException):
        self.last_error = error
        logger.error("%s: %s", message, error, exc_info=error)
        if self.on_error:
            self.on_error(f"{message}: {error}")

    def _is_reusable(self) -> bool:
        if self._container is None:
            return False
        return self.client.refresh_job(self._container) not in CONTAINER_DONE_STATES

    def _create_container(self):
        job = self.client.create_job(self.job_name, self.owner, self.user_name)
        job.priority = self.priority
        job.exclusive = self.exclusive
        job.minimum_units = 1
        if self.exclusive:
            job.unit_type = UnitType.NODE
            job.maximum_units = (
                self.config.max_nodes if self.config.max_nodes > 0 else self.config.max_cores
            )
        else:
            job.unit_type = UnitType.CORE
            job.maximum_units = (
                self.config.max_cores if self.config.max_cores > 0 else self.config.max_nodes
            )
        self._container = job
        self._job_creating = True
        logger.info(
            "Created job %d (%s), %d-%d %s(s)",
            job.job_id,
            job.name,
            job.minimum_units,
            job.maximum_units,
            job.unit_type.value,
        )

    @staticmethod
    def _check_task(task) -> SweepTask:
        if not isinstance(task, SweepTask):
            raise TypeMismatchError(
                f"{type(task).__name__} is not compatible with a sweep task farm"
            )
        return task

    def create_task(
        self,
        command: str,
        name: str,
        log_file: str | None,
        exclusive: bool,
        start_value: int,
        end_value: int,
        increment_value: int,
        priority: Priority,
    ) -> SweepTask:
        return SweepTask(
            command=command,
            name=name,
            log_path=log_file or None,
            exclusive=exclusive,
            start_value=start_value,
            end_value=end_value,
            increment_value=increment_value,
            priority=priority,
        )

    def submit(self, task: SweepTask) -> bool:
        task = self._check_task(task)
        try:
            with self._lock:
                if not self._is_reusable():
                    self.exclusive = task.exclusive
                    self._create_container()
                container = self._container
                container.priority = task.priority
                farm_task = FarmTask(
                    name=task.name,
                    command=task.command,
                    start_value=task.start_value,
                    end_value=task.end_value,
                    increment_value=task.increment_value,
                    exclusive=task.exclusive,
                    stdout_path=task.log_path,
                    stderr_path=task.log_path,
                    requested_nodes=list(task.requested_nodes),
                )
                if self._job_creating:
                    self.client.add_task(container, farm_task)
                    self.client.submit_job(container, self.user_name)
                    self._job_creating = False
                else:
                    self.client.submit_task(container, farm_task)
                self.client.refresh_task(container, farm_task)
                self._initialize_handle(task.handle, farm_task, container)
            logger.info(
                "Submitted %s as task %d of job %d", task.name, farm_task.task_id, container.job_id
            )
            return True
        except Exception as e:
            self._report(f"Failed to submit {task.name}", e)
            return False

    def kill(self, task: SweepTask) -> bool:
        task = self._check_task(task)
        try:
            with self._lock:
                if not self._is_reusable() or not task.handle.submitted:
                    return True
                self.client.cancel_task(self._container, task.handle.id)
            task.handle.state = JobState.CANCELED
            logger.info("Canceled task %d of job %d", task.handle.id, self._container.job_id)
            return True
        except Exception as e:
            self._report(f"Failed to cancel {task.name}", e)
            return False

    def query_job_by_owner(self, owner: str | None) -> list[JobHandle]:
        try:
            with self._lock:
                if not self._is_reusable():
                    return []
                container = self._container
                if owner is not None and container.owner not in (None, owner):
                    return []
                return [
                    self._to_handle(task, container)
                    for task in container.tasks
                    if task.state in TASK_ACTIVE_STATES
                ]
        except Exception as e:
            self._report(f"Failed to query tasks for {owner}", e)
            return []

    def wait_for_done(self, stop_event: threading.Event | None = None) -> JobState:
        if self._done_files:
            done = wait_for_done_files(
                self._done_files,
                poll_interval=self.config.poll_interval,
                timeout=self.config.timeout,
                clock=self._clock,
                sleep=self._sleep,
                stop_event=stop_event,
            )
            return JobState.FINISHED if done else JobState.CANCELED
        container = self._container
        if container is None:
            return JobState.CREATE
        wait_until(
            lambda: self.client.refresh_job(container) in _CONTAINER_END_STATES
            or (stop_event is not None and stop_event.is_set()),
            poll_interval=self.config.poll_interval,
            timeout=self.config.timeout,
            clock=self._clock,
            sleep=self._sleep or time.sleep,
            what=f"job {container.job_id}",
        )
        match container.state:
            case TaskState.FINISHED:
                return JobState.FINISHED
            case TaskState.FAILED:
                return JobState.FAILED
            case _:
                return JobState.CANCELED

    def list_nodes(self) -> list[str]:
        return self.client.list_nodes()

    def farm_info(self) -> dict:
        container = self._container
        return {
            "cluster": self.cluster_name or "local",
            "job_name": self.job_name,
            "user_name": self.user_name,
            "job_id": container.job_id if container else None,
            "job_state": container.state.value if container else None,
            "tasks": len(container.tasks) if container else 0,
            "nodes": len(self.list_nodes()),
        }

    def close(self):
        self.client.close()

    @staticmethod
    def _initialize_handle(handle: JobHandle, farm_task: FarmTask, container: ContainerJob):
        handle.id = farm_task.task_id
        handle.state = convert_state(farm_task.state)
        handle.submit_time = farm_task.submit_time
        handle.custom_info["task_state"] = farm_task.state
        handle.custom_info["job_id"] = container.job_id

    @staticmethod
    def _to_handle(farm_task: FarmTask, container: ContainerJob) -> JobHandle:
        return JobHandle(
            id=farm_task.task_id,
            state=convert_state(farm_task.state),
            name=farm_task.name,
            command=farm_task.command,
            log_path=farm_task.stdout_path,
            priority=container.priority,
            machine=farm_task.allocated_nodes[0] if farm_task.allocated_nodes else None,
            cpu_time=farm_task.cpu_time,
            submit_time=farm_task.submit_time,
            custom_info={"task_state": farm_task.state, "job_id": container.job_id},
        )


class RemoteFarmComputation(ComputeBackend):
    description = "remote farm"

    def __init__(
        self,
        config: FarmConfig | None = None,
        scheduler: SchedulerClient | None = None,
        job_name: str = "",
        broadcast_command: str = "",
        reduce_command: str = "",
        sweep_start: int = 0,
        sweep_end: int = 0,
        sweep_increment: int = 1,
        task_name: str = "",
        done_files: list[Path] | None = None,
        priority: Priority = Priority.NORMAL,
        exclusive: bool = True,
        log_path: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] | None = None,
    ):
        super().__init__()
        self.config = config or FarmConfig()
        self.scheduler = scheduler
        self.job_name = job_name
        self.broadcast_command = broadcast_command
        self.reduce_command = reduce_command
        self.sweep_start = sweep_start
        self.sweep_end = sweep_end
        self.sweep_increment = sweep_increment
        self.task_name = task_name
        self.done_files = list(done_files) if done_files else []
        self.priority = priority
        self.exclusive = exclusive
        self.log_path = log_path
        self.follow_up = LocalQueueComputation()
        self.farm: SweepTaskFarm | None = None
        self.last_task: SweepTask | None = None
        self._clock = clock
        self._sleep = sleep

    def _connect(self) -> SweepTaskFarm:
        if self.scheduler is None:
            self.scheduler = RayScheduler()
        return SweepTaskFarm(
            self.scheduler,
            self.config,
            job_name=self.job_name or None,
            clock=self._clock,
            sleep=self._sleep,
        )

    def initialize(self) -> bool:
        if self.sweep_start > self.sweep_end:
            raise ConfigurationError(
                "The sweep start value should be less than or equal to sweep end value"
            )
        if self.sweep_increment <= 0:
            raise ConfigurationError("The sweep increment should be positive")
        if self.reduce_command:
            try:
                argv = split_command(self.reduce_command)
            except ValueError as err:
                raise ConfigurationError(f"Invalid reduce command: {err}") from err
            if not argv:
                raise ConfigurationError("The reduce command is blank")
        if self.farm is not None:
            return True
        try:
            self.farm = self._connect()
        except Exception as e:
            error = BackendCommunicationError(
                f"Could not connect to {self.config.head_node or 'local cluster'}: {e}"
            )
            error.__cause__ = e
            return self.fail(error)
        return True

    def broadcast(self) -> bool:
        if not self.broadcast_command:
            raise ConfigurationError("The broadcast command should not be empty")
        if self.done_files:
            try:
                clear_done_files(self.done_files)
            except OSError as e:
                return self.fail(e)
            self.farm.done_files = self.done_files
        name = self.task_name or self.job_name or self.config.job_name
        log_dir = self.config.state_dir / "logs"
        log_path = self.log_path or str(log_store.get_log_path(name, log_dir))
        task = self.farm.create_task(
            self.broadcast_command,
            name,
            log_path,
            self.exclusive,
            self.sweep_start,
            self.sweep_end,
            self.sweep_increment,
            self.priority,
        )
        if not self.farm.submit(task):
            error = BackendCommunicationError(f"Submission of {task.name} was rejected")
            error.__cause__ = self.farm.last_error
            return self.fail(error)
        self.last_task = task
        if "*" not in log_path:
            log_store.append_lines(
                Path(log_path),
                [f"{name}: task {task.handle.id} of job {task.handle.custom_info.get('job_id')}"],
            )
        try:
            state = self.farm.wait_for_done()
        except FarmTimeoutError:
            raise
        except Exception as e:
            error = BackendCommunicationError(f"Lost track of {task.name} while waiting: {e}")
            error.__cause__ = e
            return self.fail(error)
        if state != JobState.FINISHED:
            return self.fail(SweepFarmError(f"The broadcast job ended in state {state.value}"))
        return True

    def reduce(self) -> bool:
        if not self.reduce_command:
            logger.info("No reduce command configured")
        else:
            try:
                code = run_command(self.reduce_command, working_dir=Path.cwd())
            except (OSError, ValueError) as e:
                return self.fail(e)
            if code != 0:
                return self.fail(
                    SweepFarmError(f"Reduce command exited with code {code}: {self.reduce_command}")
                )
        if len(self.follow_up):
            ParallelComputation(self.follow_up, "follow-up").execute()
        return True

    def close(self):
        if self.farm is not None:
            self.farm.close()

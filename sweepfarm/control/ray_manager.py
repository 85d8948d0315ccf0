import itertools
import logging
import os
import threading
import warnings
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

import ray

from sweepfarm.control.process_manager import run_command
from sweepfarm.control.scheduler_client import ContainerJob, FarmTask
from sweepfarm.models.job import TASK_ACTIVE_STATES, TaskState

logger = logging.getLogger(__name__)


@ray.remote
def run_sweep_step(command: str, log_path: str | None, working_dir: str | None) -> int:
    return run_command(
        command, working_dir=working_dir, log_file=Path(log_path) if log_path else None
    )


class RayScheduler:
    """Scheduler client that runs each sweep step as a Ray task.

    Container jobs live in this process; Ray only sees the individual steps.
    """

    def __init__(self, working_dir: Path | None = None):
        self.address: str | None = None
        self.is_running = False
        self.working_dir = str(working_dir) if working_dir else None
        self._owns_runtime = False
        self._jobs: dict[int, ContainerJob] = {}
        self._refs: dict[tuple[int, int], list[ray.ObjectRef]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def connect(self, cluster: str | None):
        if self.is_running:
            return
        os.environ["RAY_ACCEL_ENV_VAR_OVERRIDE_ON_ZERO"] = "0"
        self._owns_runtime = not ray.is_initialized()
        with warnings.catch_warnings():
            warnings.filterwarnings("ignore", category=FutureWarning, message=".*RAY_ACCEL.*")
            try:
                ray.init(
                    address=cluster or "local", ignore_reinit_error=True, include_dashboard=False
                )
            except Exception as e:
                if "already been initialized" not in str(e).lower():
                    raise
        self.address = cluster
        self.is_running = True
        logger.info("Connected to Ray cluster %s", cluster or "(local)")

    def close(self):
        if self.is_running and self._owns_runtime:
            ray.shutdown()
        self.is_running = False

    def create_job(self, name: str, owner: str | None, user_name: str) -> ContainerJob:
        with self._lock:
            job = ContainerJob(job_id=next(self._ids), name=name, owner=owner, user_name=user_name)
            self._jobs[job.job_id] = job
        return job

    def add_task(self, job: ContainerJob, task: FarmTask):
        with self._lock:
            task.task_id = len(job.tasks) + 1
            task.state = TaskState.CONFIGURING
            job.tasks.append(task)

    def submit_job(self, job: ContainerJob, user_name: str):
        job.user_name = user_name
        job.state = TaskState.QUEUED
        for task in job.tasks:
            self._dispatch(job, task)
        job.state = TaskState.RUNNING

    def submit_task(self, job: ContainerJob, task: FarmTask):
        self.add_task(job, task)
        self._dispatch(job, task)
        job.state = TaskState.RUNNING

    def _dispatch(self, job: ContainerJob, task: FarmTask):
        options: dict = {"num_cpus": 1}
        if task.exclusive:
            options["scheduling_strategy"] = "SPREAD"
        refs = []
        for value in range(task.start_value, task.end_value + 1, task.increment_value):
            command = task.command.replace("*", str(value))
            log_path = task.stdout_path.replace("*", str(value)) if task.stdout_path else None
            refs.append(
                run_sweep_step.options(**options).remote(command, log_path, self.working_dir)
            )
        with self._lock:
            self._refs[(job.job_id, task.task_id)] = refs
        task.submit_time = datetime.now(UTC)
        task.state = TaskState.QUEUED
        logger.info("Dispatched %s: %d step(s) on job %d", task.name, len(refs), job.job_id)

    def refresh_task(self, job: ContainerJob, task: FarmTask) -> TaskState:
        if task.state in {TaskState.CONFIGURING, TaskState.CANCELED}:
            return task.state
        refs = self._refs.get((job.job_id, task.task_id), [])
        if not refs:
            return task.state
        ready, pending = ray.wait(refs, num_returns=len(refs), timeout=0)
        if pending:
            task.state = TaskState.RUNNING
            return task.state
        try:
            codes = ray.get(ready)
        except ray.exceptions.RayError as e:
            logger.error("Task %s on job %d failed: %s", task.name, job.job_id, e)
            task.state = TaskState.FAILED
            return task.state
        task.state = TaskState.FINISHED if all(code == 0 for code in codes) else TaskState.FAILED
        return task.state

    def refresh_job(self, job: ContainerJob) -> TaskState:
        if job.state == TaskState.CONFIGURING or not job.tasks:
            return job.state
        states = [self.refresh_task(job, task) for task in job.tasks]
        if any(s in TASK_ACTIVE_STATES for s in states):
            job.state = TaskState.RUNNING
        elif TaskState.FAILED in states:
            job.state = TaskState.FAILED
        elif all(s == TaskState.CANCELED for s in states):
            job.state = TaskState.CANCELED
        else:
            job.state = TaskState.FINISHED
        return job.state

    def cancel_task(self, job: ContainerJob, task_id: int):
        task = job.find_task(task_id)
        if task is None:
            raise KeyError(f"Task {task_id} not found in job {job.job_id}")
        for ref in self._refs.get((job.job_id, task_id), []):
            ray.cancel(ref, force=True)
        task.state = TaskState.CANCELED

    def list_nodes(self) -> list[str]:
        return [
            node.get("NodeManagerHostname") or node["NodeID"]
            for node in ray.nodes()
            if node.get("Alive")
        ]

    def list_jobs(
        self,
        name: str | None = None,
        user_name: str | None = None,
        owner: str | None = None,
        states: Iterable[TaskState] | None = None,
    ) -> list[ContainerJob]:
        wanted = set(states) if states is not None else None
        with self._lock:
            jobs = list(self._jobs.values())
        return [
            job
            for job in jobs
            if (name is None or job.name == name)
            and (user_name is None or job.user_name == user_name)
            and (owner is None or job.owner == owner)
            and (wanted is None or job.state in wanted)
        ]

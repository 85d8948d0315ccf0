import itertools
import os
import warnings

import pytest
import ray

from sweepfarm.control import log_store
from sweepfarm.control.scheduler_client import ContainerJob, FarmTask
from sweepfarm.models.compute import FarmConfig
from sweepfarm.models.job import TaskState


class FakeScheduler:
    def __init__(self):
        self.connected_to = []
        self.jobs: list[ContainerJob] = []
        self.submitted_jobs: list[int] = []
        self.submitted_tasks: list[tuple[int, str]] = []
        self.canceled: list[tuple[int, int]] = []
        self.closed = False
        self.fail_with: Exception | None = None
        self.next_job_state = TaskState.RUNNING
        self._ids = itertools.count(1)

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    def connect(self, cluster):
        self.connected_to.append(cluster)

    def close(self):
        self.closed = True

    def create_job(self, name, owner, user_name):
        self._maybe_fail()
        job = ContainerJob(job_id=next(self._ids), name=name, owner=owner, user_name=user_name)
        self.jobs.append(job)
        return job

    def add_task(self, job, task: FarmTask):
        task.task_id = len(job.tasks) + 1
        job.tasks.append(task)

    def submit_job(self, job, user_name):
        self._maybe_fail()
        self.submitted_jobs.append(job.job_id)
        job.state = self.next_job_state
        for task in job.tasks:
            task.state = TaskState.QUEUED

    def submit_task(self, job, task):
        self._maybe_fail()
        self.add_task(job, task)
        task.state = TaskState.QUEUED
        self.submitted_tasks.append((job.job_id, task.name))

    def refresh_job(self, job):
        self._maybe_fail()
        return job.state

    def refresh_task(self, job, task):
        return task.state

    def cancel_task(self, job, task_id):
        self._maybe_fail()
        job.find_task(task_id).state = TaskState.CANCELED
        self.canceled.append((job.job_id, task_id))

    def list_nodes(self):
        return ["node1", "node2"]

    def list_jobs(self, name=None, user_name=None, owner=None, states=None):
        return [
            j
            for j in self.jobs
            if (name is None or j.name == name)
            and (user_name is None or j.user_name == user_name)
            and (owner is None or j.owner == owner)
            and (states is None or j.state in set(states))
        ]


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def farm_config(tmp_path):
    return FarmConfig(
        job_name="test-job",
        user_name="tester",
        poll_interval=0.01,
        timeout=60,
        state_dir=tmp_path / "state",
    )


@pytest.fixture(autouse=True)
def isolated_log_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(log_store, "_LOG_DIR", tmp_path / "logs")


@pytest.fixture
def ray_cluster():
    os.environ["RAY_ACCEL_ENV_VAR_OVERRIDE_ON_ZERO"] = "0"
    if ray.is_initialized():
        ray.shutdown()
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=FutureWarning, message=".*RAY_ACCEL.*")
        ray.init(num_cpus=2, ignore_reinit_error=True, include_dashboard=False)
    yield
    ray.shutdown()

import pytest

from sweepfarm.control.engine import ParallelComputation
from sweepfarm.control.remote_farm import RemoteFarmComputation, SweepTaskFarm
from sweepfarm.control.scheduler_client import ContainerJob, FarmTask, UnitType
from sweepfarm.errors import (
    BackendCommunicationError,
    ConfigurationError,
    FarmTimeoutError,
    TypeMismatchError,
)
from sweepfarm.models.compute import FarmConfig
from sweepfarm.models.job import JobState, Priority, TaskState, convert_state


def _task(farm, name="sweep", exclusive=False, priority=Priority.NORMAL):
    return farm.create_task("run.sh *", name, None, exclusive, 1, 4, 1, priority)


def test_connects_and_creates_task_without_io(scheduler, farm_config):
    farm = SweepTaskFarm(scheduler, farm_config)
    task = _task(farm)

    assert scheduler.connected_to == [None]
    assert task.handle.id == -1
    assert task.handle.state == JobState.CREATE
    assert scheduler.jobs == []


def test_first_submit_batches_and_later_submits_are_incremental(scheduler, farm_config):
    farm = SweepTaskFarm(scheduler, farm_config)
    first, second = _task(farm, "a"), _task(farm, "b")

    assert farm.submit(first)
    assert farm.submit(second)

    assert scheduler.submitted_jobs == [1]
    assert scheduler.submitted_tasks == [(1, "b")]
    assert first.handle.id == 1
    assert second.handle.id == 2
    assert first.handle.state == JobState.PEND
    assert first.handle.custom_info["job_id"] == 1


def test_running_container_is_reused(scheduler, farm_config):
    farm = SweepTaskFarm(scheduler, farm_config)
    farm.submit(_task(farm, "a"))
    farm.container.state = TaskState.RUNNING

    farm.submit(_task(farm, "b"))

    assert len(scheduler.jobs) == 1
    assert farm.container.job_id == 1


@pytest.mark.parametrize(
    "state", [TaskState.FINISHING, TaskState.FINISHED, TaskState.FAILED, TaskState.CANCELED]
)
def test_finished_container_is_replaced(scheduler, farm_config, state):
    farm = SweepTaskFarm(scheduler, farm_config)
    farm.submit(_task(farm, "a"))
    farm.container.state = state

    second = _task(farm, "b")
    assert farm.submit(second)

    assert farm.container.job_id == 2
    assert scheduler.submitted_jobs == [1, 2]
    assert second.handle.custom_info["job_id"] == 2


def test_adopts_active_container_on_construction(scheduler, farm_config):
    existing = ContainerJob(
        job_id=42, name="test-job", owner="tester", user_name="tester", state=TaskState.QUEUED
    )
    scheduler.jobs.append(existing)

    farm = SweepTaskFarm(scheduler, farm_config)
    task = _task(farm)
    farm.submit(task)

    assert farm.container is existing
    assert scheduler.submitted_tasks == [(42, "sweep")]


def test_container_sizing_follows_exclusivity(scheduler, farm_config):
    farm = SweepTaskFarm(scheduler, farm_config)
    farm.submit(_task(farm, exclusive=True))
    exclusive_job = farm.container
    exclusive_job.state = TaskState.FINISHED
    farm.submit(_task(farm, exclusive=False))

    assert exclusive_job.unit_type == UnitType.NODE
    assert (exclusive_job.minimum_units, exclusive_job.maximum_units) == (1, 4)
    assert farm.container.unit_type == UnitType.CORE
    assert farm.container.maximum_units == 72


def test_priority_follows_last_submitted_task(scheduler, farm_config):
    farm = SweepTaskFarm(scheduler, farm_config)
    farm.submit(_task(farm, "a", priority=Priority.LOWEST))
    farm.submit(_task(farm, "b", priority=Priority.HIGHEST))

    assert farm.container.priority == Priority.HIGHEST


def test_submit_failure_returns_false_and_reports(scheduler, farm_config):
    errors = []
    farm = SweepTaskFarm(scheduler, farm_config, on_error=errors.append)
    scheduler.fail_with = ConnectionError("scheduler unreachable")

    assert farm.submit(_task(farm)) is False
    assert isinstance(farm.last_error, ConnectionError)
    assert "scheduler unreachable" in errors[0]


def test_submit_rejects_foreign_task_type(scheduler, farm_config):
    farm = SweepTaskFarm(scheduler, farm_config)

    with pytest.raises(TypeMismatchError):
        farm.submit(object())
    with pytest.raises(TypeMismatchError):
        farm.kill("task")


def test_kill_without_container_succeeds(scheduler, farm_config):
    farm = SweepTaskFarm(scheduler, farm_config)

    assert farm.kill(_task(farm)) is True
    assert scheduler.canceled == []


def test_kill_cancels_submitted_task(scheduler, farm_config):
    farm = SweepTaskFarm(scheduler, farm_config)
    farm.submit(_task(farm, "a"))
    task = _task(farm, "b")
    farm.submit(task)

    assert farm.kill(task) is True
    assert scheduler.canceled == [(1, 2)]
    assert task.handle.state == JobState.CANCELED


def test_kill_on_finished_container_is_noop(scheduler, farm_config):
    farm = SweepTaskFarm(scheduler, farm_config)
    task = _task(farm)
    farm.submit(task)
    farm.container.state = TaskState.FINISHED

    assert farm.kill(task) is True
    assert scheduler.canceled == []


def test_kill_failure_returns_false(scheduler, farm_config):
    farm = SweepTaskFarm(scheduler, farm_config)
    task = _task(farm)
    farm.submit(task)
    scheduler.fail_with = RuntimeError("lost connection")

    assert farm.kill(task) is False


def test_query_returns_only_active_tasks(scheduler, farm_config):
    farm = SweepTaskFarm(scheduler, farm_config)
    for name in ("a", "b", "c"):
        farm.submit(_task(farm, name))
    tasks = farm.container.tasks
    tasks[0].state = TaskState.RUNNING
    tasks[0].allocated_nodes = ["node7"]
    tasks[1].state = TaskState.FINISHED

    handles = farm.query_job_by_owner("tester")

    assert [h.name for h in handles] == ["a", "c"]
    assert handles[0].state == JobState.RUNNING
    assert handles[0].machine == "node7"
    assert handles[1].state == JobState.PEND


def test_query_is_empty_without_live_container(scheduler, farm_config):
    farm = SweepTaskFarm(scheduler, farm_config)
    assert farm.query_job_by_owner("tester") == []

    farm.submit(_task(farm))
    farm.container.state = TaskState.FAILED
    assert farm.query_job_by_owner("tester") == []


def test_query_for_other_owner_is_empty(scheduler, farm_config):
    farm = SweepTaskFarm(scheduler, farm_config)
    farm.submit(_task(farm))

    assert farm.query_job_by_owner("someone-else") == []


def test_query_failure_returns_empty(scheduler, farm_config):
    farm = SweepTaskFarm(scheduler, farm_config)
    farm.submit(_task(farm))
    scheduler.fail_with = RuntimeError("lost connection")

    assert farm.query_job_by_owner("tester") == []


@pytest.mark.parametrize("state", list(TaskState))
def test_convert_state_is_total(state):
    assert isinstance(convert_state(state), JobState)


def test_convert_state_mapping():
    finished = [
        TaskState.FINISHING,
        TaskState.FINISHED,
        TaskState.CANCELED,
        TaskState.FAILED,
        TaskState.CANCELING,
    ]
    assert {convert_state(s) for s in finished} == {JobState.FINISHED}
    assert convert_state(TaskState.RUNNING) == JobState.RUNNING
    for state in (TaskState.QUEUED, TaskState.DISPATCHING, TaskState.SUBMITTED):
        assert convert_state(state) == JobState.PEND
    assert convert_state(TaskState.CONFIGURING) == JobState.WAIT
    assert convert_state(TaskState.VALIDATING) == JobState.WAIT


def test_wait_for_done_uses_done_files(scheduler, farm_config, tmp_path):
    done = [tmp_path / "a.done", tmp_path / "b.done"]

    def touch_all(_):
        for path in done:
            path.touch()

    farm = SweepTaskFarm(scheduler, farm_config, sleep=touch_all)
    farm.done_files = done

    assert farm.wait_for_done() == JobState.FINISHED
    assert not any(p.exists() for p in done)


def test_wait_for_done_polls_container_without_done_files(scheduler, farm_config):
    farm = SweepTaskFarm(scheduler, farm_config, sleep=lambda _: None)
    farm.submit(_task(farm))
    states = iter([TaskState.RUNNING, TaskState.FAILED])
    scheduler.refresh_job = lambda job: setattr(job, "state", next(states)) or job.state

    assert farm.wait_for_done() == JobState.FAILED


def test_farm_info_and_nodes(scheduler, farm_config):
    with SweepTaskFarm(scheduler, farm_config) as farm:
        farm.submit(_task(farm))
        info = farm.farm_info()

    assert farm.list_nodes() == ["node1", "node2"]
    assert info["job_id"] == 1
    assert info["nodes"] == 2
    assert info["cluster"] == "local"
    assert scheduler.closed


def _remote(scheduler, farm_config, **kwargs):
    kwargs.setdefault("broadcast_command", "run.sh *")
    kwargs.setdefault("sweep_end", 3)
    return RemoteFarmComputation(config=farm_config, scheduler=scheduler, **kwargs)


def test_invalid_range_is_rejected_before_submission(scheduler, farm_config):
    backend = _remote(scheduler, farm_config, sweep_start=5, sweep_end=2)

    with pytest.raises(ConfigurationError):
        ParallelComputation(backend).execute()
    assert scheduler.connected_to == []
    assert scheduler.jobs == []


def test_missing_broadcast_command_is_rejected(scheduler, farm_config):
    backend = _remote(scheduler, farm_config, broadcast_command="")

    with pytest.raises(ConfigurationError):
        ParallelComputation(backend).execute()


def test_pipeline_submits_waits_and_runs_follow_up(scheduler, farm_config, tmp_path):
    done = tmp_path / "sweep.done"
    done.touch()
    follow_up = []
    backend = _remote(scheduler, farm_config, task_name="sweep", done_files=[done])
    backend.follow_up.enqueue_method(follow_up.append, "merged")
    scheduler_sleep = []

    def finish(_):
        scheduler_sleep.append(1)
        done.touch()

    backend._sleep = finish
    engine = ParallelComputation(backend)

    assert engine.execute() is True
    assert scheduler.submitted_jobs == [1]
    assert backend.last_task.handle.id == 1
    assert follow_up == ["merged"]
    assert scheduler_sleep == [1]
    assert not done.exists()
    log = farm_config.state_dir / "logs" / "sweep.log"
    assert "sweep: task 1 of job 1" in log.read_text()


def test_pipeline_reports_rejected_submission(scheduler, farm_config):
    backend = _remote(scheduler, farm_config)
    engine = ParallelComputation(backend)
    assert backend.initialize()
    scheduler.fail_with = ConnectionError("down")

    assert engine.execute() is False
    assert engine.result.failed_phase == "broadcast"
    assert isinstance(engine.inner_exception, BackendCommunicationError)
    assert isinstance(engine.inner_exception.__cause__, ConnectionError)


def test_pipeline_connection_failure_fails_initialize(scheduler, farm_config):
    def refuse(cluster):
        raise ConnectionError("no head node")

    scheduler.connect = refuse
    engine = ParallelComputation(_remote(scheduler, farm_config))

    assert engine.execute() is False
    assert engine.result.failed_phase == "initialize"
    assert isinstance(engine.inner_exception, BackendCommunicationError)


def test_pipeline_timeout_propagates(scheduler, tmp_path):
    config = FarmConfig(user_name="tester", poll_interval=5, timeout=10, state_dir=tmp_path)
    ticks = iter(range(0, 1000, 5))
    backend = RemoteFarmComputation(
        config=config,
        scheduler=scheduler,
        broadcast_command="run.sh *",
        done_files=[tmp_path / "never.done"],
        clock=lambda: next(ticks),
        sleep=lambda _: None,
    )

    with pytest.raises(FarmTimeoutError):
        ParallelComputation(backend).execute()


def test_pipeline_fails_when_job_fails(scheduler, farm_config):
    backend = _remote(scheduler, farm_config, sleep=lambda _: None)
    scheduler.next_job_state = TaskState.FAILED
    engine = ParallelComputation(backend)

    assert engine.execute() is False
    assert engine.result.failed_phase == "broadcast"
    assert "failed" in str(engine.inner_exception)


def test_reduce_command_exit_code_is_checked(scheduler, farm_config):
    backend = _remote(scheduler, farm_config, reduce_command="false", sleep=lambda _: None)
    scheduler.next_job_state = TaskState.FINISHED
    engine = ParallelComputation(backend)

    assert engine.execute() is False
    assert engine.result.failed_phase == "reduce"


def test_scheduler_lost_while_waiting_fails_broadcast(scheduler, farm_config):
    def lose_connection(_):
        scheduler.fail_with = RuntimeError("scheduler connection lost")

    backend = _remote(scheduler, farm_config, sleep=lose_connection)
    engine = ParallelComputation(backend)

    assert engine.execute() is False
    assert engine.result.failed_phase == "broadcast"
    assert isinstance(engine.inner_exception, BackendCommunicationError)
    assert isinstance(engine.inner_exception.__cause__, RuntimeError)


@pytest.mark.parametrize("command", ['echo "unterminated', "   "])
def test_malformed_reduce_command_rejected_before_submission(scheduler, farm_config, command):
    backend = _remote(scheduler, farm_config, reduce_command=command)

    with pytest.raises(ConfigurationError):
        ParallelComputation(backend).execute()
    assert scheduler.connected_to == []
    assert scheduler.jobs == []


def test_reduce_command_changed_after_initialize_fails_reduce(scheduler, farm_config):
    backend = _remote(scheduler, farm_config, sleep=lambda _: None)
    scheduler.next_job_state = TaskState.FINISHED
    assert backend.initialize() is True
    assert backend.broadcast() is True

    backend.reduce_command = 'echo "unterminated'

    assert backend.reduce() is False
    assert isinstance(backend.inner_exception, ValueError)


def test_farm_task_defaults_to_single_step():
    task = FarmTask(name="once", command="run.sh")

    assert (task.start_value, task.end_value, task.increment_value) == (0, 0, 1)

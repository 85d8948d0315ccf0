import logging
import sys
from pathlib import Path

import click

from sweepfarm.agent.detector import detect_host
from sweepfarm.control import log_store
from sweepfarm.control.platform import PlatformKind, create_platform
from sweepfarm.control.ray_manager import RayScheduler
from sweepfarm.control.thread_pool import ParallelCommand
from sweepfarm.errors import SweepFarmError
from sweepfarm.models.compute import FarmConfig
from sweepfarm.models.job import Priority

PRIORITIES = [p.name.lower() for p in Priority]


def _load_config(**overrides) -> FarmConfig:
    try:
        data = FarmConfig.from_env().to_dict()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return FarmConfig.from_dict(data)
    except SweepFarmError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@click.argument("command")
@click.option("--start", default=0, help="First sweep index")
@click.option("--end", default=0, help="Last sweep index (inclusive)")
@click.option("--step", default=1, help="Sweep increment")
@click.option("--name", default="", help="Task name")
@click.option("--job-name", help="Container job name")
@click.option("--head-node", help="Cluster address (local cluster if omitted)")
@click.option("--priority", type=click.Choice(PRIORITIES), default="normal", help="Job priority")
@click.option("--exclusive/--shared", default=True, help="Reserve whole nodes or share cores")
@click.option("--done-file", "done_files", multiple=True, help="File signalling a finished step")
@click.option("--reduce-command", default="", help="Command run locally after the sweep")
@click.option("--log-file", help="Task log file ('*' expands to the sweep index)")
@click.option("--timeout", type=float, help="Seconds to wait for completion")
def sweep(
    command: str,
    start: int,
    end: int,
    step: int,
    name: str,
    job_name: str | None,
    head_node: str | None,
    priority: str,
    exclusive: bool,
    done_files: tuple[str, ...],
    reduce_command: str,
    log_file: str | None,
    timeout: float | None,
):
    config = _load_config(head_node=head_node, job_name=job_name, timeout=timeout)
    engine = create_platform(PlatformKind.REMOTE_FARM, config=config)
    backend = engine.backend
    backend.broadcast_command = command
    backend.task_name = name
    backend.sweep_start, backend.sweep_end, backend.sweep_increment = start, end, step
    backend.priority = Priority[priority.upper()]
    backend.exclusive = exclusive
    backend.done_files = [Path(p) for p in done_files]
    backend.reduce_command = reduce_command
    backend.log_path = log_file
    click.echo(f"Submitting sweep {command!r} over [{start}, {end}] step {step}...")
    try:
        ok = engine.execute()
    except SweepFarmError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        backend.close()
    if not ok:
        click.echo(f"Sweep failed in {engine.result.failed_phase} phase", err=True)
        if engine.inner_exception:
            click.echo(f"  {engine.inner_exception}", err=True)
        sys.exit(1)
    click.echo("Sweep completed")


@cli.command()
@click.argument("commands", nargs=-1, required=True)
@click.option("--workers", default=0, help="Worker threads (CPU count if 0)")
def local(commands: tuple[str, ...], workers: int):
    engine = create_platform(PlatformKind.MULTI_WORKER_THREAD)
    engine.backend.max_workers = workers
    engine.backend.parameters = [
        ParallelCommand(*cmd.split(" ", 1), description=f"command {i}")
        for i, cmd in enumerate(commands, 1)
    ]
    if not engine.execute():
        click.echo(f"Error: {engine.inner_exception}", err=True)
        sys.exit(1)
    click.echo(f"{len(commands)} command(s) completed")


@cli.command()
@click.option("--head-node", help="Cluster address (local cluster if omitted)")
def nodes(head_node: str | None):
    scheduler = RayScheduler()
    try:
        scheduler.connect(head_node)
        names = scheduler.list_nodes()
    except Exception as e:
        click.echo(f"Error: Could not connect to cluster: {e}", err=True)
        sys.exit(1)
    finally:
        scheduler.close()
    click.echo(f"Nodes ({len(names)}):")
    for node in names:
        click.echo(f"  {node}")


@cli.command()
def host():
    info = detect_host()
    cpu = info["cpu"]
    click.echo(
        f"{info['node_id']}: {cpu['name']}\n"
        f"  {cpu['cores']} cores, {cpu['memory_gb']} GB RAM, {cpu['utilization_percent']}% busy"
    )


@cli.command()
@click.argument("name")
@click.option("--tail", type=int, help="Only print the last N lines")
def logs(name: str, tail: int | None):
    config = _load_config()
    path = log_store.get_log_path(name, config.state_dir / "logs")
    lines = log_store.read_lines(path, tail=tail)
    if not lines:
        click.echo(f"No logs available for {name}", err=True)
        sys.exit(1)
    for line in lines:
        click.echo(line)

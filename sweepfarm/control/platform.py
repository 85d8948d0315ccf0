import logging
from collections.abc import Callable
from enum import Enum

from sweepfarm.agent.detector import cpu_count
from sweepfarm.control.engine import ParallelComputation
from sweepfarm.control.local_queue import LocalQueueComputation
from sweepfarm.control.remote_farm import RemoteFarmComputation
from sweepfarm.control.scheduler_client import SchedulerClient
from sweepfarm.control.thread_pool import MultiWorkerComputation
from sweepfarm.errors import ConfigurationError
from sweepfarm.models.compute import FarmConfig

logger = logging.getLogger(__name__)


class PlatformKind(str, Enum):
    LOCAL_QUEUE = "local"
    REMOTE_FARM = "remote"
    MULTI_WORKER_THREAD = "threads"


def _parse_kind(kind: PlatformKind | str) -> PlatformKind:
    try:
        return PlatformKind(kind)
    except ValueError as err:
        raise ConfigurationError(f"Invalid computation platform: {kind!r}") from err


def create_platform(
    kind: PlatformKind | str,
    preparation: Callable[[], object] | None = None,
    config: FarmConfig | None = None,
    scheduler: SchedulerClient | None = None,
) -> ParallelComputation:
    match _parse_kind(kind):
        case PlatformKind.LOCAL_QUEUE:
            backend = LocalQueueComputation()
        case PlatformKind.REMOTE_FARM:
            backend = RemoteFarmComputation(config=config, scheduler=scheduler)
        case PlatformKind.MULTI_WORKER_THREAD:
            cap = min(config.max_cores, cpu_count()) if config else 0
            backend = MultiWorkerComputation(max_workers=cap)
    engine = ParallelComputation(backend)
    logger.debug("Created %s platform", engine.description)
    if preparation is not None:
        preparation()
    return engine

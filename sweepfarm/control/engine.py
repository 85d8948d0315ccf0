import logging

from sweepfarm.models.job import PipelineResult

logger = logging.getLogger(__name__)

PHASES = ("initialize", "broadcast", "reduce", "validate")


class ComputeBackend:
    """One execution environment driven by ParallelComputation.

    Each phase returns True to continue. Operational failures are caught inside
    the phase, recorded with ``fail`` and reported as False.
    """

    description: str = ""

    def __init__(self):
        self.inner_exception: BaseException | None = None

    def initialize(self) -> bool:
        return True

    def broadcast(self) -> bool:
        return True

    def reduce(self) -> bool:
        return True

    def validate_result(self) -> bool:
        return True

    def fail(self, error: BaseException) -> bool:
        if self.inner_exception is None:
            self.inner_exception = error
        logger.error("%s: %s", type(self).__name__, error, exc_info=error)
        return False


class ParallelComputation:
    def __init__(self, backend: ComputeBackend, description: str = ""):
        self.backend = backend
        self.description = description or backend.description or type(backend).__name__
        self.result: PipelineResult | None = None

    @property
    def inner_exception(self) -> BaseException | None:
        return self.result.inner_exception if self.result else None

    def execute(self) -> bool:
        result = PipelineResult()
        self.result = result
        self.backend.inner_exception = None
        steps = (
            self.backend.initialize,
            self.backend.broadcast,
            self.backend.reduce,
            self.backend.validate_result,
        )
        for phase, step in zip(PHASES, steps, strict=True):
            logger.debug("%s: %s", self.description, phase)
            ok = bool(step())
            setattr(result, phase, ok)
            if not ok:
                result.inner_exception = self.backend.inner_exception
                logger.warning("%s: %s phase failed", self.description, phase)
                return False
        logger.info("%s: completed", self.description)
        return True

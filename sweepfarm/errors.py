class SweepFarmError(Exception):
    pass


class ConfigurationError(SweepFarmError, ValueError):
    pass


class BackendCommunicationError(SweepFarmError):
    pass


class FarmTimeoutError(SweepFarmError, TimeoutError):
    pass


class TypeMismatchError(SweepFarmError, TypeError):
    pass


class ParallelExecutionError(SweepFarmError):
    def __init__(self, message: str, exceptions: list[BaseException] | None = None):
        super().__init__(message)
        self.exceptions = list(exceptions or [])

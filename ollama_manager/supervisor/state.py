from enum import Enum
from typing import NamedTuple, Optional

from .errors import ErrorKind


class ServiceState(Enum):
    """Lifecycle state of the supervised service."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class ResourceSample(NamedTuple):
    """Latest resident-memory reading of the supervised process tree."""
    total_resident_bytes: int
    timestamp: float

    @property
    def megabytes(self) -> float:
        """Resident memory in MB, rounded to one decimal place."""
        return round(self.total_resident_bytes / 1024 / 1024, 1)


class ServiceResult(NamedTuple):
    """
    Outcome of a start() or stop() call.

    `skipped` marks the no-op paths (wrong state, operation already in
    progress, declined confirmation); those are successful and change nothing.
    """
    success: bool
    error: Optional[ErrorKind] = None
    message: str = ""
    skipped: bool = False

    @classmethod
    def ok(cls, message: str = "") -> "ServiceResult":
        return cls(True, None, message)

    @classmethod
    def skip(cls, message: str) -> "ServiceResult":
        return cls(True, None, message, skipped=True)

    @classmethod
    def failure(cls, error: ErrorKind, message: str) -> "ServiceResult":
        return cls(False, error, message)


class StatusReport(NamedTuple):
    is_running: bool
    ram_usage_bytes: int
    state: ServiceState

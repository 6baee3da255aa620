from enum import Enum


class ErrorKind(Enum):
    """Failure categories returned by ServiceSupervisor.start() and stop()."""
    BINARY_NOT_FOUND = "binary_not_found"
    ALREADY_RUNNING = "already_running"
    STARTUP_TIMEOUT = "startup_timeout"
    SPAWN_ERROR = "spawn_error"
    SIGNAL_ERROR = "signal_error"
    CANCELLED = "cancelled"


class SupervisorError(Exception):
    """Base class for errors raised inside the supervisor package."""


class SignalError(SupervisorError):
    """The OS signalling mechanism itself failed (not 'no such process')."""

from hourglass.process.breaker import BreakerState, CircuitBreaker
from hourglass.process.errors import (
    CircuitOpenError,
    CommandError,
    CommandFailedError,
    CommandNotFoundError,
    CommandPermissionError,
    CommandTimeoutError,
    ExecutorBusyError,
    NetworkError,
    ResourceExhaustedError,
)
from hourglass.process.executor import AttemptRecord, CommandResult, ExecutionStats, ProcessExecutor

__all__ = [
    "AttemptRecord",
    "BreakerState",
    "CircuitBreaker",
    "CircuitOpenError",
    "CommandError",
    "CommandFailedError",
    "CommandNotFoundError",
    "CommandPermissionError",
    "CommandResult",
    "CommandTimeoutError",
    "ExecutionStats",
    "ExecutorBusyError",
    "NetworkError",
    "ProcessExecutor",
    "ResourceExhaustedError",
]

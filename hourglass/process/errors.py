class CommandError(Exception):
    """Base for every failure surfaced by the process executor."""

    transient = False

    def __init__(self, message: str, *, exit_code: int | None = None, stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class CommandNotFoundError(CommandError):
    pass


class CommandPermissionError(CommandError):
    pass


class CommandFailedError(CommandError):
    transient = True


class CommandTimeoutError(CommandError):
    transient = True


class NetworkError(CommandError):
    transient = True


class ResourceExhaustedError(CommandError):
    pass


class CircuitOpenError(CommandError):
    pass


class ExecutorBusyError(CommandError):
    pass

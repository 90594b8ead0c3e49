import asyncio
import contextlib
import errno
import os
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from hourglass import constants
from hourglass.clock import Clock, SystemClock
from hourglass.logging import get_logger
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

_logger = get_logger(__name__)

_ENV_PASSTHROUGH = ("PATH", "HOME", "USER", "LANG", "LC_ALL", "TMPDIR")
_ENV_PREFIXES = ("ANTHROPIC_", "CLAUDE_")
_NETWORK_MARKERS = (
    "network",
    "could not resolve",
    "name resolution",
    "connection refused",
    "connection reset",
    "timed out connecting",
    "dns",
)
_RESOURCE_ERRNOS = frozenset({errno.EMFILE, errno.ENFILE, errno.ENOMEM, errno.EAGAIN})


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str
    duration: float
    attempts: int = 1


@dataclass(frozen=True)
class AttemptRecord:
    attempt: int
    ok: bool
    duration: float
    timestamp: float
    exit_code: int | None = None
    error: str | None = None


@dataclass
class ExecutionStats:
    total: int = 0
    successes: int = 0
    failures: int = 0
    total_duration: float = 0.0
    breaker_trips: int = 0

    @property
    def average_duration(self) -> float:
        return self.total_duration / self.total if self.total else 0.0

    @property
    def success_rate(self) -> float:
        return self.successes / self.total if self.total else 0.0


def sanitized_env() -> dict[str, str]:
    env = {k: os.environ[k] for k in _ENV_PASSTHROUGH if k in os.environ}
    env.update({k: v for k, v in os.environ.items() if k.startswith(_ENV_PREFIXES)})
    return env


def classify_exit(exit_code: int, stderr: str) -> CommandError:
    detail = stderr.strip()
    if exit_code == 126:
        return CommandPermissionError(f"Permission denied (exit 126): {detail}", exit_code=exit_code, stderr=stderr)
    if exit_code == 127:
        return CommandNotFoundError(f"Command not found (exit 127): {detail}", exit_code=exit_code, stderr=stderr)
    lowered = detail.lower()
    if any(marker in lowered for marker in _NETWORK_MARKERS):
        return NetworkError(f"Network error (exit {exit_code}): {detail}", exit_code=exit_code, stderr=stderr)
    return CommandFailedError(f"Exit code {exit_code}: {detail}", exit_code=exit_code, stderr=stderr)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, CommandError) and exc.transient


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n... [truncated {len(text) - limit} chars]"


class ProcessExecutor:
    """Runs the external command with a hard timeout, retries and a circuit breaker.

    Only one invocation may be in flight at a time. Transient failures
    (non-zero exit, timeout, network) are retried with exponential backoff;
    everything else fails on the first attempt.
    """

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        timeout: float = constants.COMMAND_TIMEOUT,
        max_retries: int = constants.MAX_RETRY_ATTEMPTS,
        base_delay: float = constants.RETRY_BASE_DELAY,
        max_delay: float = constants.RETRY_MAX_DELAY,
        breaker: CircuitBreaker | None = None,
        output_limit: int = constants.COMMAND_OUTPUT_LIMIT,
        history_size: int = constants.ATTEMPT_HISTORY_SIZE,
        on_attempt: Callable[[AttemptRecord], None] | None = None,
    ):
        self.clock = clock or SystemClock()
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.breaker = breaker or CircuitBreaker(clock=self.clock)
        self.output_limit = output_limit
        self.on_attempt = on_attempt
        self.history: deque[AttemptRecord] = deque(maxlen=history_size)
        self._stats = ExecutionStats()
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def stats(self) -> ExecutionStats:
        self._stats.breaker_trips = self.breaker.trips
        return self._stats

    async def execute(
        self,
        command: str,
        args: Sequence[str] = (),
        timeout: float | None = None,
    ) -> CommandResult:
        if self._busy:
            raise ExecutorBusyError("Another command is already in flight")
        if not self.breaker.allow():
            raise CircuitOpenError(
                f"Circuit breaker open, retry in {self.breaker.retry_after:.0f}s",
            )

        # A half-open breaker admits a single trial attempt
        retries = 0 if self.breaker.state is BreakerState.HALF_OPEN else self.max_retries
        self._busy = True
        started = self.clock.monotonic()
        try:
            result = await self._execute_with_retry(command, list(args), timeout or self.timeout, retries)
        except CommandError:
            self.breaker.record_failure()
            self._record_stats(ok=False, duration=self.clock.monotonic() - started)
            raise
        except BaseException:
            self.breaker.release_trial()
            raise
        finally:
            self._busy = False

        self.breaker.record_success()
        self._record_stats(ok=True, duration=self.clock.monotonic() - started)
        return result

    async def _execute_with_retry(
        self,
        command: str,
        args: list[str],
        timeout: float,
        retries: int,
    ) -> CommandResult:
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(retries + 1),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=2, max=self.max_delay),
            sleep=self.clock.sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                result = await self._attempt(command, args, timeout, attempt.retry_state.attempt_number)
        return result

    async def _attempt(self, command: str, args: list[str], timeout: float, number: int) -> CommandResult:
        started = self.clock.monotonic()
        try:
            result = await self._run_once(command, args, timeout)
        except CommandError as e:
            self._record_attempt(
                AttemptRecord(
                    attempt=number,
                    ok=False,
                    duration=self.clock.monotonic() - started,
                    timestamp=self.clock.time(),
                    exit_code=e.exit_code,
                    error=str(e),
                )
            )
            raise
        self._record_attempt(
            AttemptRecord(
                attempt=number,
                ok=True,
                duration=result.duration,
                timestamp=self.clock.time(),
                exit_code=result.exit_code,
            )
        )
        return CommandResult(
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            duration=result.duration,
            attempts=number,
        )

    async def _run_once(self, command: str, args: list[str], timeout: float) -> CommandResult:
        started = self.clock.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=sanitized_env(),
            )
        except FileNotFoundError as e:
            raise CommandNotFoundError(f"Command not found: {command}") from e
        except PermissionError as e:
            raise CommandPermissionError(f"Permission denied: {command}") from e
        except OSError as e:
            if e.errno in _RESOURCE_ERRNOS:
                raise ResourceExhaustedError(f"Cannot spawn {command}: {e}") from e
            raise CommandError(f"Cannot spawn {command}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError as e:
            await self._kill(proc)
            raise CommandTimeoutError(f"Command timed out after {timeout}s") from e
        except asyncio.CancelledError:
            await self._kill(proc)
            raise

        out = _truncate(stdout.decode(errors="replace"), self.output_limit)
        err = _truncate(stderr.decode(errors="replace"), self.output_limit)
        if proc.returncode != 0:
            raise classify_exit(proc.returncode, err)
        return CommandResult(
            exit_code=0,
            stdout=out,
            stderr=err,
            duration=self.clock.monotonic() - started,
        )

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()

    def _record_attempt(self, record: AttemptRecord) -> None:
        self.history.append(record)
        if self.on_attempt:
            try:
                self.on_attempt(record)
            except Exception:
                _logger.exception("on_attempt callback failed")

    def _record_stats(self, *, ok: bool, duration: float) -> None:
        self._stats.total += 1
        self._stats.total_duration += duration
        if ok:
            self._stats.successes += 1
        else:
            self._stats.failures += 1

    def _log_retry(self, retry_state: RetryCallState) -> None:
        _logger.warning(
            "Command failed (attempt %d/%d), retrying in %.0fs: %s",
            retry_state.attempt_number,
            self.max_retries + 1,
            retry_state.next_action.sleep,
            retry_state.outcome.exception(),
        )

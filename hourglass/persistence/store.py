import hashlib
import json
import os
from pathlib import Path

from hourglass import constants
from hourglass.clock import Clock, SystemClock
from hourglass.logging import get_logger
from hourglass.session.models import SessionData, SessionState

_logger = get_logger(__name__)

# Snapshots in these states describe no session worth recovering
_TERMINAL_STATES = frozenset({SessionState.IDLE, SessionState.COMPLETED})


class PersistenceError(Exception):
    pass


class CorruptSnapshot(Exception):
    pass


def canonical_json(payload: dict) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_checksum(payload: dict, algorithm: str = constants.CHECKSUM_ALGORITHM) -> str:
    return hashlib.new(algorithm, canonical_json(payload).encode()).hexdigest()


class PersistenceStore:
    """Durable single-slot snapshot of the live session.

    The file is written atomically (temp file, fsync, rename), so a crash
    mid-write leaves either the previous snapshot or the new one. `load`
    never raises: anything unreadable, tampered with, or too old to resume
    reads as "no snapshot".
    """

    def __init__(
        self,
        path: Path,
        *,
        clock: Clock | None = None,
        recovery_window: float = constants.CRASH_RECOVERY_WINDOW,
        algorithm: str = constants.CHECKSUM_ALGORITHM,
    ):
        self.path = Path(path)
        self.clock = clock or SystemClock()
        self.recovery_window = recovery_window
        self.algorithm = algorithm

    @property
    def _tmp_path(self) -> Path:
        return self.path.with_name(self.path.name + ".tmp")

    @property
    def corrupt_path(self) -> Path:
        return self.path.with_name(self.path.name + ".corrupt")

    def save(self, session: SessionData) -> None:
        # The timestamp is mirrored inside the checksummed payload
        session.updated_at = self.clock.time()
        payload = session.to_dict()
        snapshot = {
            "sessionData": payload,
            "timestamp": session.updated_at,
            "checksum": compute_checksum(payload, self.algorithm),
        }
        tmp = self._tmp_path
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(json.dumps(snapshot, indent=2))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError as e:
            _logger.error("Failed to persist session %s: %s", session.session_id, e)
            tmp.unlink(missing_ok=True)
            raise PersistenceError(f"Failed to write snapshot to {self.path}: {e}") from e

    def load(self, *, quarantine: bool = True) -> SessionData | None:
        """Return the recoverable session, or None.

        A corrupt snapshot is moved aside to `.corrupt` unless `quarantine` is
        False, which leaves the file untouched for read-only callers.
        """
        if not self.path.exists():
            _logger.debug("No snapshot at %s", self.path)
            return None

        try:
            raw = self.path.read_bytes()
        except OSError as e:
            _logger.warning("Snapshot %s unreadable: %s", self.path, e)
            return None

        try:
            session, timestamp = self._decode(raw)
        except CorruptSnapshot as e:
            _logger.warning("Discarding corrupt snapshot %s: %s", self.path, e)
            if quarantine:
                self._quarantine()
            return None

        if session.state in _TERMINAL_STATES:
            _logger.info("Snapshot holds a %s session, nothing to recover", session.state)
            return None

        if self.is_stale(session, timestamp):
            _logger.info("Snapshot for session %s is stale, ignoring", session.session_id)
            return None

        return session

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
        self._tmp_path.unlink(missing_ok=True)

    def is_stale(self, session: SessionData, timestamp: float) -> bool:
        remaining = max(0.0, session.target_duration - session.elapsed_seconds)
        deadline = timestamp + remaining + self.recovery_window
        return self.clock.time() > deadline

    def _decode(self, raw: bytes) -> tuple[SessionData, float]:
        try:
            snapshot = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CorruptSnapshot(f"invalid JSON: {e}") from e

        if not isinstance(snapshot, dict):
            raise CorruptSnapshot("snapshot is not an object")
        payload = snapshot.get("sessionData")
        timestamp = snapshot.get("timestamp")
        checksum = snapshot.get("checksum")
        if not isinstance(payload, dict) or not isinstance(timestamp, int | float) or not isinstance(checksum, str):
            raise CorruptSnapshot("missing sessionData, timestamp or checksum")

        if compute_checksum(payload, self.algorithm) != checksum:
            raise CorruptSnapshot("checksum mismatch")

        try:
            session = SessionData.from_dict(payload)
        except (TypeError, ValueError, KeyError) as e:
            raise CorruptSnapshot(f"invalid session data: {e}") from e

        if session.updated_at != timestamp:
            raise CorruptSnapshot("timestamp does not match session data")
        if not 0.0 <= session.progress <= 1.0:
            raise CorruptSnapshot(f"progress out of range: {session.progress}")
        if session.elapsed_seconds < 0 or session.accumulated_paused_duration < 0:
            raise CorruptSnapshot("negative duration")

        return session, float(timestamp)

    def _quarantine(self) -> None:
        try:
            os.replace(self.path, self.corrupt_path)
        except OSError:
            _logger.exception("Failed to quarantine %s", self.path)

# --- Session ---

DEFAULT_TARGET_DURATION = 18_000.0  # 5 hours
DEFAULT_COMMAND_INTERVAL = 3_600.0
COMPLETION_DISPLAY_DELAY = 10.0


# --- Timing ---

TICK_INTERVAL = 1.0
LOW_POWER_TICK_INTERVAL = 30.0
MAX_TIMING_DRIFT = 2.0
ACCEPTABLE_TIMING_DRIFT = 10.0
MAX_CONSECUTIVE_RECALIBRATIONS = 3


# --- Persistence ---

AUTOSAVE_INTERVAL = 30.0
CRASH_RECOVERY_WINDOW = 300.0
SNAPSHOT_FILENAME = "session.json"
DIAGNOSTICS_DB_FILENAME = "diagnostics.db"
LOG_FILENAME = "hourglass.log"
CHECKSUM_ALGORITHM = "sha256"


# --- Process execution ---

COMMAND_TIMEOUT = 300.0
MAX_RETRY_ATTEMPTS = 5
RETRY_BASE_DELAY = 1.0
RETRY_MAX_DELAY = 16.0
CIRCUIT_FAILURE_THRESHOLD = 3
CIRCUIT_COOLDOWN = 300.0
COMMAND_OUTPUT_LIMIT = 4000
ATTEMPT_HISTORY_SIZE = 100


# --- Health & recovery ---

HEALTH_INTERVAL = 15.0
HEALTH_HISTORY_SIZE = 20
NETWORK_PROBE_TIMEOUT = 3.0
ERROR_HISTORY_SIZE = 100
SUSTAINED_PRESSURE_SAMPLES = 3

import os

BACKEND_TOKEN = os.environ.get("BACKEND_TOKEN", "")
APP_DATA_DIR = os.environ.get("APP_DATA_DIR", os.path.join(os.getcwd(), "data"))
LOG_DIR = os.environ.get("LOG_DIR", os.path.join(APP_DATA_DIR, "logs"))
BACKEND_WORKERS = int(os.environ.get("BACKEND_WORKERS", "2"))
BACKEND_PORT = int(os.environ.get("BACKEND_PORT", "49671"))
JOB_QUEUE_MAXSIZE = int(os.environ.get("JOB_QUEUE_MAXSIZE", "100"))

DB_PATH = os.environ.get(
    "SMARTPAUSE_DB_PATH", os.path.join(APP_DATA_DIR, "diagnostics.db")
)

# Anthropic backend
ANTHROPIC_API_KEY = os.environ.get("ANTHROPIC_API_KEY", "")
ANTHROPIC_API_URL = os.environ.get(
    "ANTHROPIC_API_URL", "https://api.anthropic.com/v1/messages"
)
ANTHROPIC_VERSION = os.environ.get("ANTHROPIC_VERSION", "2023-06-01")
LLM_MAX_ATTEMPTS = int(os.environ.get("LLM_MAX_ATTEMPTS", "3"))
LLM_REQUEST_TIMEOUT_SEC = float(os.environ.get("LLM_REQUEST_TIMEOUT_SEC", "240"))
LLM_RETRY_BASE_DELAY_SEC = float(os.environ.get("LLM_RETRY_BASE_DELAY_SEC", "2.0"))

# Circuit breaker
CIRCUIT_WINDOW_SEC = int(os.environ.get("CIRCUIT_WINDOW_SEC", "600"))
CIRCUIT_THRESHOLD = int(os.environ.get("CIRCUIT_THRESHOLD", "3"))
CIRCUIT_OPEN_SEC = int(os.environ.get("CIRCUIT_OPEN_SEC", "600"))

# Recovery sweep
SWEEP_INTERVAL_SEC = int(os.environ.get("SWEEP_INTERVAL_SEC", "60"))
QUEUED_STALE_SEC = int(os.environ.get("QUEUED_STALE_SEC", "120"))
RUNNING_STALE_SEC = int(os.environ.get("RUNNING_STALE_SEC", "900"))
MAX_DISPATCH_ATTEMPTS = int(os.environ.get("MAX_DISPATCH_ATTEMPTS", "3"))


def ensure_dirs() -> None:
    os.makedirs(APP_DATA_DIR, exist_ok=True)
    os.makedirs(LOG_DIR, exist_ok=True)

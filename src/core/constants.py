"""System-wide constants. All magic numbers and strings live here."""

from __future__ import annotations

# ── Salesforce limits payload keys ───────────────────────────────
LIMIT_DAILY_API_REQUESTS = "DailyApiRequests"
LIMIT_DATA_STORAGE_MB = "DataStorageMB"
LIMIT_FILE_STORAGE_MB = "FileStorageMB"

# metric family -> payload key
TRACKED_LIMITS: dict[str, str] = {
    "api": LIMIT_DAILY_API_REQUESTS,
    "data": LIMIT_DATA_STORAGE_MB,
    "file": LIMIT_FILE_STORAGE_MB,
}

# ── Snapshot metric fields ───────────────────────────────────────
METRIC_FIELDS: tuple[str, ...] = (
    "api_requests_used",
    "api_requests_max",
    "api_usage_percentage",
    "data_storage_used",
    "data_storage_max",
    "data_usage_percentage",
    "file_storage_used",
    "file_storage_max",
    "file_usage_percentage",
)

# ── Credential envelope ──────────────────────────────────────────
ENCRYPTION_KEY_BYTES = 32           # AES-256
ENVELOPE_IV_BYTES = 12              # 96-bit GCM nonce
ENVELOPE_TAG_BYTES = 16
ENVELOPE_SEPARATOR = ":"

# ── Salesforce endpoints ─────────────────────────────────────────
SALESFORCE_LIMITS_PATH = "/services/data/{version}/limits"
SALESFORCE_TOKEN_PATH = "/services/oauth2/token"
SALESFORCE_INVALID_SESSION = "INVALID_SESSION_ID"

# ── Trend analysis ───────────────────────────────────────────────
TREND_STABLE_THRESHOLD_PCT = 5.0
TREND_HOURLY_FALLBACK_DAYS = 7
TREND_MIN_POINTS = 2
GROWTH_FROM_ZERO_PCT = 100.0

# ── Query bounds ─────────────────────────────────────────────────
HISTORY_MIN_DAYS = 1
HISTORY_MAX_DAYS = 365
TRENDS_MIN_DAYS = 7
TRENDS_MAX_DAYS = 365
DEFAULT_HISTORY_DAYS = 30

# ── Scheduler ────────────────────────────────────────────────────
DEFAULT_SWEEP_INTERVAL_MINUTES = 60
DEFAULT_MAX_CONCURRENT_FETCHES = 5
DEFAULT_FETCH_TIMEOUT_SECONDS = 30.0
SYNC_ERROR_MAX_CHARS = 500

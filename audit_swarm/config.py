from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache

class Settings(BaseSettings):
    GROQ_API_KEY: str = ""
    OPENROUTER_API_KEY: str = ""
    DATABASE_URL: str = "sqlite+aiosqlite:///./local_dev.db"

    DEFAULT_MODEL_GROQ: str = "llama-3.3-70b-versatile"
    DEFAULT_MODEL_OPENROUTER: str = "google/gemini-2.5-flash"

    LOG_LEVEL: str = "INFO"

    # ─── Repository origin ──────────────────────────────
    GITHUB_API_URL: str = "https://api.github.com"
    GITHUB_TIMEOUT_SECONDS: float = 20.0
    # Fernet key for tokens stored in credential_accounts
    CREDENTIAL_ENCRYPTION_KEY: str = ""

    # ─── Cost-Aware Routing Policy ──────────────────────
    # Daily cost limit per provider (USD). Exceeded → deprioritize.
    DAILY_COST_LIMIT_GROQ: float = 5.0
    DAILY_COST_LIMIT_OPENROUTER: float = 10.0

    # Latency spike threshold (ms). Above → deprioritize.
    LATENCY_SPIKE_MS: float = 30000.0

    # Scoring weights (lower score = preferred provider)
    WEIGHT_LATENCY: float = 0.3
    WEIGHT_FALLBACK: float = 0.3
    WEIGHT_COST: float = 0.4

    # Cost per 1K tokens (USD), estimates for scoring
    COST_PER_1K_GROQ: float = 0.0003
    COST_PER_1K_OPENROUTER: float = 0.002

    REASONING_TIMEOUT_SECONDS: float = 120.0

    # ─── Resilience ─────────────────────────────────────
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_INITIAL_DELAY: float = 1.0
    RETRY_MAX_DELAY: float = 30.0
    BREAKER_FAILURE_THRESHOLD: int = 5
    BREAKER_RESET_SECONDS: float = 60.0
    EXTRACTION_MAX_SCAN_CHARS: int = 200_000

    # ─── Snapshot / cache ───────────────────────────────
    SNAPSHOT_TTL_HOURS: int = 24
    FILE_CACHE_TTL_HOURS: int = 24
    FILE_CACHE_MAX_BYTES: int = 1_000_000
    FINGERPRINT_SAMPLE_FILES: int = 20

    # ─── Planner / workers ──────────────────────────────
    PLANNER_STRATEGY: str = "swarm"  # swarm | folders
    PLANNER_MIN_TASKS: int = 3
    PLANNER_MAX_TASKS: int = 5
    WORKER_CONCURRENCY: int = 5
    WORKER_MAX_PROMPT_CHARS: int = 400_000
    WORKER_PARSE_ATTEMPTS: int = 2
    CHUNK_MAX_TOKENS: int = 500_000
    CHUNK_MERGE_BELOW_TOKENS: int = 50_000

    # ─── Scoring ────────────────────────────────────────
    NEUTRAL_HEALTH_SCORE: int = 50
    PRODUCTION_READY_THRESHOLD: int = 80
    CROSS_FILE_PENALTY: int = 2
    CROSS_FILE_PENALTY_CAP: int = 10

    # ─── Job queue ──────────────────────────────────────
    JOB_LEASE_SECONDS: int = 600
    JOB_STALE_MINUTES: int = 15
    JOB_MAX_ATTEMPTS: int = 3
    JOB_RETRY_BACKOFF_SECONDS: float = 60.0
    SWEEP_INTERVAL_SECONDS: float = 60.0
    SWEEP_BATCH_SIZE: int = 5
    SWEEP_ENABLED: bool = True

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

@lru_cache
def get_settings():
    return Settings()

import logging
from pathlib import Path
from typing import Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

# Get the directory where this config file is located.
_BACKEND_DIR = Path(__file__).parent.resolve()


def _detect_project_root(backend_dir: Path) -> Path:
    """Resolve project root from the backend directory in the repo layout."""
    return backend_dir.parent.resolve()


_PROJECT_ROOT = _detect_project_root(_BACKEND_DIR)
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "roster.db").resolve()
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"
_SQLITE_SYNC_PREFIX = "sqlite:///"
_LOGGER = logging.getLogger(__name__)

AGGRESSIVENESS_CHOICES = ("stable", "balanced", "discovery")


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = f"{_SQLITE_ASYNC_PREFIX}{_DEFAULT_DB_PATH}"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    LOG_FILE: Optional[str] = None

    # External analytics feed (wallet + market metrics)
    METRICS_FEED_URL: str = "http://localhost:8100"
    METRICS_FEED_TIMEOUT_SECONDS: float = 10.0
    METRICS_FEED_MAX_ATTEMPTS: int = 4
    METRICS_STALE_HOURS: float = 24.0

    # Roster limits
    ROSTER_MAX_ACTIVE: int = 5
    ROSTER_MAX_PINNED: int = 3

    # Allocation band (percent of workspace capital per active wallet)
    ALLOCATION_MIN_PCT: float = 5.0
    ALLOCATION_MAX_PCT: float = 60.0
    ALLOCATION_MAX_PASSES: int = 5
    ALLOCATION_VOLATILITY_SCALE: float = 1.0
    DEFAULT_MAX_POSITION_SIZE: float = 100.0

    # Probation
    PROBATION_DAYS: int = 7
    PROBATION_ALLOCATION_PCT: float = 50.0

    # Grace period / demotion triggers
    GRACE_PERIOD_HOURS: int = 48
    GRACE_ALLOCATION_PCT: float = 50.0
    GRACE_MIN_ROI_30D: float = -0.05
    GRACE_MIN_SHARPE: float = 0.3
    DEMOTION_MAX_CONSECUTIVE_LOSSES: int = 5
    EMERGENCY_CONSECUTIVE_LOSSES: int = 8
    DEMOTION_MAX_DRAWDOWN: float = 0.40

    # Rotation optimizer
    OPTIMIZER_INTERVAL_HOURS: int = 12
    OPTIMIZER_PASS_TIMEOUT_SECONDS: float = 60.0
    OPTIMIZER_LOCK_WAIT_SECONDS: float = 120.0
    REPLACEMENT_SCORE_MARGIN: float = 0.10
    MIN_SAMPLE_TRADES: int = 20
    UNDO_WINDOW_MINUTES: int = 60
    CANDIDATE_FETCH_LIMIT: int = 200
    THRESHOLD_RELAXATION_ENABLED: bool = False

    # Default promotion criteria
    DEFAULT_MIN_ROI_30D: float = 0.05
    DEFAULT_MIN_SHARPE: float = 1.0
    DEFAULT_MIN_WIN_RATE: float = 0.50
    DEFAULT_MIN_TRADES_30D: int = 10
    DEFAULT_MAX_DRAWDOWN: float = 0.20

    # Opportunity scanner
    SCANNER_INTERVAL_SECONDS: int = 900
    SCANNER_MAX_MARKETS_CAP: int = 300
    SCANNER_AGGRESSIVENESS: str = "balanced"
    SCANNER_MARKET_FETCH_LIMIT: int = 1000

    # Worker cadence
    WORKER_POLL_SECONDS: float = 15.0

    # Cross-process lease on a (workspace, loop); expires if a holder dies mid-pass
    WORKSPACE_LEASE_TTL_SECONDS: float = 180.0
    WORKSPACE_LEASE_POLL_SECONDS: float = 0.25

    @field_validator("METRICS_FEED_URL", mode="before")
    @classmethod
    def _normalize_url_field(cls, value: object) -> object:
        """Trim accidental quotes/whitespace from URL env vars."""
        if value is None:
            return value
        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text
        return text.rstrip("/")

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        """Normalize DB URL so worker cwd changes never split databases."""
        if value is None:
            return value

        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text

        # Convert relative SQLite paths to absolute project-root paths.
        for prefix in (_SQLITE_ASYNC_PREFIX, _SQLITE_SYNC_PREFIX):
            if not text.startswith(prefix):
                continue
            path_part = text[len(prefix) :]
            if not path_part:
                return text
            if path_part in {":memory:", "/:memory:"}:
                return f"{prefix}:memory:"
            absolute = Path(path_part).resolve() if path_part.startswith("/") else (_PROJECT_ROOT / path_part).resolve()
            absolute.parent.mkdir(parents=True, exist_ok=True)
            return f"{prefix}{absolute}"

        return text

    @field_validator("SCANNER_AGGRESSIVENESS", mode="before")
    @classmethod
    def _normalize_aggressiveness(cls, value: object) -> object:
        text = str(value or "").strip().lower()
        if text not in AGGRESSIVENESS_CHOICES:
            _LOGGER.warning("Unknown SCANNER_AGGRESSIVENESS %r, using balanced", value)
            return "balanced"
        return text

    @field_validator("ROSTER_MAX_ACTIVE")
    @classmethod
    def _cap_active(cls, value: int) -> int:
        return max(1, min(5, int(value)))

    @field_validator("ROSTER_MAX_PINNED")
    @classmethod
    def _cap_pinned(cls, value: int) -> int:
        return max(0, min(3, int(value)))

    @model_validator(mode="after")
    def _check_allocation_band(self) -> "Settings":
        # A full roster must be able to sum to 100 inside the band.
        floor_for_full_roster = 100.0 / max(1, self.ROSTER_MAX_ACTIVE)
        if self.ALLOCATION_MAX_PCT < floor_for_full_roster:
            self.ALLOCATION_MAX_PCT = floor_for_full_roster
        if self.ALLOCATION_MIN_PCT >= self.ALLOCATION_MAX_PCT:
            self.ALLOCATION_MIN_PCT = max(0.0, self.ALLOCATION_MAX_PCT / 2.0)
        self.ALLOCATION_MAX_PASSES = max(1, self.ALLOCATION_MAX_PASSES)
        return self

    class Config:
        # Load project-root .env first (common workflow), then backend/.env
        # as an override if present.
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"


settings = Settings()

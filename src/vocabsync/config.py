"""Configuration settings for the learning engine."""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Define base directory
BASE_DIR = Path(__file__).parent.parent.parent

# Load environment variables from .env file
env_file = ".env.test" if os.getenv("ENV") == "test" else ".env"
load_dotenv(env_file)


# Define data directories from environment variables
DATA_DIR = Path(os.getenv("DATA_DIR", "./data"))
BACKUP_FILE_NAME = "vocabsync-backup.json"

# Local store collections
STORE_WORD_HISTORY = "wordHistory"
STORE_FLASHCARD_PROGRESS = "flashcardProgress"
STORE_FLASHCARD_SESSION = "flashcardSession"
STORE_REVIEW_PENDING = "reviewPending"
STORE_REVIEW_PROGRESS = "reviewProgress"
STORE_REVIEW_MASTERED = "reviewMastered"
STORE_SESSION_META = "sessionMeta"

STORE_COLLECTIONS = (
    STORE_WORD_HISTORY,
    STORE_FLASHCARD_PROGRESS,
    STORE_FLASHCARD_SESSION,
    STORE_REVIEW_PENDING,
    STORE_REVIEW_PROGRESS,
    STORE_REVIEW_MASTERED,
    STORE_SESSION_META,
)

# Sync collections (one checkpoint each)
SYNC_WORDS = "words"
SYNC_FLASHCARD = "flashcard"
SYNC_REVIEW = "review"
SYNC_COLLECTIONS = (SYNC_WORDS, SYNC_FLASHCARD, SYNC_REVIEW)

# Learning settings
FLASHCARD_INTERVALS = [0, 1, 3, 7, 14, 30]  # days, indexed by mastery level
FLASHCARD_FALLBACK_INTERVAL = 30
EBBINGHAUS_INTERVALS = [1, 2, 4, 7, 15, 30]  # days, indexed by review stage
MIN_EASINESS_FACTOR = 1.3
MAX_EASINESS_FACTOR = 2.5
MAX_MASTERY_LEVEL = 5


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def ensure_directories() -> None:
    """Ensure all required directories exist."""
    directories = [
        get_path_settings().data_dir,
    ]

    for directory in directories:
        directory.mkdir(parents=True, exist_ok=True)


@dataclass
class PathSettings:
    """Path configuration settings."""
    base_dir: Path = BASE_DIR
    data_dir: Path = field(default_factory=lambda: Path(os.getenv("DATA_DIR", str(DATA_DIR))))
    backup_file_name: str = BACKUP_FILE_NAME

    @property
    def backup_file(self) -> Path:
        return self.data_dir / self.backup_file_name


@dataclass
class DatabaseSettings:
    """Database configuration settings."""
    url: str = field(
        default_factory=lambda: os.getenv(
            "DATABASE_URL",
            f"sqlite:///{Path(os.getenv('DATA_DIR', str(DATA_DIR))) / 'vocabsync.db'}",
        )
    )
    echo: bool = field(default_factory=lambda: _env_bool("DATABASE_ECHO", "false"))


@dataclass
class LoggingSettings:
    """Logging configuration settings."""
    level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    dir: Optional[str] = field(default_factory=lambda: os.getenv("LOG_DIR", None))
    rotation: str = field(default_factory=lambda: os.getenv("LOG_ROTATION", "midnight"))
    interval: int = field(default_factory=lambda: int(os.getenv("LOG_INTERVAL", "1")))
    backup_count: int = field(default_factory=lambda: int(os.getenv("LOG_BACKUP_COUNT", "7")))


@dataclass
class CoalescerSettings:
    """Write coalescing windows (seconds)."""
    local_delay: float = field(default_factory=lambda: float(os.getenv("LOCAL_FLUSH_DELAY", "1.0")))
    cloud_delay: float = field(default_factory=lambda: float(os.getenv("CLOUD_FLUSH_DELAY", "2.0")))
    tick_interval: float = field(default_factory=lambda: float(os.getenv("COALESCER_TICK", "0.25")))


@dataclass
class LearningSettings:
    """Learning process settings."""
    deck_size: int = field(default_factory=lambda: int(os.getenv("FLASHCARD_DECK_SIZE", "20")))
    new_word_ratio: float = field(default_factory=lambda: float(os.getenv("FLASHCARD_NEW_WORD_RATIO", "0.6")))
    max_contexts: int = field(default_factory=lambda: int(os.getenv("WORD_HISTORY_MAX_CONTEXTS", "10")))
    max_context_length: int = field(
        default_factory=lambda: int(os.getenv("WORD_HISTORY_MAX_CONTEXT_LENGTH", "500"))
    )
    max_daily_review_words: int = field(default_factory=lambda: int(os.getenv("MAX_DAILY_REVIEW_WORDS", "20")))
    immersive_review: bool = field(default_factory=lambda: _env_bool("IMMERSIVE_REVIEW", "true"))
    flashcard_intervals: list[int] = field(default_factory=lambda: list(FLASHCARD_INTERVALS))
    review_intervals: list[int] = field(default_factory=lambda: list(EBBINGHAUS_INTERVALS))


@dataclass
class SyncSettings:
    """Cloud sync settings."""
    enabled: bool = field(default_factory=lambda: _env_bool("CLOUD_SYNC_ENABLED", "false"))
    supabase_url: str = field(default_factory=lambda: os.getenv("SUPABASE_URL", ""))
    supabase_key: str = field(default_factory=lambda: os.getenv("SUPABASE_KEY", ""))
    email: str = field(default_factory=lambda: os.getenv("SUPABASE_EMAIL", ""))
    password: str = field(default_factory=lambda: os.getenv("SUPABASE_PASSWORD", ""))
    batch_size: int = field(default_factory=lambda: int(os.getenv("SYNC_BATCH_SIZE", "100")))
    page_size: int = field(default_factory=lambda: int(os.getenv("SYNC_PAGE_SIZE", "1000")))
    timeout: float = field(default_factory=lambda: float(os.getenv("SYNC_TIMEOUT", "10.0")))


@dataclass
class MonitoringSettings:
    """Prometheus exporter settings."""
    enabled: bool = field(default_factory=lambda: _env_bool("METRICS_ENABLED", "false"))
    port: int = field(default_factory=lambda: int(os.getenv("METRICS_PORT", "9090")))


def get_path_settings() -> PathSettings:
    """Get path settings."""
    return PathSettings()


def get_database_settings() -> DatabaseSettings:
    """Get database settings."""
    return DatabaseSettings()


def get_logging_settings() -> LoggingSettings:
    """Get logging settings."""
    return LoggingSettings()


def get_coalescer_settings() -> CoalescerSettings:
    """Get write coalescer settings."""
    return CoalescerSettings()


def get_learning_settings() -> LearningSettings:
    """Get learning settings."""
    return LearningSettings()


def get_sync_settings() -> SyncSettings:
    """Get cloud sync settings."""
    return SyncSettings()


def get_monitoring_settings() -> MonitoringSettings:
    """Get monitoring settings."""
    return MonitoringSettings()


@dataclass
class Settings:
    """Main settings class that combines all configuration settings."""
    paths: PathSettings = field(default_factory=get_path_settings)
    database: DatabaseSettings = field(default_factory=get_database_settings)
    logging: LoggingSettings = field(default_factory=get_logging_settings)
    coalescer: CoalescerSettings = field(default_factory=get_coalescer_settings)
    learning: LearningSettings = field(default_factory=get_learning_settings)
    sync: SyncSettings = field(default_factory=get_sync_settings)
    monitoring: MonitoringSettings = field(default_factory=get_monitoring_settings)

    def validate(self) -> None:
        """Validate settings and raise ValueError if invalid."""
        if self.learning.new_word_ratio < 0 or self.learning.new_word_ratio > 1:
            raise ValueError("FLASHCARD_NEW_WORD_RATIO must be between 0 and 1")

        if self.learning.deck_size < 1:
            raise ValueError("FLASHCARD_DECK_SIZE must be positive")

        if self.learning.max_contexts < 1:
            raise ValueError("WORD_HISTORY_MAX_CONTEXTS must be positive")

        if self.coalescer.local_delay <= 0 or self.coalescer.tick_interval <= 0:
            raise ValueError("LOCAL_FLUSH_DELAY and COALESCER_TICK must be positive")

        if self.coalescer.cloud_delay < self.coalescer.local_delay:
            raise ValueError("CLOUD_FLUSH_DELAY cannot be shorter than LOCAL_FLUSH_DELAY")

        if self.sync.batch_size < 1 or self.sync.page_size < 1:
            raise ValueError("SYNC_BATCH_SIZE and SYNC_PAGE_SIZE must be positive")

        if self.sync.enabled and not (self.sync.supabase_url and self.sync.supabase_key):
            raise ValueError("SUPABASE_URL and SUPABASE_KEY are required when CLOUD_SYNC_ENABLED is true")


# Create global settings instance
settings = Settings()
settings.validate()

"""Configuration module for the NotePad store."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from notepad_store import __version__
from notepad_store.models.schema import TagColor

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config lives alongside the default database
_USER_ENV = Path.home() / ".notepad" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class NotePadConfig(BaseModel):
    """Configuration for the NotePad store."""

    # Base directory for relative paths
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTEPAD_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTEPAD_DATABASE_PATH", "data/db/notepad.db")
        )
    )
    # Seconds SQLite waits on a locked database before failing a write
    busy_timeout: float = Field(
        default_factory=lambda: float(os.getenv("NOTEPAD_BUSY_TIMEOUT", "30"))
    )
    # Bulk import configuration
    import_batch_size: int = Field(
        default_factory=lambda: int(os.getenv("NOTEPAD_IMPORT_BATCH_SIZE", "10"))
    )
    import_window_days: int = Field(
        default_factory=lambda: int(os.getenv("NOTEPAD_IMPORT_WINDOW_DAYS", "30"))
    )
    fallback_tag_name: str = Field(
        default=os.getenv("NOTEPAD_FALLBACK_TAG_NAME", "Sample")
    )
    fallback_tag_color: TagColor = Field(
        default=os.getenv("NOTEPAD_FALLBACK_TAG_COLOR", "blue"), validate_default=True
    )
    # Colour used by the tag editor when the caller does not choose one
    editor_tag_color: TagColor = Field(
        default=os.getenv("NOTEPAD_EDITOR_TAG_COLOR", "blue"), validate_default=True
    )
    # Background worker pool size
    max_workers: int = Field(
        default_factory=lambda: int(os.getenv("NOTEPAD_MAX_WORKERS", "4"))
    )
    # Logging configuration
    log_level: str = Field(default=os.getenv("NOTEPAD_LOG_LEVEL", "INFO"))
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("NOTEPAD_LOG_DIR"))
            if os.getenv("NOTEPAD_LOG_DIR")
            else None
        )
    )
    file_logging: bool = Field(
        default_factory=lambda: _env_flag("NOTEPAD_FILE_LOGGING", "false")
    )
    app_version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate_settings(self) -> "NotePadConfig":
        """Reject values the coordinator cannot work with."""
        if self.import_batch_size < 1:
            raise ValueError("import_batch_size must be >= 1")
        if self.import_window_days < 0:
            raise ValueError("import_window_days must be >= 0")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self, database_path: Optional[Path] = None) -> str:
        """Get the database URL for SQLite."""
        db_path = self.get_absolute_path(database_path or self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"


# Create a global config instance
config = NotePadConfig()

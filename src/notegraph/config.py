"""Configuration module for the notegraph index."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config, lives alongside the default index location
_USER_ENV = Path.home() / ".notegraph" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _optional_path(env_name: str) -> Optional[Path]:
    value = os.getenv(env_name)
    return Path(value) if value else None


class NotegraphConfig(BaseModel):
    """Configuration for the notegraph index."""

    # Base directory that relative paths are resolved against
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTEGRAPH_BASE_DIR", "."))
    )
    # Root of the markdown note tree (<notes_dir>/<type>/<name>.md)
    notes_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTEGRAPH_NOTES_DIR", "notes"))
    )
    # SQLite database holding notes, metadata, FTS mirror and link tables
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTEGRAPH_DATABASE_PATH", ".notegraph/search.db")
        )
    )
    # Notes per transaction during batch link extraction
    link_batch_size: int = Field(
        default_factory=lambda: int(os.getenv("NOTEGRAPH_LINK_BATCH_SIZE", "50"))
    )
    # Notes per transaction when repopulating the index from a note source
    reindex_batch_size: int = Field(
        default_factory=lambda: int(os.getenv("NOTEGRAPH_REINDEX_BATCH_SIZE", "100"))
    )
    # Candidates fetched when suggesting replacements for a broken link
    suggestion_limit: int = Field(
        default_factory=lambda: int(os.getenv("NOTEGRAPH_SUGGESTION_LIMIT", "5"))
    )
    # Candidate notes scanned for whole-document auto-linking
    auto_link_candidate_limit: int = Field(
        default_factory=lambda: int(
            os.getenv("NOTEGRAPH_AUTO_LINK_CANDIDATES", "200")
        )
    )
    # Logging configuration
    log_level: str = Field(
        default_factory=lambda: os.getenv("NOTEGRAPH_LOG_LEVEL", "INFO").upper()
    )
    log_dir: Optional[Path] = Field(
        default_factory=lambda: _optional_path("NOTEGRAPH_LOG_DIR")
    )
    # When set, operation metrics are persisted to this JSON file
    metrics_file: Optional[Path] = Field(
        default_factory=lambda: _optional_path("NOTEGRAPH_METRICS_FILE")
    )

    @model_validator(mode="after")
    def _validate_batch_sizes(self) -> "NotegraphConfig":
        """Reject batch and limit settings that would stall processing."""
        if self.link_batch_size < 1:
            raise ValueError("link_batch_size must be >= 1")
        if self.reindex_batch_size < 1:
            raise ValueError("reindex_batch_size must be >= 1")
        if self.suggestion_limit < 1:
            raise ValueError("suggestion_limit must be >= 1")
        if self.auto_link_candidate_limit < 1:
            raise ValueError("auto_link_candidate_limit must be >= 1")
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            logger.warning(
                "Unknown log level %r, falling back to INFO", self.log_level
            )
            self.log_level = "INFO"
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path


# Create a global config instance
config = NotegraphConfig()

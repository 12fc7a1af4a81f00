"""Configuration module for roam-index."""

import logging
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config, shared by every note directory on this machine
_USER_ENV = Path.home() / ".roam-index" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _env_list(name: str, default: str) -> List[str]:
    """Read a comma-separated environment variable as a list of strings."""
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class RoamConfig(BaseModel):
    """Configuration for a note index."""

    # Root of the note corpus
    directory: Path = Field(
        default_factory=lambda: Path(os.getenv("ROAM_DIRECTORY", "."))
    )
    # Database configuration (relative paths resolve against directory)
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("ROAM_DATABASE_PATH", "roam-index.db")
        )
    )
    # When True, uses an in-memory SQLite database that is rebuilt on startup
    in_memory_db: bool = Field(
        default_factory=lambda: _env_flag("ROAM_IN_MEMORY_DB", "false")
    )
    # Extensions (without the dot) that mark a file as a note
    file_extensions: List[str] = Field(
        default_factory=lambda: _env_list("ROAM_FILE_EXTENSIONS", "org,md")
    )
    # Suffix wrapping a note extension for encrypted notes (a.org.gpg)
    encrypted_extension: str = Field(
        default_factory=lambda: os.getenv("ROAM_ENCRYPTED_EXTENSION", "gpg")
    )
    # fnmatch patterns matched against directory names during discovery
    ignore_patterns: List[str] = Field(
        default_factory=lambda: _env_list("ROAM_IGNORE_PATTERNS", ".git,.*")
    )
    # Optional regexp matched against root-relative paths; matches are not notes
    file_exclude_regexp: Optional[str] = Field(
        default_factory=lambda: os.getenv("ROAM_FILE_EXCLUDE_REGEXP") or None
    )
    # Header properties read by the extractor (case-insensitive)
    title_property: str = Field(
        default_factory=lambda: os.getenv("ROAM_TITLE_PROPERTY", "title")
    )
    alias_property: str = Field(
        default_factory=lambda: os.getenv("ROAM_ALIAS_PROPERTY", "roam_alias")
    )
    key_property: str = Field(
        default_factory=lambda: os.getenv("ROAM_KEY_PROPERTY", "roam_key")
    )
    # Worker threads used for background builds
    background_workers: int = Field(
        default_factory=lambda: int(os.getenv("ROAM_BACKGROUND_WORKERS", "1"))
    )

    @model_validator(mode="after")
    def _validate_note_config(self) -> "RoamConfig":
        """Validate extension and property settings."""
        if not self.file_extensions:
            raise ValueError("file_extensions must name at least one extension")
        for ext in self.file_extensions + [self.encrypted_extension]:
            if not ext or ext.startswith("."):
                raise ValueError(
                    f"Extensions are given without a leading dot, got '{ext}'"
                )
        for prop in (self.title_property, self.alias_property, self.key_property):
            if not prop.strip():
                raise ValueError("Header property names cannot be empty")
        if self.background_workers < 1:
            raise ValueError("background_workers must be >= 1")
        if self.encrypted_extension in self.file_extensions:
            logger.warning(
                "Encrypted extension '%s' is also listed as a note extension",
                self.encrypted_extension,
            )
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on directory."""
        path = path.expanduser()
        if path.is_absolute():
            return path
        return self.directory.expanduser().resolve() / path

    def get_root(self) -> Path:
        """Get the resolved note root directory."""
        return self.directory.expanduser().resolve()

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        if self.in_memory_db:
            return "sqlite://"
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"


# Global config instance used by the command line entry point
config = RoamConfig()

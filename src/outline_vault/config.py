"""Configuration constants for outline-vault."""

import os
from pathlib import Path

# Directory with data. First directory which is found is used.
DATA_DIRECTORIES: list[Path] = [
    Path("~/.local/share/outline-vault").expanduser(),
    Path("~/.outline-vault").expanduser(),
    Path("~/.config/outline-vault").expanduser(),
]

# Environment overrides.
DATA_DIR_ENV = "OUTLINE_VAULT_DATA_DIR"
PROJECT_ENV = "OUTLINE_VAULT_PROJECT"

DB_FILENAME = "outline.db"
UPLOADS_DIRNAME = "uploads"

DEFAULT_PROJECT_NAME = "Workspace"

# Title stored for nodes submitted without one.
DEFAULT_TITLE = "Untitled"

# Node status values. Anything else is stored as the empty status.
STATUSES: tuple[str, ...] = ("", "todo", "in-progress", "done")

# Version causes.
CAUSE_AUTOSAVE = "autosave"
CAUSE_MANUAL = "manual"
CAUSE_RESTORE = "restore"
VERSION_CAUSES: tuple[str, ...] = (CAUSE_AUTOSAVE, CAUSE_MANUAL, CAUSE_RESTORE)

# Reminder status values. Dismissal is tracked separately as a timestamp.
REMINDER_INCOMPLETE = "incomplete"
REMINDER_COMPLETED = "completed"
REMINDER_STATUSES: tuple[str, ...] = (REMINDER_INCOMPLETE, REMINDER_COMPLETED)

HISTORY_DEFAULT_LIMIT = 50
HISTORY_MAX_LIMIT = 200

# Portable manifest.
ASSET_SCHEME = "asset://"
MANIFEST_FORMAT = "outline-vault-manifest"
MANIFEST_VERSION = "1.0"

# Prefix of client-side placeholder ids in submitted outlines.
PLACEHOLDER_PREFIX = "new-"


def resolve_data_directory() -> Path:
    """Return the data directory: env override, else first existing candidate.

    Falls back to the first candidate when none exists yet, so that
    ``init`` has somewhere to create the database.
    """
    env = os.environ.get(DATA_DIR_ENV)
    if env:
        return Path(env).expanduser()
    for candidate in DATA_DIRECTORIES:
        if candidate.is_dir():
            return candidate
    return DATA_DIRECTORIES[0]


def resolve_project_name(name: str | None = None) -> str:
    """Return the explicit project name, the env override, or the default."""
    return name or os.environ.get(PROJECT_ENV) or DEFAULT_PROJECT_NAME

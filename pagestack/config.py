"""Centralised configuration for the pagestack engine."""

from __future__ import annotations

import os
from pathlib import Path

# -- Storage --
STORAGE_DIR = Path(os.environ.get("PAGESTACK_STORAGE_DIR", "storage"))

# -- Upload limits --
MAX_UPLOAD_SIZE = 50 * 1024 * 1024  # 50 MB

# -- History --
MAX_HISTORY_ENTRIES = 50  # oldest entries are dropped past this
POINTER_START = -1  # "nothing applied"
ROOT_ENTRY_LABEL = "Session Start"

# -- Serialization --
COMMAND_SCHEMA_VERSION = 1
LEGACY_COMMAND_VERSION = 1  # assigned to records written without a version

# -- Autosave / GC --
SESSION_SAVE_DEBOUNCE_S = 1.0

# -- Pages --
ROTATION_STEP = 90
VALID_ROTATIONS = (0, 90, 180, 270)
DEFAULT_REDACTION_COLOR = "#000000"

# -- Rendering --
DEFAULT_RENDER_SCALE = 2.0  # PNG render resolution multiplier

# -- Projects --
DEFAULT_PROJECT_TITLE = "Untitled project"

# -- Source colors (cycled per imported file) --
SOURCE_COLORS: tuple[str, ...] = (
    "blue",
    "emerald",
    "amber",
    "rose",
    "violet",
    "cyan",
    "lime",
    "orange",
)

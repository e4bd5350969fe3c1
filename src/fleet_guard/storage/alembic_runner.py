"""Programmatic Alembic entry points for the fleet registry schema."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def _registry_config(db_path: Path) -> Config:
    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def head_revision(db_path: Path) -> str | None:
    """Return the newest migration revision known to this package."""

    return ScriptDirectory.from_config(_registry_config(db_path)).get_current_head()


def upgrade_head(db_path: Path) -> None:
    """Bring the registry database at ``db_path`` up to the newest revision."""

    logger.debug("Upgrading fleet registry schema at %s", db_path)
    command.upgrade(_registry_config(db_path), "head")

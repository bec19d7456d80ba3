"""Utilities to run Alembic migrations programmatically."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)


def build_alembic_config(db_path: Path) -> Config:
    """Alembic config pointing at the repository migrations and the given SQLite file."""

    root_dir = Path(__file__).resolve().parents[3]
    alembic_ini = root_dir / "alembic.ini"
    alembic_dir = root_dir / "alembic"

    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(alembic_dir))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    # Keep the host application's logging configuration intact.
    config.attributes["configure_logger"] = False
    return config


def upgrade_head(db_path: Path) -> None:
    """Apply Alembic migrations up to head for the given SQLite database."""

    logger.debug("Upgrading schema at %s to head", db_path)
    command.upgrade(build_alembic_config(db_path), "head")

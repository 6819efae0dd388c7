"""Utilities to run Alembic migrations programmatically."""

from __future__ import annotations

from importlib.resources import files
from pathlib import Path

from alembic import command
from alembic.config import Config


def schema_location() -> Path:
    """Directory holding the Alembic environment shipped with the package."""

    return Path(str(files("sequencer.storage").joinpath("schema")))


def upgrade_head(db_path: Path) -> None:
    """Apply Alembic migrations up to head for the given SQLite database."""

    config = Config()
    config.set_main_option("script_location", str(schema_location()))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    command.upgrade(config, "head")

"""Database bootstrap and Alembic-driven schema upgrades."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect

from .config import settings
from .database import engine

logger = logging.getLogger("uvicorn.error")

ALEMBIC_DIR = Path(__file__).resolve().parent / "alembic"
INITIAL_REVISION = "0001_initial"
# Columns added after the first release; their absence marks a legacy file.
BLOB_COLUMNS = {"file_data", "content_type", "file_size"}


def init_db() -> None:
    """Bring the configured database to the latest schema without a backup."""
    upgrade_database(make_backup=False)


def _alembic_config() -> Config:
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR).replace("%", "%%"))
    # Alembic options go through configparser interpolation, so "%" is doubled.
    url = engine.url.render_as_string(hide_password=False)
    config.set_main_option("sqlalchemy.url", url.replace("%", "%%"))
    return config


def _backup(db_path: Path) -> Path | None:
    if not db_path.exists():
        return None
    target = db_path.with_suffix(db_path.suffix + ".bak")
    shutil.copy(db_path, target)
    return target


def _unmanaged_revision(table_names: set[str]) -> str:
    """Pick the revision an untracked database already matches."""
    inspector = inspect(engine)
    if "recipes" not in table_names:
        return INITIAL_REVISION
    columns = {column["name"] for column in inspector.get_columns("recipes")}
    return "head" if BLOB_COLUMNS <= columns else INITIAL_REVISION


def upgrade_database(*, make_backup: bool = True) -> list[str]:
    """Upgrade the schema in place and return a description of each step.

    Fresh files are built from the migrations. Files created before Alembic
    tracking are stamped at the revision they match and then upgraded, which
    also rewrites legacy ``unsure`` RSVPs to ``maybe``.
    """
    actions: list[str] = []
    if make_backup:
        backup_path = _backup(Path(settings.database_path))
        if backup_path is not None:
            actions.append(f"Backup created at {backup_path}")

    table_names = set(inspect(engine).get_table_names())
    config = _alembic_config()

    if "alembic_version" in table_names:
        command.upgrade(config, "head")
        actions.append("Applied Alembic migrations to head")
    elif "events" not in table_names:
        command.upgrade(config, "head")
        actions.append("Ran Alembic upgrade to head (fresh database)")
    elif _unmanaged_revision(table_names) == "head":
        command.stamp(config, "head")
        actions.append("Stamped existing database to Alembic head")
    else:
        command.stamp(config, INITIAL_REVISION)
        command.upgrade(config, "head")
        actions.append(f"Stamped legacy database at {INITIAL_REVISION}")
        actions.append("Applied Alembic migrations to head")

    for action in actions:
        logger.info("Database: %s", action)
    return actions

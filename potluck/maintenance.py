"""Housekeeping jobs: SQLite vacuum and orphaned upload cleanup."""

from __future__ import annotations

import logging
import time
from datetime import timedelta

from sqlalchemy import select

from . import database
from .config import settings
from .models import Recipe, SharedContent
from .uploads import URL_PREFIX

# Use uvicorn's error logger so maintenance messages show up with level prefixes.
logger = logging.getLogger("uvicorn.error")

# Files newer than this may belong to an upload whose row is not committed yet.
ORPHAN_GRACE = timedelta(hours=1)


def _referenced_upload_names() -> set[str]:
    names: set[str] = set()
    with database.get_session() as session:
        for model in (Recipe, SharedContent):
            stmt = select(model.file_url).where(model.file_url.is_not(None))
            for file_url in session.scalars(stmt):
                if file_url.startswith(URL_PREFIX):
                    names.add(file_url[len(URL_PREFIX) :])
    return names


def purge_orphaned_uploads(*, min_age: timedelta = ORPHAN_GRACE) -> int:
    """Delete files in the upload directory that no record points at.

    Files modified within ``min_age`` are left alone.
    """
    upload_dir = settings.upload_dir
    if not upload_dir.is_dir():
        return 0

    referenced = _referenced_upload_names()
    cutoff = time.time() - min_age.total_seconds()
    removed = 0
    for path in upload_dir.iterdir():
        if not path.is_file() or path.name in referenced:
            continue
        if path.stat().st_mtime > cutoff:
            continue
        logger.debug("Removing orphaned upload %s", path.name)
        path.unlink()
        removed += 1

    logger.info(
        "Upload sweep finished: removed=%d, referenced=%d", removed, len(referenced)
    )
    return removed


def vacuum_database() -> None:
    with database.engine.connect() as connection:
        connection.execution_options(isolation_level="AUTOCOMMIT").exec_driver_sql(
            "VACUUM"
        )
    logger.info("SQLite VACUUM complete")

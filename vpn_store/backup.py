"""Database backups as plain file copies."""
from __future__ import annotations

import logging
import shutil
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .database import Database
from .security import secure_filename

LOGGER = logging.getLogger(__name__)

BACKUP_SUFFIX = ".db"
SQLITE_HEADER = b"SQLite format 3\x00"


class BackupError(RuntimeError):
    """Raised when a backup file is missing, unsafe or unreadable."""


def backup_name(now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.utcnow()).isoformat()
    return "backup_" + stamp.replace(":", "-").replace(".", "-") + BACKUP_SUFFIX


def create_backup(db: Database, backup_dir: str, now: Optional[datetime] = None) -> Path:
    """Copy the live database file into ``backup_dir`` and return the copy's path."""

    source = Path(db.path)
    if not source.exists():
        raise BackupError(f"database file {source} does not exist")
    target_dir = Path(backup_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / backup_name(now)
    with db.lock:
        if db.conn is not None:
            db.conn.commit()
        shutil.copyfile(source, target)
    LOGGER.info("database backed up to %s", target)
    return target


def list_backups(backup_dir: str) -> List[str]:
    """Backup file names, newest first."""

    directory = Path(backup_dir)
    if not directory.is_dir():
        return []
    names = [p.name for p in directory.iterdir() if p.is_file() and p.suffix == BACKUP_SUFFIX]
    return sorted(names, reverse=True)


def resolve_backup(backup_dir: str, name: str) -> Path:
    """Map a user supplied name to a file inside ``backup_dir``."""

    safe = secure_filename(name)
    if safe != name or not safe.endswith(BACKUP_SUFFIX):
        raise BackupError(f"invalid backup name {name!r}")
    path = Path(backup_dir) / safe
    if not path.is_file():
        raise BackupError(f"backup {safe} not found")
    return path


def is_sqlite_file(path: Path) -> bool:
    try:
        with open(path, "rb") as handle:
            return handle.read(len(SQLITE_HEADER)) == SQLITE_HEADER
    except OSError:
        return False


def restore_backup(db: Database, source: Path) -> None:
    """Replace the live database with ``source``.

    The connection is closed before the copy and reopened afterwards, even
    when the copy fails, so the bot always keeps a usable connection.
    """
    source = Path(source)
    if not source.is_file():
        raise BackupError(f"backup {source} not found")
    if not is_sqlite_file(source):
        raise BackupError(f"{source.name} is not a SQLite database")

    with db.lock:
        db.close()
        try:
            shutil.copyfile(source, db.path)
            LOGGER.info("database restored from %s", source)
        finally:
            try:
                db.open()
            except sqlite3.Error:
                LOGGER.exception("could not reopen database after restore")
                raise


def delete_backup(backup_dir: str, name: str) -> None:
    path = resolve_backup(backup_dir, name)
    path.unlink()
    LOGGER.info("backup %s deleted", path.name)

"""
SQLite snapshot backups using the sqlite3 online backup API.

Backups live in BACKUP_DIR as logdeck-backup-YYYYmmdd-HHMMSS.db. Only
file-based SQLite databases can be backed up or restored.
"""

import os
import re
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Union

from loguru import logger

from auth.auth_manager import auth_manager
from store.database import DatabaseManager
from store.models import utc_now

BACKUP_PREFIX = "logdeck-backup-"
BACKUP_PATTERN = re.compile(r"^logdeck-backup-\d{8}-\d{6}(-\d+)?\.db$")


def is_backup_name(filename: str) -> bool:
    return bool(BACKUP_PATTERN.match(filename or ""))


def _copy_database(source: str, target: str):
    src = sqlite3.connect(source)
    dst = sqlite3.connect(target)
    try:
        src.backup(dst)
    finally:
        dst.close()
        src.close()


class BackupManager:
    """Create, list, restore and delete database snapshots"""

    def __init__(self, backup_dir: Optional[str] = None):
        self._backup_dir = backup_dir

    @property
    def backup_dir(self) -> Path:
        path = Path(self._backup_dir or os.getenv("BACKUP_DIR", "./backups")).expanduser().resolve()
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _database_path(self) -> Union[str, dict]:
        path = DatabaseManager.get_database_path()
        if not DatabaseManager.is_using_sqlite() or not path:
            return {"error": "Backups require a file-based SQLite database", "status": 400}
        return path

    def resolve(self, filename: str) -> Union[Path, dict]:
        """Validated path of an existing backup, or an error result"""
        if not is_backup_name(filename):
            return {"error": "Invalid backup filename", "status": 400}
        path = self.backup_dir / filename
        if not path.is_file():
            return {"error": "Backup not found", "status": 404}
        return path

    def _audit(self, action: str, filename: str, user: dict, ip_address: str, status: str = "success"):
        auth_manager.log_activity(
            (user or {}).get("userId"), action,
            resource_type="backup", resource_id=filename,
            ip_address=ip_address, username=(user or {}).get("username"), status=status,
        )

    # ==================== OPERATIONS ====================

    def list_backups(self) -> List[dict]:
        backups = []
        for path in self.backup_dir.iterdir():
            if not path.is_file() or not is_backup_name(path.name):
                continue
            stat = path.stat()
            backups.append({
                "name": path.name,
                "size": stat.st_size,
                "created": datetime.fromtimestamp(stat.st_mtime, timezone.utc).isoformat().replace("+00:00", "Z"),
            })
        return sorted(backups, key=lambda b: b["name"], reverse=True)

    def create_backup(self, user: dict = None, ip_address: str = None) -> dict:
        database = self._database_path()
        if isinstance(database, dict):
            return database

        stamp = utc_now().strftime("%Y%m%d-%H%M%S")
        target = self.backup_dir / f"{BACKUP_PREFIX}{stamp}.db"
        suffix = 1
        while target.exists():
            target = self.backup_dir / f"{BACKUP_PREFIX}{stamp}-{suffix}.db"
            suffix += 1

        try:
            _copy_database(database, str(target))
        except sqlite3.Error as e:
            logger.error(f"[BACKUP] Create failed: {e}")
            if target.exists():
                target.unlink()
            return {"error": f"Backup failed: {e}", "status": 500}

        size = target.stat().st_size
        self._audit("backup_created", target.name, user, ip_address)
        logger.info(f"[BACKUP] Created {target.name} ({size} bytes)")
        return {"success": True, "backup": {"name": target.name, "size": size}}

    def restore_backup(self, filename: str, user: dict = None, ip_address: str = None) -> dict:
        database = self._database_path()
        if isinstance(database, dict):
            return database
        path = self.resolve(filename)
        if isinstance(path, dict):
            return path

        DatabaseManager.dispose()
        try:
            _copy_database(str(path), database)
        except sqlite3.Error as e:
            logger.error(f"[BACKUP] Restore of {filename} failed: {e}")
            return {"error": f"Restore failed: {e}", "status": 500}
        finally:
            DatabaseManager.dispose()

        self._audit("backup_restored", filename, user, ip_address)
        logger.warning(f"[BACKUP] Restored database from {filename}")
        return {"success": True, "message": f"Database restored from {filename}"}

    def delete_backup(self, filename: str, user: dict = None, ip_address: str = None) -> dict:
        path = self.resolve(filename)
        if isinstance(path, dict):
            return path

        path.unlink()
        self._audit("backup_deleted", filename, user, ip_address)
        logger.info(f"[BACKUP] Deleted {filename}")
        return {"success": True, "message": f"Backup {filename} deleted"}


# Global instance
backup_manager = BackupManager()

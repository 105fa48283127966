"""Folder registry: which remote folders are monitored, and under which category."""

from __future__ import annotations

import logging

from mail_monitor.models.state import FolderConfigRow
from mail_monitor.storage.state_db import StateDb

logger = logging.getLogger(__name__)


class FolderRegistry:
    """Active folder configurations, read through to the local store."""

    def __init__(self, *, db: StateDb) -> None:
        self._db = db

    def active(self) -> list[FolderConfigRow]:
        return self._db.list_folders(active_only=True)

    def all(self) -> list[FolderConfigRow]:
        return self._db.list_folders(active_only=False)

    def get(self, folder_path: str) -> FolderConfigRow | None:
        """Return the active config of a folder, or None if it is not monitored."""
        return self._db.get_folder(folder_path)

    def add(self, folder_path: str, category: str, *, display_name: str = "") -> FolderConfigRow:
        """Monitor a folder; re-adding a removed folder reactivates it."""
        previous = self._db.get_folder(folder_path, include_inactive=True)
        row = self._db.add_folder(folder_path=folder_path, category=category, display_name=display_name)
        logger.info(
            "Folder %s: %s -> %s",
            "reactivated" if previous is not None and not previous.is_active else "configured",
            row.folder_path,
            row.category,
            extra={"operation": "folders.add", "folder": row.folder_path},
        )
        return row

    def remove(self, folder_path: str) -> bool:
        """Stop monitoring a folder; its messages stay in the store."""
        removed = self._db.remove_folder(folder_path)
        if removed:
            logger.info("Folder removed", extra={"operation": "folders.remove", "folder": folder_path})
        return removed

    def set_category(self, folder_path: str, category: str) -> bool:
        return self._db.set_folder_category(folder_path, category)

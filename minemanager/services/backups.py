# minemanager/services/backups.py
"""
World backups per server.

A backup archives whichever of the known world directories exist under the
instance directory into a single zip or tar.gz file. History is kept newest
first and trimmed to the configured rotation count, deleting evicted files.
"""

import asyncio
import logging
import os
import re
import tarfile
import uuid
import zipfile
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from minemanager.services.errors import InvalidBackupConfig, NoWorldsToBackup, NotFound

logger = logging.getLogger(__name__)

WORLD_DIRS = ["world", "world_nether", "world_the_end"]
BACKUP_FORMATS = ("zip", "tar.gz")
SCHEDULES = ("hourly", "daily", "weekly")

_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")
_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class BackupConfig:
    """Per-server backup settings (persisted; replaced wholesale on set)"""
    enabled: bool = False
    format: str = "zip"
    destination: str = ""
    rotation: int = 5
    schedule: str = "daily"
    schedule_time: str = "03:00"
    schedule_day: int = 0  # 0 = Sunday, used only for weekly

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "BackupConfig":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    @property
    def hour(self) -> int:
        return int(self.schedule_time.split(":")[0])

    @property
    def minute(self) -> int:
        return int(self.schedule_time.split(":")[1])

    def validate(self) -> "BackupConfig":
        if not isinstance(self.enabled, bool):
            raise InvalidBackupConfig("enabled must be true or false")
        if self.format not in BACKUP_FORMATS:
            raise InvalidBackupConfig(f"format must be one of {', '.join(BACKUP_FORMATS)}")
        if self.schedule not in SCHEDULES:
            raise InvalidBackupConfig(f"schedule must be one of {', '.join(SCHEDULES)}")
        if not isinstance(self.schedule_time, str) or not _TIME_RE.match(self.schedule_time):
            raise InvalidBackupConfig("schedule_time must be HH:MM")
        try:
            self.rotation = int(self.rotation)
            self.schedule_day = int(self.schedule_day)
        except (TypeError, ValueError):
            raise InvalidBackupConfig("rotation and schedule_day must be integers")
        if self.rotation < 1:
            raise InvalidBackupConfig("rotation must be at least 1")
        if not 0 <= self.schedule_day <= 6:
            raise InvalidBackupConfig("schedule_day must be between 0 (Sunday) and 6")
        self.destination = str(self.destination or "")
        return self


@dataclass
class Backup:
    id: str
    date: str  # ISO-8601 UTC
    size: int
    path: str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Backup":
        return cls(
            id=str(data["id"]),
            date=str(data["date"]),
            size=int(data["size"]),
            path=str(data["path"]),
        )


def _archive_worlds(source_dir: Path, worlds: List[str], archive_path: Path, fmt: str):
    """Write the world directories into archive_path (blocking)"""
    if fmt == "zip":
        with zipfile.ZipFile(archive_path, "w", zipfile.ZIP_DEFLATED) as zf:
            for world in worlds:
                world_dir = source_dir / world
                for root, _dirs, files in os.walk(world_dir):
                    for file in files:
                        file_path = Path(root) / file
                        # session.lock stays out of archives
                        if file == "session.lock":
                            continue
                        zf.write(file_path, str(file_path.relative_to(source_dir)))
    else:
        with tarfile.open(archive_path, "w:gz") as tf:
            for world in worlds:
                tf.add(
                    source_dir / world,
                    arcname=world,
                    filter=lambda info: None if info.name.endswith("session.lock") else info,
                )


class BackupManager:
    """Backup configs, histories and the archive operation for every server."""

    def __init__(self, instances_dir: Path, backups_dir: Path):
        self.instances_dir = instances_dir
        self.backups_dir = backups_dir
        self.configs: Dict[str, BackupConfig] = {}
        self.histories: Dict[str, List[Backup]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # =========================================================================
    # Persistence
    # =========================================================================

    def load(self, configs: Dict[str, dict], histories: Dict[str, List[dict]]):
        for server_id, raw in configs.items():
            try:
                self.configs[server_id] = BackupConfig.from_dict(raw).validate()
            except (InvalidBackupConfig, TypeError) as e:
                logger.warning("[Backups] Ignoring invalid backup config for %s: %s", server_id, e)
        for server_id, entries in histories.items():
            history = []
            for raw in entries:
                try:
                    history.append(Backup.from_dict(raw))
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("[Backups] Skipping malformed backup record for %s: %s", server_id, e)
            self.histories[server_id] = history

    def configs_to_dict(self) -> Dict[str, dict]:
        return {server_id: config.to_dict() for server_id, config in self.configs.items()}

    def histories_to_dict(self) -> Dict[str, List[dict]]:
        return {server_id: [b.to_dict() for b in history] for server_id, history in self.histories.items()}

    # =========================================================================
    # Config / history
    # =========================================================================

    def get_config(self, server_id: str) -> BackupConfig:
        return self.configs.get(server_id) or BackupConfig()

    def set_config(self, server_id: str, data: dict) -> BackupConfig:
        if not isinstance(data, dict):
            raise InvalidBackupConfig("Backup config must be an object")
        try:
            config = BackupConfig.from_dict(data).validate()
        except TypeError as e:
            raise InvalidBackupConfig(str(e))
        self.configs[server_id] = config
        return config

    def get_history(self, server_id: str) -> List[Backup]:
        return list(self.histories.get(server_id, []))

    def enabled_configs(self) -> Dict[str, BackupConfig]:
        return {server_id: c for server_id, c in self.configs.items() if c.enabled}

    def purge(self, server_id: str):
        """Drop config and history of a deleted server (archives on disk are kept)."""
        self.configs.pop(server_id, None)
        self.histories.pop(server_id, None)
        self._locks.pop(server_id, None)

    # =========================================================================
    # Backup operation
    # =========================================================================

    def _destination(self, server_id: str, config: BackupConfig) -> Path:
        if config.destination:
            return Path(config.destination).expanduser()
        return self.backups_dir / server_id

    def _lock(self, server_id: str) -> asyncio.Lock:
        lock = self._locks.get(server_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[server_id] = lock
        return lock

    async def create_backup(self, server_id: str, server_name: str) -> Backup:
        async with self._lock(server_id):
            config = self.get_config(server_id)
            source_dir = self.instances_dir / server_id
            worlds = [w for w in WORLD_DIRS if (source_dir / w).is_dir()]
            if not worlds:
                raise NoWorldsToBackup("No world directories found to backup")

            dest_dir = self._destination(server_id, config)
            dest_dir.mkdir(parents=True, exist_ok=True)

            created = datetime.now(timezone.utc)
            safe_name = _UNSAFE_NAME_RE.sub("_", server_name).strip("_") or server_id
            file_name = f"{safe_name}-{created.strftime('%Y-%m-%dT%H-%M-%S-%f')}.{config.format}"
            archive_path = dest_dir / file_name
            partial_path = dest_dir / (file_name + ".partial")

            logger.info("[Backups] Archiving %s for %s", ", ".join(worlds), server_name)
            try:
                await asyncio.to_thread(_archive_worlds, source_dir, worlds, partial_path, config.format)
                os.replace(partial_path, archive_path)
            except BaseException:
                partial_path.unlink(missing_ok=True)
                raise

            backup = Backup(
                id=str(uuid.uuid4()),
                date=created.isoformat(),
                size=archive_path.stat().st_size,
                path=str(archive_path),
            )
            history = self.histories.setdefault(server_id, [])
            history.insert(0, backup)

            while len(history) > config.rotation:
                evicted = history.pop()
                self._remove_archive(evicted)
                logger.info("[Backups] Rotated out %s", evicted.path)

            size_mb = backup.size / (1024 * 1024)
            logger.info("[Backups] Backup complete for %s: %s (%.1f MB)", server_name, archive_path.name, size_mb)
            return backup

    @staticmethod
    def _remove_archive(backup: Backup):
        try:
            Path(backup.path).unlink(missing_ok=True)
        except OSError as e:
            logger.warning("[Backups] Failed to delete %s: %s", backup.path, e)

    async def delete_backup(self, server_id: str, backup_id: str):
        async with self._lock(server_id):
            history = self.histories.get(server_id, [])
            backup: Optional[Backup] = next((b for b in history if b.id == backup_id), None)
            if backup is None:
                raise NotFound(f"Backup {backup_id} not found")
            self._remove_archive(backup)
            self.histories[server_id] = [b for b in history if b.id != backup_id]

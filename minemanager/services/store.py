# minemanager/services/store.py
"""
Persistent Store

One JSON document holding everything that must survive a restart:
server configs (no runtime fields), backup configs and histories keyed by
server id, and the proxy listen port. The whole file is rewritten on every
save through a temp file + os.replace so readers never see a partial write.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

from minemanager.core.config import DEFAULT_PROXY_PORT
from minemanager.services.models import ServerConfig

logger = logging.getLogger(__name__)


@dataclass
class FleetSnapshot:
    servers: List[ServerConfig] = field(default_factory=list)
    backup_configs: Dict[str, dict] = field(default_factory=dict)
    backups: Dict[str, List[dict]] = field(default_factory=dict)
    bungeecord_port: int = DEFAULT_PROXY_PORT

    def to_dict(self) -> dict:
        return {
            "servers": [s.to_dict() for s in self.servers],
            "backup_configs": self.backup_configs,
            "backups": self.backups,
            "bungeecord_port": self.bungeecord_port,
        }


class FleetStore:
    """Loads and rewrites the fleet's data file."""

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> FleetSnapshot:
        if not self.path.exists():
            logger.info("No data file at %s, starting with an empty fleet", self.path)
            return FleetSnapshot()

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"Failed to load fleet data from {self.path}: {e}")
            return FleetSnapshot()

        snapshot = FleetSnapshot()
        for raw in data.get("servers") or []:
            try:
                snapshot.servers.append(ServerConfig.from_dict(raw))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning("Skipping malformed server record %r: %s", raw, e)

        snapshot.backup_configs = dict(data.get("backup_configs") or {})
        snapshot.backups = {k: list(v) for k, v in (data.get("backups") or {}).items()}
        snapshot.bungeecord_port = int(data.get("bungeecord_port") or DEFAULT_PROXY_PORT)
        return snapshot

    def save(self, snapshot: FleetSnapshot) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(snapshot.to_dict(), f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)

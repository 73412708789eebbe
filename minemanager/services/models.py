# minemanager/services/models.py
"""
Domain types shared by the supervisor, the store and the HTTP layer.

ServerConfig is the persisted part of an instance; ServerState adds the
runtime fields the supervisor derives from the live process.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import List, Optional


class ServerType(str, Enum):
    """Server software flavour"""
    PAPER = "paper"
    PURPUR = "purpur"
    PUFFERFISH = "pufferfish"
    MOHIST = "mohist"
    ARCLIGHT = "arclight"


class ServerStatus(str, Enum):
    """Lifecycle of one instance: stopped → starting → running → stopping → stopped"""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


MAX_TPS = 20.0
MIN_TPS = 1.0


def clamp_tps(value: float) -> float:
    return max(MIN_TPS, min(MAX_TPS, value))


@dataclass
class PlayerPosition:
    name: str
    x: float
    y: float
    z: float
    world: str

    @classmethod
    def from_dict(cls, data: dict) -> "PlayerPosition":
        return cls(
            name=str(data.get("name", "")),
            x=float(data.get("x", 0)),
            y=float(data.get("y", 0)),
            z=float(data.get("z", 0)),
            world=str(data.get("world", "world")),
        )


@dataclass
class ServerConfig:
    """Persisted instance configuration"""
    id: str
    name: str
    type: ServerType
    version: str
    port: int
    memory: int

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = self.type.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ServerConfig":
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            type=ServerType(data["type"]),
            version=str(data["version"]),
            port=int(data["port"]),
            memory=int(data["memory"]),
        )


@dataclass
class ServerState:
    """Runtime view of an instance (config fields + live metrics)"""
    id: str
    name: str
    type: ServerType
    version: str
    port: int
    memory: int
    status: ServerStatus = ServerStatus.STOPPED
    players: List[str] = field(default_factory=list)
    player_positions: Optional[List[PlayerPosition]] = None
    tps: float = MAX_TPS
    used_memory: int = 0

    @classmethod
    def from_config(cls, config: ServerConfig) -> "ServerState":
        return cls(
            id=config.id,
            name=config.name,
            type=config.type,
            version=config.version,
            port=config.port,
            memory=config.memory,
        )

    def to_config(self) -> ServerConfig:
        return ServerConfig(
            id=self.id,
            name=self.name,
            type=self.type,
            version=self.version,
            port=self.port,
            memory=self.memory,
        )

    def add_player(self, name: str) -> bool:
        if name in self.players:
            return False
        self.players.append(name)
        return True

    def remove_player(self, name: str) -> bool:
        if name not in self.players:
            return False
        self.players = [p for p in self.players if p != name]
        return True

    def reset_runtime(self):
        """Clear everything derived from a process run."""
        self.status = ServerStatus.STOPPED
        self.players = []
        self.player_positions = None
        self.tps = MAX_TPS
        self.used_memory = 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = self.type.value
        data["status"] = self.status.value
        data["tps"] = round(self.tps, 2)
        return data

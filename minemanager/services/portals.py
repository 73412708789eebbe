# minemanager/services/portals.py
"""
Portal Registry

In-memory portals that send players from one server to another. Portals are
not persisted. Listing enriches each portal with the target server's current
name, resolved at read time.
"""

import uuid
from dataclasses import dataclass, asdict
from typing import Callable, Dict, List, Optional

from minemanager.services.errors import InvalidPortal, NotFound

PORTAL_SHAPES = ("sphere", "flat", "rectangle")

# Fields a portal update may not touch
IMMUTABLE_FIELDS = ("id", "server_id", "name")


@dataclass
class Portal:
    id: str
    name: str
    server_id: str
    target_server_id: str
    x: float
    y: float
    z: float
    world: str = "world"
    shape: str = "flat"  # flat = 2D circle, sphere = 3D radius, rectangle = 2D box
    x2: Optional[float] = None
    z2: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)

    def validate(self) -> "Portal":
        if not self.name or not str(self.name).strip():
            raise InvalidPortal("Portal name is required")
        if not self.server_id or not self.target_server_id:
            raise InvalidPortal("server_id and target_server_id are required")
        if self.shape not in PORTAL_SHAPES:
            raise InvalidPortal(f"shape must be one of {', '.join(PORTAL_SHAPES)}")
        try:
            self.x, self.y, self.z = float(self.x), float(self.y), float(self.z)
            if self.x2 is not None:
                self.x2 = float(self.x2)
            if self.z2 is not None:
                self.z2 = float(self.z2)
        except (TypeError, ValueError):
            raise InvalidPortal("Portal coordinates must be numbers")
        if self.shape == "rectangle" and (self.x2 is None or self.z2 is None):
            raise InvalidPortal("rectangle portals need x2 and z2")
        return self


class PortalRegistry:
    def __init__(self, resolve_server_name: Callable[[str], Optional[str]]):
        self._resolve_server_name = resolve_server_name
        self._portals: Dict[str, Portal] = {}

    def _fields(self, data: dict) -> dict:
        return {k: v for k, v in data.items() if k in Portal.__dataclass_fields__}

    def create(self, data: dict) -> Portal:
        fields = self._fields(data)
        fields["id"] = str(uuid.uuid4())
        try:
            portal = Portal(**fields).validate()
        except TypeError as e:
            raise InvalidPortal(f"Invalid portal: {e}")
        self._portals[portal.id] = portal
        return portal

    def update(self, portal_id: str, updates: dict) -> Portal:
        portal = self._portals.get(portal_id)
        if portal is None:
            raise NotFound(f"Portal {portal_id} not found")
        merged = portal.to_dict()
        merged.update({k: v for k, v in self._fields(updates).items() if k not in IMMUTABLE_FIELDS})
        updated = Portal(**merged).validate()
        self._portals[portal_id] = updated
        return updated

    def delete(self, portal_id: str):
        self._portals.pop(portal_id, None)

    def list(self, server_id: Optional[str] = None) -> List[dict]:
        portals = [p for p in self._portals.values() if server_id is None or p.server_id == server_id]
        result = []
        for portal in portals:
            data = portal.to_dict()
            data["target_server_name"] = self._resolve_server_name(portal.target_server_id) or "Unknown"
            result.append(data)
        return result

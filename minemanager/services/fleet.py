# minemanager/services/fleet.py
"""
Fleet orchestrator

Single owner of everything the manager knows about: the supervisor and its
servers, backup configs and histories, portals, the proxy and the store.
Every mutation ends with a store rewrite and a "servers" push event; fleet
membership and port changes also reconcile the proxy.
"""

import asyncio
import logging
import socket
from pathlib import Path
from typing import Dict, List, Optional, Set

import psutil

from minemanager.core.config import (
    BACKUPS_DIR,
    BUNGEECORD_DIR,
    DATA_FILE,
    DEFAULT_PROXY_PORT,
    INSTANCES_DIR,
    JARS_DIR,
    SHARED_PLUGINS_DIR,
)
from minemanager.services.backup_scheduler import BackupScheduler
from minemanager.services.backups import BackupManager
from minemanager.services.binaries import VERSION_CATALOG, BinaryProvider
from minemanager.services.errors import InvalidRequest
from minemanager.services.events import EventHub, Subscriber
from minemanager.services.models import ServerType
from minemanager.services.portals import PortalRegistry
from minemanager.services.proxy import ProxyReconciler
from minemanager.services.store import FleetSnapshot, FleetStore
from minemanager.services.supervisor import InstanceSupervisor

logger = logging.getLogger(__name__)


def get_host_ip() -> str:
    """First non-loopback IPv4 address of this host"""
    for addresses in psutil.net_if_addrs().values():
        for address in addresses:
            if address.family == socket.AF_INET and not address.address.startswith("127."):
                return address.address
    return "127.0.0.1"


class FleetManager:
    def __init__(
        self,
        data_file: Path = DATA_FILE,
        instances_dir: Path = INSTANCES_DIR,
        backups_dir: Path = BACKUPS_DIR,
        jars_dir: Path = JARS_DIR,
        bungeecord_dir: Path = BUNGEECORD_DIR,
        shared_plugins_dir: Optional[Path] = SHARED_PLUGINS_DIR,
        **supervisor_options,
    ):
        self.store = FleetStore(data_file)
        self.events = EventHub()
        self.binaries = BinaryProvider(jars_dir)
        self.supervisor = InstanceSupervisor(
            instances_dir,
            self.binaries,
            self.events,
            notify=self._emit_update,
            persist=self.save,
            shared_plugins_dir=shared_plugins_dir,
            **supervisor_options,
        )
        self.backups = BackupManager(instances_dir, backups_dir)
        self.scheduler = BackupScheduler(self.backups, self.create_backup)
        self.proxy = ProxyReconciler(bungeecord_dir)
        self.portals = PortalRegistry(self._server_name)
        self.proxy_port = DEFAULT_PROXY_PORT

        self._tasks: Set[asyncio.Task] = set()
        self._loaded = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def load(self):
        snapshot = self.store.load()
        self.supervisor.load(snapshot.servers)
        self.backups.load(snapshot.backup_configs, snapshot.backups)
        self.proxy_port = snapshot.bungeecord_port
        self._loaded = True
        logger.info("Loaded %s server(s) from %s", len(snapshot.servers), self.store.path)

    async def start(self):
        """Startup: clear orphans, load the store, bring up the proxy and sweeps."""
        await asyncio.to_thread(self.supervisor.reconcile_orphans)
        if not self._loaded:
            self.load()
        await self.proxy.start(self._server_list(), self.proxy_port)
        await self.scheduler.start()

    async def stop(self):
        await self.scheduler.stop()
        await self.supervisor.shutdown()
        for task in list(self._tasks):
            task.cancel()
        await self.proxy.stop()

    def save(self):
        snapshot = FleetSnapshot(
            servers=self.supervisor.configs(),
            backup_configs=self.backups.configs_to_dict(),
            backups=self.backups.histories_to_dict(),
            bungeecord_port=self.proxy_port,
        )
        try:
            self.store.save(snapshot)
        except OSError as e:
            logger.error(f"Failed to save fleet data: {e}")

    # =========================================================================
    # Push updates / proxy
    # =========================================================================

    def subscribe(self, callback: Subscriber):
        self.events.subscribe(callback)

    def unsubscribe(self, callback: Subscriber):
        self.events.unsubscribe(callback)

    async def _emit_update(self):
        await self.events.publish({"type": "servers", "servers": self.list_servers()})

    def _server_list(self):
        return list(self.supervisor.servers.values())

    def _server_name(self, server_id: str) -> Optional[str]:
        state = self.supervisor.servers.get(server_id)
        return state.name if state else None

    def _reconcile_proxy(self):
        task = asyncio.create_task(self.proxy.reconcile(self._server_list(), self.proxy_port))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # =========================================================================
    # Queries
    # =========================================================================

    def list_servers(self) -> List[dict]:
        server_ip = get_host_ip()
        servers = []
        for state in self.supervisor.servers.values():
            data = state.to_dict()
            data["server_ip"] = server_ip
            data["proxy_port"] = self.proxy_port
            servers.append(data)
        return servers

    def get_server(self, server_id: str) -> dict:
        data = self.supervisor.get(server_id).to_dict()
        data["server_ip"] = get_host_ip()
        data["proxy_port"] = self.proxy_port
        return data

    def get_logs(self, server_id: str) -> List[str]:
        return self.supervisor.get_logs(server_id)

    # =========================================================================
    # Server lifecycle
    # =========================================================================

    async def create_server(
        self,
        name: str,
        server_type: str,
        version: str,
        port: int = DEFAULT_PROXY_PORT,
        memory: Optional[int] = None,
    ) -> dict:
        state = await self.supervisor.create(name, server_type, version, port, memory)
        self._reconcile_proxy()
        return state.to_dict()

    async def start_server(self, server_id: str) -> dict:
        return await self.supervisor.start(server_id)

    async def stop_server(self, server_id: str) -> dict:
        return await self.supervisor.stop(server_id)

    async def delete_server(self, server_id: str):
        await self.supervisor.delete(server_id)
        self.backups.purge(server_id)
        self.scheduler.forget(server_id)
        self.save()
        self._reconcile_proxy()

    async def send_command(self, server_id: str, command: str) -> bool:
        return await self.supervisor.send_command(server_id, command)

    def get_server_properties(self, server_id: str) -> Dict[str, str]:
        return self.supervisor.get_properties(server_id)

    async def set_server_properties(self, server_id: str, props: Dict[str, str]):
        if await self.supervisor.set_properties(server_id, props):
            self._reconcile_proxy()

    async def set_server_memory(self, server_id: str, memory: int):
        await self.supervisor.set_memory(server_id, memory)

    async def update_player_positions(self, server_id: str, positions: List[dict]):
        await self.supervisor.update_player_positions(server_id, positions)

    async def apply_metrics(self, server_id: str, metrics: dict):
        await self.supervisor.apply_metrics(server_id, metrics)

    # =========================================================================
    # Backups
    # =========================================================================

    def get_backup_config(self, server_id: str) -> dict:
        self.supervisor.get(server_id)
        return self.backups.get_config(server_id).to_dict()

    def set_backup_config(self, server_id: str, config: dict) -> dict:
        self.supervisor.get(server_id)
        result = self.backups.set_config(server_id, config)
        self.save()
        return result.to_dict()

    def get_backups(self, server_id: str) -> List[dict]:
        self.supervisor.get(server_id)
        return [b.to_dict() for b in self.backups.get_history(server_id)]

    async def create_backup(self, server_id: str) -> dict:
        state = self.supervisor.get(server_id)
        backup = await self.backups.create_backup(server_id, state.name)
        self.save()
        return backup.to_dict()

    async def delete_backup(self, server_id: str, backup_id: str):
        self.supervisor.get(server_id)
        await self.backups.delete_backup(server_id, backup_id)
        self.save()

    # =========================================================================
    # Portals
    # =========================================================================

    def create_portal(self, data: dict) -> dict:
        return self.portals.create(data).to_dict()

    def update_portal(self, portal_id: str, updates: dict) -> dict:
        return self.portals.update(portal_id, updates).to_dict()

    def delete_portal(self, portal_id: str):
        self.portals.delete(portal_id)

    def get_portals(self, server_id: Optional[str] = None) -> List[dict]:
        return self.portals.list(server_id)

    # =========================================================================
    # Proxy port / binaries
    # =========================================================================

    def get_proxy_port(self) -> int:
        return self.proxy_port

    def set_proxy_port(self, port: int):
        try:
            port = int(port)
        except (TypeError, ValueError):
            raise InvalidRequest(f"Invalid port: {port}")
        if not 1 <= port <= 65535:
            raise InvalidRequest("Port must be between 1 and 65535")
        self.proxy_port = port
        self.save()
        self._reconcile_proxy()

    def available_binaries(self) -> Dict[str, List[str]]:
        return self.binaries.available_binaries()

    def build_status(self, server_type: Optional[str] = None, version: Optional[str] = None):
        if server_type is None or version is None:
            return self.binaries.all_build_status()
        try:
            engine = ServerType(server_type)
        except ValueError:
            raise InvalidRequest(f"Unknown server type: {server_type}")
        return self.binaries.current_build_status(engine, version)

    @staticmethod
    def version_catalog() -> Dict[str, List[dict]]:
        return VERSION_CATALOG


# Global instance
_fleet: Optional[FleetManager] = None


def get_fleet() -> FleetManager:
    global _fleet
    if _fleet is None:
        _fleet = FleetManager()
    return _fleet


async def start_fleet():
    await get_fleet().start()


async def stop_fleet():
    await get_fleet().stop()

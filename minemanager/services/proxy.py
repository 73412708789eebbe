# minemanager/services/proxy.py
"""
Proxy Reconciler

Keeps the BungeeCord proxy in step with the fleet: rewrites config.yml so
every known server is routable by name, then restarts the proxy process.
A missing bungeecord directory or BungeeCord.jar turns the corresponding
step into a logged no-op.
"""

import asyncio
import logging
from pathlib import Path
from typing import Iterable, Optional

import yaml

from minemanager.core.config import JAVA_PATH, PROXY_MEMORY_MB, PROXY_RESTART_DELAY_SEC
from minemanager.services.models import ServerState

logger = logging.getLogger(__name__)

PROXY_JAR = "BungeeCord.jar"
TERMINATE_TIMEOUT_SEC = 10.0


def build_proxy_config(servers: Iterable[ServerState], port: int) -> dict:
    servers = list(servers)
    first_server = servers[0].name if servers else "lobby"
    return {
        "listeners": [{
            "query_port": 25577,
            "motd": "&6MineManager Network",
            "priorities": [first_server],
            "bind_local_address": True,
            "host": f"0.0.0.0:{port}",
            "max_players": 100,
            "tab_size": 60,
            "force_default_server": False,
            "forced_hosts": {},
        }],
        "remote_ping_cache": -1,
        "network_compression_threshold": 256,
        "permissions": {},
        "timeout": 30000,
        "log_pings": True,
        "player_limit": -1,
        "ip_forward": True,
        "online_mode": False,
        "remote_ping_timeout": 5000,
        "servers": {
            s.name: {
                "motd": s.name,
                "address": f"localhost:{s.port}",
                "restricted": False,
            }
            for s in servers
        },
    }


class ProxyReconciler:
    """Owns the proxy config file and the proxy process."""

    def __init__(
        self,
        bungeecord_dir: Path,
        java_path: str = JAVA_PATH,
        memory_mb: int = PROXY_MEMORY_MB,
        restart_delay: float = PROXY_RESTART_DELAY_SEC,
    ):
        self.bungeecord_dir = bungeecord_dir
        self.java_path = java_path
        self.memory_mb = memory_mb
        self.restart_delay = restart_delay

        self.process: Optional[asyncio.subprocess.Process] = None
        self._output_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def config_path(self) -> Path:
        return self.bungeecord_dir / "config.yml"

    @property
    def is_running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    def write_config(self, servers: Iterable[ServerState], port: int) -> bool:
        if not self.bungeecord_dir.exists():
            logger.debug("[Proxy] No bungeecord directory, skipping config write")
            return False
        with open(self.config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(build_proxy_config(servers, port), f, sort_keys=False)
        return True

    async def _spawn_process(self) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            self.java_path,
            f"-Xmx{self.memory_mb}M",
            "-jar",
            PROXY_JAR,
            cwd=str(self.bungeecord_dir),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )

    async def _pipe_output(self, process):
        try:
            while True:
                raw = await process.stdout.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line:
                    logger.info("[BungeeCord] %s", line)
        except Exception as e:
            logger.warning("[Proxy] Output reader failed: %s", e)
        code = await process.wait()
        logger.info("[Proxy] BungeeCord exited with code %s", code)
        if self.process is process:
            self.process = None

    async def _start(self):
        if not (self.bungeecord_dir / PROXY_JAR).exists():
            logger.info("[Proxy] BungeeCord not found, skipping proxy start")
            return
        logger.info("[Proxy] Starting BungeeCord proxy...")
        try:
            self.process = await self._spawn_process()
        except OSError as e:
            logger.error(f"[Proxy] Failed to start BungeeCord: {e}")
            self.process = None
            return
        self._output_task = asyncio.create_task(self._pipe_output(self.process))

    async def _stop(self) -> bool:
        process = self.process
        if process is None or process.returncode is not None:
            self.process = None
            return False
        try:
            process.terminate()
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=TERMINATE_TIMEOUT_SEC)
        except asyncio.TimeoutError:
            logger.warning("[Proxy] BungeeCord ignored terminate, killing it")
            process.kill()
            await process.wait()
        self.process = None
        return True

    async def start(self, servers: Iterable[ServerState], port: int):
        async with self._lock:
            self.write_config(servers, port)
            if not self.is_running:
                await self._start()

    async def reconcile(self, servers: Iterable[ServerState], port: int):
        """Rewrite config.yml and bounce the proxy so it picks it up."""
        async with self._lock:
            try:
                self.write_config(servers, port)
                if await self._stop():
                    await asyncio.sleep(self.restart_delay)
                await self._start()
            except Exception as e:
                logger.error(f"[Proxy] Reconcile failed: {e}")

    async def stop(self):
        async with self._lock:
            await self._stop()
        if self._output_task is not None:
            try:
                await self._output_task
            except asyncio.CancelledError:
                pass
            self._output_task = None

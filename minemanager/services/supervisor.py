# minemanager/services/supervisor.py
"""
Instance Supervisor

Owns every ServerState and the OS process behind it:
- Creating instances (port allocation, jar + directory scaffolding)
- Starting/stopping/deleting processes under the per-server state machine
- Turning console output into status transitions and live metrics
- Periodic telemetry (RSS memory, TPS recovery) while running
- Killing orphaned instances left over from a previous run

State machine:
STOPPED → STARTING → RUNNING → STOPPING → STOPPED
(process exit from any live state → STOPPED)
"""

import asyncio
import logging
import shutil
import socket
import time
import uuid
from collections import deque
from pathlib import Path
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set

import psutil
import yaml

from minemanager.core.config import (
    DEFAULT_MEMORY_MB,
    JAVA_PATH,
    LOCK_CLEANUP_DELAY_SEC,
    LOG_BUFFER_LINES,
    MANAGER_URL,
    TELEMETRY_INTERVAL_SEC,
)
from minemanager.services.binaries import BinaryProvider
from minemanager.services.console_parser import ConsoleEvent, EventKind, parse_console_line
from minemanager.services.errors import (
    InvalidRequest,
    InvalidState,
    NotFound,
    PortInUse,
    ProcessSpawnFailure,
)
from minemanager.services.events import EventHub
from minemanager.services.models import (
    MAX_TPS,
    PlayerPosition,
    ServerConfig,
    ServerState,
    ServerStatus,
    ServerType,
    clamp_tps,
)
from minemanager.services.server_properties import (
    initial_properties,
    load_server_properties,
    write_server_properties,
)

logger = logging.getLogger(__name__)

# Launch property identifying instance JVMs; the startup orphan scan matches on it
LAUNCH_SIGNATURE = "-Dminemanager.instance="

SERVER_JAR = "server.jar"
SESSION_LOCK = Path("world") / "session.lock"
PLUGIN_JAR = "MineManagerPlugin-1.0.0.jar"
MAX_PORT = 65535

TPS_RECOVERY_STEP = 0.5


class InstanceSupervisor:
    """Process lifecycle and live state for every managed server."""

    def __init__(
        self,
        instances_dir: Path,
        binaries: BinaryProvider,
        events: EventHub,
        notify: Callable[[], Awaitable[None]],
        persist: Callable[[], None],
        shared_plugins_dir: Optional[Path] = None,
        java_path: str = JAVA_PATH,
        manager_url: str = MANAGER_URL,
        lock_cleanup_delay: float = LOCK_CLEANUP_DELAY_SEC,
        telemetry_interval: float = TELEMETRY_INTERVAL_SEC,
        log_buffer_lines: int = LOG_BUFFER_LINES,
    ):
        self.instances_dir = instances_dir
        self.binaries = binaries
        self.events = events
        self.shared_plugins_dir = shared_plugins_dir
        self.java_path = java_path
        self.manager_url = manager_url
        self.lock_cleanup_delay = lock_cleanup_delay
        self.telemetry_interval = telemetry_interval
        self.log_buffer_lines = log_buffer_lines
        self._notify = notify
        self._persist = persist

        self.servers: Dict[str, ServerState] = {}
        self._processes: Dict[str, asyncio.subprocess.Process] = {}
        self._logs: Dict[str, Deque[str]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._exited: Dict[str, asyncio.Event] = {}
        self._reader_tasks: Dict[str, List[asyncio.Task]] = {}
        self._telemetry_tasks: Dict[str, asyncio.Task] = {}
        self._last_lag_at: Dict[str, float] = {}
        self._reserved_ports: Set[int] = set()
        self._deleting: Set[str] = set()
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def load(self, configs: List[ServerConfig]):
        """Register persisted instances; all of them start out stopped."""
        for config in configs:
            self.servers[config.id] = ServerState.from_config(config)
            self._logs[config.id] = deque(maxlen=self.log_buffer_lines)

    def configs(self) -> List[ServerConfig]:
        return [state.to_config() for state in self.servers.values()]

    def get(self, server_id: str) -> ServerState:
        state = self.servers.get(server_id)
        if state is None:
            raise NotFound(f"Server {server_id} not found")
        return state

    def server_dir(self, server_id: str) -> Path:
        return self.instances_dir / server_id

    def has_process(self, server_id: str) -> bool:
        return server_id in self._processes

    def _lock(self, server_id: str) -> asyncio.Lock:
        lock = self._locks.get(server_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[server_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    def get_logs(self, server_id: str) -> List[str]:
        self.get(server_id)
        return list(self._logs.get(server_id, ()))

    async def _log(self, server_id: str, line: str):
        buffer = self._logs.get(server_id)
        if buffer is None:
            return
        buffer.append(line)
        await self.events.publish({"type": "log", "server_id": server_id, "line": line})

    # ------------------------------------------------------------------
    # Port allocation
    # ------------------------------------------------------------------

    @staticmethod
    def _is_port_bound(port: int) -> bool:
        """Whether something on this host already holds the TCP port."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind(("0.0.0.0", port))
            except OSError:
                return True
        return False

    def is_port_taken(self, port: int, exclude_id: Optional[str] = None) -> bool:
        for state in self.servers.values():
            if state.port == port and state.id != exclude_id:
                return True
        if port in self._reserved_ports:
            return True
        return self._is_port_bound(port)

    def allocate_port(self, requested: int) -> int:
        port = requested
        while self.is_port_taken(port):
            port += 1
            if port > MAX_PORT:
                raise PortInUse(f"No free port at or above {requested}")
        return port

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        name: str,
        server_type: str,
        version: str,
        port: int,
        memory: Optional[int] = None,
    ) -> ServerState:
        try:
            engine = ServerType(server_type)
        except ValueError:
            raise InvalidRequest(f"Unknown server type: {server_type}")
        if not name or not str(name).strip():
            raise InvalidRequest("Server name is required")
        try:
            memory = int(memory or DEFAULT_MEMORY_MB)
            port = int(port)
        except (TypeError, ValueError):
            raise InvalidRequest("Port and memory must be integers")
        if memory <= 0:
            raise InvalidRequest("Memory must be a positive number of MB")
        if not 1 <= port <= MAX_PORT:
            raise InvalidRequest(f"Invalid port: {port}")

        assigned_port = self.allocate_port(port)
        if assigned_port != port:
            logger.info("[Supervisor] Port %s is taken, using %s for %s", port, assigned_port, name)
        self._reserved_ports.add(assigned_port)

        try:
            async def on_progress(progress: int, message: str):
                await self.events.publish({
                    "type": "build_progress",
                    "server_type": engine.value,
                    "version": version,
                    "progress": progress,
                    "message": message,
                })

            jar_path = await self.binaries.ensure_binary(engine, version, on_progress)

            server_id = str(uuid.uuid4())
            server_dir = self.server_dir(server_id)
            await asyncio.to_thread(self._scaffold_instance, server_id, server_dir, jar_path, assigned_port)

            state = ServerState(
                id=server_id,
                name=str(name).strip(),
                type=engine,
                version=version,
                port=assigned_port,
                memory=memory,
            )
            self.servers[server_id] = state
            self._logs[server_id] = deque(maxlen=self.log_buffer_lines)
        finally:
            self._reserved_ports.discard(assigned_port)

        logger.info("[Supervisor] Created %s (%s %s) on port %s", state.name, engine.value, version, assigned_port)
        self._persist()
        await self._notify()
        return state

    def _scaffold_instance(self, server_id: str, server_dir: Path, jar_path: Path, port: int):
        server_dir.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(jar_path, server_dir / SERVER_JAR)
        (server_dir / "eula.txt").write_text("eula=true\n", encoding="utf-8")
        write_server_properties(server_dir / "server.properties", initial_properties(port))
        self._setup_shared_plugins(server_id, server_dir)

    def _setup_shared_plugins(self, server_id: str, server_dir: Path):
        plugins_dir = server_dir / "plugins"
        plugins_dir.mkdir(parents=True, exist_ok=True)

        if self.shared_plugins_dir is not None:
            self.shared_plugins_dir.mkdir(parents=True, exist_ok=True)
            plugin_jar = self.shared_plugins_dir / PLUGIN_JAR
            plugin_link = plugins_dir / PLUGIN_JAR
            if plugin_jar.exists() and not plugin_link.exists():
                try:
                    plugin_link.symlink_to(plugin_jar)
                except OSError:
                    shutil.copyfile(plugin_jar, plugin_link)

        config_dir = plugins_dir / "MineManagerPlugin"
        config_dir.mkdir(parents=True, exist_ok=True)
        with open(config_dir / "config.yml", "w", encoding="utf-8") as f:
            yaml.safe_dump({"server-id": server_id, "manager-url": self.manager_url}, f, sort_keys=False)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def _build_command(self, state: ServerState) -> List[str]:
        return [
            self.java_path,
            f"-Xmx{state.memory}M",
            f"-Xms{state.memory}M",
            f"{LAUNCH_SIGNATURE}{state.id}",
            "-jar",
            SERVER_JAR,
            "nogui",
        ]

    async def _spawn_process(self, state: ServerState, server_dir: Path) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *self._build_command(state),
                cwd=str(server_dir),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            raise ProcessSpawnFailure(str(e)) from e

    def _remove_session_lock(self, server_id: str):
        lock_file = self.server_dir(server_id) / SESSION_LOCK
        if lock_file.exists():
            try:
                lock_file.unlink()
            except OSError as e:
                logger.error(f"Failed to remove lock for {server_id}: {e}")

    async def start(self, server_id: str) -> dict:
        async with self._lock(server_id):
            state = self.get(server_id)
            if (
                state.status != ServerStatus.STOPPED
                or server_id in self._processes
                or server_id in self._deleting
            ):
                logger.info("[Supervisor] Start ignored for %s (status=%s)", state.name, state.status.value)
                return {"success": True, "status": state.status.value, "message": "Server is not stopped"}

            state.status = ServerStatus.STARTING
            await self._notify()

            server_dir = self.server_dir(server_id)
            self._remove_session_lock(server_id)
            await self._log(server_id, "[MineManager] Starting server...")

            try:
                process = await self._spawn_process(state, server_dir)
            except ProcessSpawnFailure as e:
                logger.error(f"[Supervisor] Failed to spawn {state.name}: {e}")
                state.reset_runtime()
                await self._log(server_id, f"Process error: {e}")
                await self._notify()
                return {"success": True, "status": state.status.value, "message": "Server failed to start"}

            self._processes[server_id] = process
            self._exited[server_id] = asyncio.Event()
            self._reader_tasks[server_id] = [
                asyncio.create_task(self._watch_stdout(server_id, process)),
                asyncio.create_task(self._watch_stderr(server_id, process)),
            ]
            logger.info("[Supervisor] Spawned %s (pid %s)", state.name, process.pid)
            return {"success": True, "status": state.status.value, "message": "Server starting"}

    # ------------------------------------------------------------------
    # Process output
    # ------------------------------------------------------------------

    @staticmethod
    def _decode(raw: bytes) -> str:
        return raw.decode("utf-8", errors="replace").rstrip("\r\n")

    async def _watch_stdout(self, server_id: str, process):
        try:
            while True:
                raw = await process.stdout.readline()
                if not raw:
                    break
                line = self._decode(raw)
                if not line.strip():
                    continue
                await self.handle_console_line(server_id, line)
        except Exception as e:
            logger.error(f"[Supervisor] stdout reader for {server_id} failed: {e}")

        returncode = await process.wait()
        await self._handle_exit(server_id, process, returncode)

    async def _watch_stderr(self, server_id: str, process):
        try:
            while True:
                raw = await process.stderr.readline()
                if not raw:
                    break
                line = self._decode(raw)
                if line.strip():
                    await self._log(server_id, line)
        except Exception as e:
            logger.warning("[Supervisor] stderr reader for %s failed: %s", server_id, e)

    async def handle_console_line(self, server_id: str, line: str):
        """Store one stdout line and apply whatever the matchers extract from it."""
        if server_id not in self.servers:
            return
        await self._log(server_id, line)
        for event in parse_console_line(line):
            state = self.servers.get(server_id)
            if state is None:
                return
            if self._apply_event(state, event):
                await self._notify()

    def _apply_event(self, state: ServerState, event: ConsoleEvent) -> bool:
        if event.kind == EventKind.READY:
            if state.status != ServerStatus.STARTING or state.id not in self._processes:
                return False
            state.status = ServerStatus.RUNNING
            logger.info("[Supervisor] %s is running", state.name)
            self._start_telemetry(state.id)
            return True

        if event.kind == EventKind.PLAYER_JOIN:
            return state.add_player(event.player)

        if event.kind == EventKind.PLAYER_LEAVE:
            return state.remove_player(event.player)

        if event.kind == EventKind.LAG:
            state.tps = event.value
            self._last_lag_at[state.id] = time.monotonic()
            return True

        if event.kind == EventKind.TPS_REPORT:
            state.tps = event.value
            return True

        if event.kind == EventKind.MEMORY:
            state.used_memory = int(event.value)
            return True

        return False

    async def _handle_exit(self, server_id: str, process, returncode: Optional[int]):
        if self._processes.get(server_id) is not process:
            return

        self._processes.pop(server_id, None)
        self._reader_tasks.pop(server_id, None)
        self._stop_telemetry(server_id)
        self._last_lag_at.pop(server_id, None)
        exited = self._exited.pop(server_id, None)

        state = self.servers.get(server_id)
        if state is not None:
            failed_start = state.status == ServerStatus.STARTING
            state.reset_runtime()
            if failed_start:
                logger.warning("[Supervisor] %s exited during startup (code %s)", state.name, returncode)
                await self._log(server_id, f"Server failed to start (exit code: {returncode})")
            else:
                logger.info("[Supervisor] %s exited (code %s)", state.name, returncode)
            await self._notify()

        if exited is not None:
            exited.set()

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    def _start_telemetry(self, server_id: str):
        self._stop_telemetry(server_id)
        state = self.servers.get(server_id)
        if state is None or server_id not in self._processes:
            return
        state.tps = MAX_TPS
        self._telemetry_tasks[server_id] = asyncio.create_task(self._telemetry_loop(server_id))

    def _stop_telemetry(self, server_id: str):
        task = self._telemetry_tasks.pop(server_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _telemetry_loop(self, server_id: str):
        while True:
            await asyncio.sleep(self.telemetry_interval)
            state = self.servers.get(server_id)
            if state is None or state.status != ServerStatus.RUNNING or server_id not in self._processes:
                return
            try:
                await self.sample_telemetry(server_id)
            except Exception as e:
                logger.warning("[Supervisor] Telemetry sample for %s failed: %s", server_id, e)

    @staticmethod
    def _read_rss_mb(pid: int) -> Optional[int]:
        try:
            return round(psutil.Process(pid).memory_info().rss / (1024 * 1024))
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None

    async def sample_telemetry(self, server_id: str):
        """One telemetry tick: OS memory sample plus gradual TPS recovery."""
        state = self.servers.get(server_id)
        process = self._processes.get(server_id)
        if state is None or process is None:
            return

        changed = False
        rss_mb = await asyncio.to_thread(self._read_rss_mb, process.pid)
        if rss_mb is not None:
            state.used_memory = rss_mb
            changed = True

        last_lag = self._last_lag_at.get(server_id)
        lag_is_recent = last_lag is not None and time.monotonic() - last_lag < self.telemetry_interval
        if state.tps < MAX_TPS and not lag_is_recent:
            state.tps = min(MAX_TPS, state.tps + TPS_RECOVERY_STEP)
            changed = True

        if changed:
            await self._notify()

    # ------------------------------------------------------------------
    # Stop / delete
    # ------------------------------------------------------------------

    async def _write_stdin(self, server_id: str, process, text: str) -> bool:
        if process.stdin is None:
            return False
        try:
            process.stdin.write((text + "\n").encode("utf-8"))
            await process.stdin.drain()
            return True
        except (BrokenPipeError, ConnectionResetError, OSError) as e:
            logger.warning("[Supervisor] Could not write to %s: %s", server_id, e)
            return False

    def _schedule_lock_cleanup(self, server_id: str):
        task = asyncio.create_task(self._cleanup_lock_later(server_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _cleanup_lock_later(self, server_id: str):
        await asyncio.sleep(self.lock_cleanup_delay)
        self._remove_session_lock(server_id)

    async def stop(self, server_id: str) -> dict:
        async with self._lock(server_id):
            state = self.get(server_id)
            process = self._processes.get(server_id)
            if state.status != ServerStatus.RUNNING or process is None:
                return {"success": True, "status": state.status.value, "message": "Server is not running"}

            state.status = ServerStatus.STOPPING
            self._stop_telemetry(server_id)
            await self._notify()
            await self._log(server_id, "[MineManager] Stopping server...")
            await self._write_stdin(server_id, process, "stop")
            self._schedule_lock_cleanup(server_id)
            return {"success": True, "status": state.status.value, "message": "Server stopping"}

    async def delete(self, server_id: str):
        state = self.get(server_id)
        self._deleting.add(server_id)
        try:
            await self.stop(server_id)

            async with self._lock(server_id):
                process = self._processes.get(server_id)
                exited = self._exited.get(server_id)
                if process is not None and state.status == ServerStatus.STARTING:
                    state.status = ServerStatus.STOPPING
                    await self._write_stdin(server_id, process, "stop")

            if process is not None and exited is not None:
                logger.info("[Supervisor] Waiting for %s to exit before deleting", state.name)
                await exited.wait()

            async with self._lock(server_id):
                self.servers.pop(server_id, None)
                self._logs.pop(server_id, None)
                self._last_lag_at.pop(server_id, None)
                await asyncio.to_thread(shutil.rmtree, self.server_dir(server_id), True)
        finally:
            self._deleting.discard(server_id)
            self._locks.pop(server_id, None)

        logger.info("[Supervisor] Deleted %s (%s)", state.name, server_id)
        self._persist()
        await self._notify()

    # ------------------------------------------------------------------
    # Console commands, properties, memory
    # ------------------------------------------------------------------

    async def send_command(self, server_id: str, command: str) -> bool:
        self.get(server_id)
        process = self._processes.get(server_id)
        if process is None:
            return False
        return await self._write_stdin(server_id, process, command)

    def get_properties(self, server_id: str) -> Dict[str, str]:
        self.get(server_id)
        path = self.server_dir(server_id) / "server.properties"
        if not path.exists():
            raise NotFound(f"server.properties not found for {server_id}")
        return load_server_properties(path)

    async def set_properties(self, server_id: str, props: Dict[str, str]) -> bool:
        """Replace server.properties. Returns True when the server port changed."""
        async with self._lock(server_id):
            state = self.get(server_id)
            if state.status != ServerStatus.STOPPED:
                raise InvalidState("Stop server before editing properties")

            props = {str(k): "" if v is None else str(v) for k, v in props.items()}
            new_port = state.port
            if "server-port" in props:
                try:
                    new_port = int(props["server-port"])
                except ValueError:
                    raise InvalidRequest(f"Invalid server-port: {props['server-port']}")
                if new_port != state.port and self.is_port_taken(new_port, exclude_id=server_id):
                    raise PortInUse(f"Port {new_port} is already in use")

            server_dir = self.server_dir(server_id)
            server_dir.mkdir(parents=True, exist_ok=True)
            write_server_properties(server_dir / "server.properties", props)

            port_changed = new_port != state.port
            state.port = new_port

        if port_changed:
            self._persist()
            await self._notify()
        return port_changed

    async def set_memory(self, server_id: str, memory: int):
        async with self._lock(server_id):
            state = self.get(server_id)
            if state.status != ServerStatus.STOPPED:
                raise InvalidState("Stop server before editing memory")
            try:
                memory = int(memory)
            except (TypeError, ValueError):
                raise InvalidRequest(f"Invalid memory value: {memory}")
            if memory <= 0:
                raise InvalidRequest("Memory must be a positive number of MB")
            state.memory = memory

        self._persist()
        await self._notify()

    # ------------------------------------------------------------------
    # Plugin-reported data
    # ------------------------------------------------------------------

    async def update_player_positions(self, server_id: str, positions: List[dict]):
        state = self.get(server_id)
        if not isinstance(positions or [], list):
            raise InvalidRequest("players must be a list")
        try:
            parsed = [PlayerPosition.from_dict(p) for p in positions or []]
        except (AttributeError, TypeError, ValueError) as e:
            raise InvalidRequest(f"Invalid player position: {e}")
        state.player_positions = parsed
        await self._notify()

    async def apply_metrics(self, server_id: str, metrics: dict):
        """Apply a plugin metrics report; nothing changes unless every field is valid."""
        state = self.get(server_id)
        if not isinstance(metrics, dict):
            raise InvalidRequest("Metrics must be an object")
        tps = metrics.get("tps")
        players = metrics.get("players")
        # The plugin reports camelCase keys
        used_memory = metrics.get("used_memory", metrics.get("usedMemory"))

        if players is not None and not isinstance(players, list):
            raise InvalidRequest("players must be a list")
        try:
            if tps is not None:
                tps = clamp_tps(float(tps))
            if used_memory is not None:
                used_memory = int(used_memory)
        except (TypeError, ValueError) as e:
            raise InvalidRequest(f"Invalid metrics: {e}")

        if tps is not None:
            state.tps = tps
        if players is not None:
            state.players = list(dict.fromkeys(str(p) for p in players))
        if used_memory is not None:
            state.used_memory = used_memory
        await self._notify()

    # ------------------------------------------------------------------
    # Startup / shutdown
    # ------------------------------------------------------------------

    def reconcile_orphans(self) -> int:
        """Kill instance JVMs left behind by a previous run of the manager."""
        killed = 0
        own_pids = {p.pid for p in self._processes.values()}
        for proc in psutil.process_iter(["pid", "cmdline"]):
            cmdline = proc.info.get("cmdline") or []
            if proc.info.get("pid") in own_pids:
                continue
            if not any(str(arg).startswith(LAUNCH_SIGNATURE) for arg in cmdline):
                continue
            try:
                proc.kill()
                killed += 1
                logger.warning("[Supervisor] Killed orphaned server process %s", proc.info.get("pid"))
            except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
                logger.warning("[Supervisor] Could not kill orphan %s: %s", proc.info.get("pid"), e)
        if killed:
            logger.info("Cleaned up %s orphaned server process(es)", killed)
        return killed

    async def shutdown(self):
        """Ask every live server to stop and drop background tasks."""
        for server_id in list(self._processes):
            try:
                await self.stop(server_id)
            except Exception as e:
                logger.warning("[Supervisor] Stop during shutdown failed for %s: %s", server_id, e)
        for server_id in list(self._telemetry_tasks):
            self._stop_telemetry(server_id)
        for task in list(self._background):
            task.cancel()

import asyncio

import pytest

from minemanager.services.binaries import BinaryProvider
from minemanager.services.events import EventHub
from minemanager.services.models import ServerConfig, ServerType
from minemanager.services.supervisor import InstanceSupervisor


class FakeStream:
    """Stands in for a subprocess pipe; lines are fed by the test."""

    def __init__(self):
        self._queue = asyncio.Queue()

    def feed(self, line: str):
        self._queue.put_nowait((line + "\n").encode("utf-8"))

    def close(self):
        self._queue.put_nowait(b"")

    async def readline(self):
        return await self._queue.get()


class FakeStdin:
    def __init__(self, process):
        self.process = process
        self.writes = []

    def write(self, data: bytes):
        self.writes.append(data.decode("utf-8"))
        if self.process.exit_on_stop and data == b"stop\n":
            self.process.exit(0)

    async def drain(self):
        return None


class FakeProcess:
    def __init__(self, pid: int = 4242, exit_on_stop: bool = False):
        self.pid = pid
        self.exit_on_stop = exit_on_stop
        self.returncode = None
        self.stdout = FakeStream()
        self.stderr = FakeStream()
        self.stdin = FakeStdin(self)
        self.terminated = False
        self._exited = asyncio.Event()

    def exit(self, code: int = 0):
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.close()
        self.stderr.close()
        self._exited.set()

    def terminate(self):
        self.terminated = True
        self.exit(143)

    def kill(self):
        self.exit(137)

    async def wait(self):
        await self._exited.wait()
        return self.returncode


@pytest.fixture
def fake_process():
    return FakeProcess


@pytest.fixture
def make_supervisor(tmp_path):
    """Build a supervisor on tmp dirs with one registered server "s1" on 25565."""

    def _make(**options):
        notifications = []
        persisted = []

        async def notify():
            notifications.append(1)

        instances_dir = tmp_path / "instances"
        supervisor = InstanceSupervisor(
            instances_dir,
            BinaryProvider(tmp_path / "jars"),
            EventHub(),
            notify=notify,
            persist=lambda: persisted.append(1),
            shared_plugins_dir=options.pop("shared_plugins_dir", None),
            lock_cleanup_delay=options.pop("lock_cleanup_delay", 0),
            telemetry_interval=options.pop("telemetry_interval", 3600),
            **options,
        )
        supervisor.load([ServerConfig("s1", "Hub", ServerType.PAPER, "1.21.4", 25565, 1024)])
        (instances_dir / "s1").mkdir(parents=True)
        supervisor.notifications = notifications
        supervisor.persisted = persisted
        return supervisor

    return _make


async def settle():
    """Give reader tasks a chance to drain what the fake process wrote."""
    await asyncio.sleep(0.01)


@pytest.fixture
def wait_for_readers():
    return settle

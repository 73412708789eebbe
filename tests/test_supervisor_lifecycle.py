import asyncio

import pytest

from minemanager.services.errors import InvalidState, NotFound, ProcessSpawnFailure
from minemanager.services.models import ServerStatus

DONE_LINE = '[12:00:03 INFO]: Done (3.210s)! For help, type "help"'


def _attach(monkeypatch, supervisor, process):
    spawned = []

    async def _fake_spawn(state, server_dir):
        spawned.append((state.id, server_dir))
        return process

    monkeypatch.setattr(supervisor, "_spawn_process", _fake_spawn)
    return spawned


def test_full_lifecycle_start_ready_stop_exit(monkeypatch, make_supervisor, fake_process, wait_for_readers):
    supervisor = make_supervisor()
    state = supervisor.get("s1")

    async def scenario():
        process = fake_process()
        _attach(monkeypatch, supervisor, process)

        ack = await supervisor.start("s1")
        assert ack["success"] is True
        assert state.status == ServerStatus.STARTING
        assert supervisor.has_process("s1")

        process.stdout.feed("[12:00:00 INFO]: Starting minecraft server version 1.21.4")
        await wait_for_readers()
        assert state.status == ServerStatus.STARTING

        process.stdout.feed(DONE_LINE)
        await wait_for_readers()
        assert state.status == ServerStatus.RUNNING

        process.stdout.feed("[12:01:00 INFO]: Steve[/127.0.0.1:53422] logged in with entity id 42")
        process.stdout.feed("[12:01:01 INFO]: Alex joined the game")
        await wait_for_readers()
        assert state.players == ["Steve", "Alex"]

        process.stdout.feed("[12:02:00 INFO]: Steve lost connection: Disconnected")
        await wait_for_readers()
        assert state.players == ["Alex"]

        await supervisor.stop("s1")
        assert state.status == ServerStatus.STOPPING
        assert process.stdin.writes == ["stop\n"]

        process.exit(0)
        await wait_for_readers()

        assert state.status == ServerStatus.STOPPED
        assert state.players == []
        assert state.tps == 20.0
        assert state.used_memory == 0
        assert not supervisor.has_process("s1")

    asyncio.run(scenario())

    logs = supervisor.get_logs("s1")
    assert DONE_LINE in logs
    assert supervisor.notifications


def test_exit_while_starting_logs_failure(monkeypatch, make_supervisor, fake_process, wait_for_readers):
    supervisor = make_supervisor()

    async def scenario():
        process = fake_process()
        _attach(monkeypatch, supervisor, process)
        await supervisor.start("s1")
        process.stderr.feed("Error: Unable to access jarfile server.jar")
        process.exit(1)
        await wait_for_readers()

    asyncio.run(scenario())

    state = supervisor.get("s1")
    assert state.status == ServerStatus.STOPPED
    assert not supervisor.has_process("s1")
    logs = supervisor.get_logs("s1")
    assert "Server failed to start (exit code: 1)" in logs
    assert "Error: Unable to access jarfile server.jar" in logs


def test_ready_marker_ignored_unless_starting(monkeypatch, make_supervisor, fake_process, wait_for_readers):
    supervisor = make_supervisor()

    async def scenario():
        process = fake_process()
        _attach(monkeypatch, supervisor, process)
        await supervisor.start("s1")
        process.stdout.feed(DONE_LINE)
        await wait_for_readers()
        await supervisor.stop("s1")

        # A late marker while stopping must not bring the server back to running
        process.stdout.feed(DONE_LINE)
        await wait_for_readers()
        assert supervisor.get("s1").status == ServerStatus.STOPPING
        process.exit(0)
        await wait_for_readers()

    asyncio.run(scenario())


def test_start_and_stop_are_idempotent(monkeypatch, make_supervisor, fake_process, wait_for_readers):
    supervisor = make_supervisor()

    async def scenario():
        process = fake_process()
        spawned = _attach(monkeypatch, supervisor, process)

        stop_ack = await supervisor.stop("s1")
        assert stop_ack["status"] == "stopped"

        await supervisor.start("s1")
        await supervisor.start("s1")
        assert len(spawned) == 1

        # stop is only honoured from running
        await supervisor.stop("s1")
        assert process.stdin.writes == []

        process.stdout.feed(DONE_LINE)
        await wait_for_readers()
        await supervisor.start("s1")
        assert len(spawned) == 1

        await supervisor.stop("s1")
        await supervisor.stop("s1")
        assert process.stdin.writes == ["stop\n"]

        process.exit(0)
        await wait_for_readers()

    asyncio.run(scenario())


def test_spawn_failure_is_logged_and_server_stays_stopped(monkeypatch, make_supervisor):
    supervisor = make_supervisor()

    async def _failing_spawn(state, server_dir):
        raise ProcessSpawnFailure("[Errno 2] No such file or directory: '/usr/bin/java'")

    monkeypatch.setattr(supervisor, "_spawn_process", _failing_spawn)

    ack = asyncio.run(supervisor.start("s1"))

    assert ack["success"] is True
    assert ack["status"] == "stopped"
    assert supervisor.get("s1").status == ServerStatus.STOPPED
    assert not supervisor.has_process("s1")
    assert any(line.startswith("Process error:") for line in supervisor.get_logs("s1"))


def test_start_removes_stale_session_lock(monkeypatch, make_supervisor, fake_process):
    supervisor = make_supervisor()
    lock_file = supervisor.server_dir("s1") / "world" / "session.lock"
    lock_file.parent.mkdir(parents=True)
    lock_file.write_text("lock")

    async def scenario():
        _attach(monkeypatch, supervisor, fake_process())
        await supervisor.start("s1")

    asyncio.run(scenario())
    assert not lock_file.exists()


def test_stop_cleans_session_lock_after_delay(monkeypatch, make_supervisor, fake_process, wait_for_readers):
    supervisor = make_supervisor(lock_cleanup_delay=0)
    lock_file = supervisor.server_dir("s1") / "world" / "session.lock"

    async def scenario():
        process = fake_process()
        _attach(monkeypatch, supervisor, process)
        await supervisor.start("s1")
        process.stdout.feed(DONE_LINE)
        await wait_for_readers()

        lock_file.parent.mkdir(parents=True, exist_ok=True)
        lock_file.write_text("lock")
        await supervisor.stop("s1")
        await wait_for_readers()
        assert not lock_file.exists()
        process.exit(0)
        await wait_for_readers()

    asyncio.run(scenario())


def test_delete_waits_for_running_process_to_exit(monkeypatch, make_supervisor, fake_process, wait_for_readers):
    supervisor = make_supervisor()
    server_dir = supervisor.server_dir("s1")

    async def scenario():
        process = fake_process(exit_on_stop=True)
        _attach(monkeypatch, supervisor, process)
        await supervisor.start("s1")
        process.stdout.feed(DONE_LINE)
        await wait_for_readers()

        await supervisor.delete("s1")
        assert process.returncode == 0

    asyncio.run(scenario())

    assert "s1" not in supervisor.servers
    assert not supervisor.has_process("s1")
    assert not server_dir.exists()
    assert supervisor.persisted
    with pytest.raises(NotFound):
        supervisor.get_logs("s1")


def test_delete_while_starting_asks_process_to_stop(monkeypatch, make_supervisor, fake_process):
    supervisor = make_supervisor()

    async def scenario():
        process = fake_process(exit_on_stop=True)
        _attach(monkeypatch, supervisor, process)
        await supervisor.start("s1")
        await supervisor.delete("s1")
        assert process.stdin.writes == ["stop\n"]

    asyncio.run(scenario())
    assert "s1" not in supervisor.servers
    assert not supervisor.has_process("s1")


def test_delete_unknown_server_raises(make_supervisor):
    supervisor = make_supervisor()
    with pytest.raises(NotFound):
        asyncio.run(supervisor.delete("missing"))


def test_send_command_without_process_is_noop(make_supervisor):
    supervisor = make_supervisor()
    assert asyncio.run(supervisor.send_command("s1", "say hi")) is False


def test_send_command_writes_to_stdin(monkeypatch, make_supervisor, fake_process):
    supervisor = make_supervisor()

    async def scenario():
        process = fake_process()
        _attach(monkeypatch, supervisor, process)
        await supervisor.start("s1")
        sent = await supervisor.send_command("s1", "say hello")
        return process, sent

    process, sent = asyncio.run(scenario())
    assert sent is True
    assert process.stdin.writes == ["say hello\n"]


def test_memory_edit_rejected_while_running(monkeypatch, make_supervisor, fake_process):
    supervisor = make_supervisor()

    async def scenario():
        _attach(monkeypatch, supervisor, fake_process())
        await supervisor.start("s1")
        with pytest.raises(InvalidState):
            await supervisor.set_memory("s1", 4096)
        with pytest.raises(InvalidState):
            await supervisor.set_properties("s1", {"motd": "busy"})

    asyncio.run(scenario())
    assert supervisor.get("s1").memory == 1024


def test_launch_command_carries_instance_signature(make_supervisor):
    supervisor = make_supervisor(java_path="/opt/java/bin/java")
    command = supervisor._build_command(supervisor.get("s1"))
    assert command == [
        "/opt/java/bin/java",
        "-Xmx1024M",
        "-Xms1024M",
        "-Dminemanager.instance=s1",
        "-jar",
        "server.jar",
        "nogui",
    ]

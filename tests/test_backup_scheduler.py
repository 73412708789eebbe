import asyncio
from datetime import datetime, timedelta

import pytest

from minemanager.services import backup_scheduler
from minemanager.services.backup_scheduler import BackupScheduler, is_due, sunday_based_weekday
from minemanager.services.backups import BackupConfig, BackupManager


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


def _make_scheduler(tmp_path, configs, fail_for=(), clock=None, backup_seconds=0):
    manager = BackupManager(tmp_path / "instances", tmp_path / "backups")
    for server_id, config in configs.items():
        manager.set_config(server_id, config)
    calls = []

    async def _run_backup(server_id):
        calls.append(server_id)
        if clock is not None:
            clock.advance(backup_seconds)
        if server_id in fail_for:
            raise RuntimeError("disk full")
        return {"id": "b"}

    options = {"clock": clock} if clock is not None else {}
    return BackupScheduler(manager, _run_backup, interval=60, **options), calls


def _run_loop(monkeypatch, scheduler, clock, until, oversleep=0):
    """Drive the monitor loop with a sleep that moves the fake clock."""
    real_sleep = asyncio.sleep

    async def _fake_sleep(seconds):
        clock.advance(seconds + oversleep)
        if clock.now >= until:
            scheduler._running = False
        await real_sleep(0)

    monkeypatch.setattr(backup_scheduler.asyncio, "sleep", _fake_sleep)

    async def scenario():
        scheduler._running = True
        await scheduler._monitor_loop()
        await scheduler.wait_idle()

    asyncio.run(scenario())


def test_daily_fires_once_per_day(tmp_path):
    scheduler, calls = _make_scheduler(
        tmp_path, {"s1": {"enabled": True, "schedule": "daily", "schedule_time": "03:00"}}
    )

    async def scenario():
        scheduler._check_and_act(datetime(2024, 5, 1, 2, 59, 30))
        scheduler._check_and_act(datetime(2024, 5, 1, 3, 0, 5))
        scheduler._check_and_act(datetime(2024, 5, 1, 3, 0, 55))
        scheduler._check_and_act(datetime(2024, 5, 1, 3, 1, 10))
        scheduler._check_and_act(datetime(2024, 5, 2, 3, 0, 2))
        await scheduler.wait_idle()

    asyncio.run(scenario())
    assert calls == ["s1", "s1"]


def test_hourly_matches_minute_only(tmp_path):
    scheduler, calls = _make_scheduler(
        tmp_path, {"s1": {"enabled": True, "schedule": "hourly", "schedule_time": "03:15"}}
    )

    async def scenario():
        scheduler._check_and_act(datetime(2024, 5, 1, 7, 15))
        scheduler._check_and_act(datetime(2024, 5, 1, 8, 15))
        scheduler._check_and_act(datetime(2024, 5, 1, 8, 16))
        await scheduler.wait_idle()

    asyncio.run(scenario())
    assert calls == ["s1", "s1"]


def test_weekly_uses_sunday_as_day_zero(tmp_path):
    scheduler, calls = _make_scheduler(
        tmp_path,
        {"s1": {"enabled": True, "schedule": "weekly", "schedule_time": "04:30", "schedule_day": 0}},
    )

    async def scenario():
        # 2024-01-06 is a Saturday, 2024-01-07 a Sunday
        scheduler._check_and_act(datetime(2024, 1, 6, 4, 30))
        scheduler._check_and_act(datetime(2024, 1, 7, 4, 30))
        await scheduler.wait_idle()

    asyncio.run(scenario())
    assert calls == ["s1"]
    assert sunday_based_weekday(datetime(2024, 1, 7)) == 0
    assert sunday_based_weekday(datetime(2024, 1, 6)) == 6


def test_weekly_schedule_day_picks_wednesday(tmp_path):
    scheduler, calls = _make_scheduler(
        tmp_path,
        {"s1": {"enabled": True, "schedule": "weekly", "schedule_time": "02:00", "schedule_day": 3}},
    )

    async def scenario():
        # 2024-01-07 is a Sunday, 2024-01-10 a Wednesday
        scheduler._check_and_act(datetime(2024, 1, 7, 2, 0))
        scheduler._check_and_act(datetime(2024, 1, 10, 2, 0))
        await scheduler.wait_idle()

    asyncio.run(scenario())
    assert calls == ["s1"]


def test_disabled_configs_never_fire(tmp_path):
    scheduler, calls = _make_scheduler(
        tmp_path, {"s1": {"enabled": False, "schedule": "hourly", "schedule_time": "00:00"}}
    )

    async def scenario():
        scheduler._check_and_act(datetime(2024, 5, 1, 3, 0))
        await scheduler.wait_idle()

    asyncio.run(scenario())
    assert calls == []
    assert is_due(BackupConfig(enabled=False), datetime(2024, 5, 1, 3, 0)) is False


def test_one_failing_backup_does_not_stop_the_sweep(tmp_path):
    scheduler, calls = _make_scheduler(
        tmp_path,
        {
            "broken": {"enabled": True, "schedule_time": "03:00"},
            "healthy": {"enabled": True, "schedule_time": "03:00"},
        },
        fail_for={"broken"},
    )

    async def scenario():
        fired = scheduler._check_and_act(datetime(2024, 5, 1, 3, 0))
        await scheduler.wait_idle()
        return fired

    fired = asyncio.run(scenario())

    assert sorted(calls) == ["broken", "healthy"]
    assert sorted(fired) == ["broken", "healthy"]


def test_slow_backup_does_not_skip_next_minute(monkeypatch, tmp_path):
    clock = FakeClock(datetime(2024, 5, 1, 3, 0, 20))
    scheduler, calls = _make_scheduler(
        tmp_path,
        {
            "a": {"enabled": True, "schedule": "daily", "schedule_time": "03:00"},
            "b": {"enabled": True, "schedule": "daily", "schedule_time": "03:01"},
        },
        clock=clock,
        backup_seconds=50,
    )

    _run_loop(monkeypatch, scheduler, clock, until=datetime(2024, 5, 1, 3, 5))

    assert calls == ["a", "b"]


def test_late_wakeup_checks_the_missed_minute(monkeypatch, tmp_path):
    clock = FakeClock(datetime(2024, 5, 1, 3, 0, 59))
    scheduler, calls = _make_scheduler(
        tmp_path,
        {"b": {"enabled": True, "schedule": "daily", "schedule_time": "03:01"}},
        clock=clock,
    )

    # every sleep overshoots by more than a minute
    _run_loop(monkeypatch, scheduler, clock, until=datetime(2024, 5, 1, 3, 6), oversleep=61)

    assert calls == ["b"]


def test_sweep_is_aligned_to_minute_boundary(tmp_path):
    scheduler, _calls = _make_scheduler(tmp_path, {})
    wait = scheduler._seconds_until_next_sweep(datetime(2024, 5, 1, 3, 0, 45))
    assert wait == pytest.approx(15)


def test_start_and_stop_monitor_loop(tmp_path):
    scheduler, _calls = _make_scheduler(tmp_path, {})

    async def scenario():
        await scheduler.start()
        assert scheduler._monitor_task is not None
        await scheduler.start()
        await scheduler.stop()
        assert scheduler._monitor_task is None

    asyncio.run(scenario())

# minemanager/services/backup_scheduler.py
"""
Backup Scheduler

Sweeps every enabled backup config once per minute, on the minute boundary,
and fires the backup operation when the wall clock matches the config's
schedule:
- hourly: minute matches
- daily: hour and minute match
- weekly: day of week (0 = Sunday), hour and minute match

Backups run as their own tasks so a slow archive never delays the next sweep.
A sweep that wakes up late also checks the minutes it overslept. Each server
fires at most once per matching minute, however often that minute is checked.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from functools import partial
from typing import Awaitable, Callable, Dict, List, Optional, Set

from minemanager.core.config import BACKUP_SWEEP_INTERVAL_SEC
from minemanager.services.backups import BackupConfig, BackupManager

logger = logging.getLogger(__name__)

RunBackup = Callable[[str], Awaitable[object]]

# Longest stretch of missed minutes a late sweep still checks
CATCH_UP_MINUTES = 5


def sunday_based_weekday(now: datetime) -> int:
    """datetime.weekday() is Monday=0; schedules use Sunday=0"""
    return (now.weekday() + 1) % 7


def is_due(config: BackupConfig, now: datetime) -> bool:
    if not config.enabled:
        return False
    if now.minute != config.minute:
        return False
    if config.schedule == "hourly":
        return True
    if now.hour != config.hour:
        return False
    if config.schedule == "daily":
        return True
    if config.schedule == "weekly":
        return sunday_based_weekday(now) == config.schedule_day
    return False


class BackupScheduler:
    """Runs scheduled backups for every server with an enabled config"""

    def __init__(
        self,
        backups: BackupManager,
        run_backup: RunBackup,
        interval: float = BACKUP_SWEEP_INTERVAL_SEC,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.backups = backups
        self.run_backup = run_backup
        self.interval = interval
        self._clock = clock

        # server id -> "YYYY-MM-DD HH:MM" of the last fire
        self._last_fired: Dict[str, str] = {}
        self._last_swept: Optional[datetime] = None

        self._monitor_task: Optional[asyncio.Task] = None
        self._backup_tasks: Set[asyncio.Task] = set()
        self._running = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self):
        if self._running:
            return
        self._running = True
        self._monitor_task = asyncio.create_task(self._monitor_loop())
        logger.info("[BackupScheduler] Backup scheduler started")

    async def stop(self):
        self._running = False
        if self._monitor_task:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None
        await self.wait_idle()
        logger.info("[BackupScheduler] Backup scheduler stopped")

    async def wait_idle(self):
        """Wait for every backup the scheduler has fired to finish."""
        while self._backup_tasks:
            await asyncio.gather(*list(self._backup_tasks), return_exceptions=True)

    def forget(self, server_id: str):
        self._last_fired.pop(server_id, None)

    # =========================================================================
    # Monitor Loop
    # =========================================================================

    def _seconds_until_next_sweep(self, now: datetime) -> float:
        return self.interval - (now.timestamp() % self.interval)

    async def _monitor_loop(self):
        logger.info("[BackupScheduler] Monitor loop started")
        while self._running:
            try:
                self._sweep(self._clock())
            except Exception as e:
                logger.error(f"[BackupScheduler] Sweep failed: {e}")

            await asyncio.sleep(self._seconds_until_next_sweep(self._clock()))

    def _sweep(self, now: datetime) -> List[str]:
        """Check the current minute plus any minutes missed since the last sweep."""
        minute = now.replace(second=0, microsecond=0)
        first = minute
        if self._last_swept is not None and self._last_swept < minute:
            first = max(
                self._last_swept + timedelta(minutes=1),
                minute - timedelta(minutes=CATCH_UP_MINUTES),
            )
        self._last_swept = minute

        fired = []
        current = first
        while current <= minute:
            fired.extend(self._check_and_act(current))
            current += timedelta(minutes=1)
        return fired

    def _check_and_act(self, now: datetime) -> List[str]:
        """Fire every backup due at this minute. Returns the ids fired."""
        minute_key = now.strftime("%Y-%m-%d %H:%M")
        fired = []

        for server_id, config in self.backups.enabled_configs().items():
            if not is_due(config, now):
                continue
            if self._last_fired.get(server_id) == minute_key:
                continue

            self._last_fired[server_id] = minute_key
            fired.append(server_id)
            task = asyncio.create_task(self.run_backup(server_id))
            self._backup_tasks.add(task)
            task.add_done_callback(partial(self._backup_finished, server_id))

        return fired

    def _backup_finished(self, server_id: str, task: asyncio.Task):
        self._backup_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("[BackupScheduler] Scheduled backup for %s failed: %s", server_id, error)
        else:
            logger.info("[BackupScheduler] Scheduled backup done for %s", server_id)

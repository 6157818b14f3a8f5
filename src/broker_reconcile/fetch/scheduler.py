"""Scheduled auto-fetch across every enabled Flex Query configuration.

Only one run executes at a time: a run that finds the lock held returns at
once instead of queueing. Each config is claimed with a pending status before
any network call so a crash mid-fetch still leaves it in cooldown.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Awaitable, Callable

from broker_reconcile.config.settings import Settings
from broker_reconcile.fetch.config_store import FlexConfigStorage, FlexQueryConfig
from broker_reconcile.fetch.lock import AsyncLock
from broker_reconcile.fetch.status import check_cooldown, pending_status
from broker_reconcile.pipeline.processor import ConfigProcessResult
from broker_reconcile.utils.dates import Clock, utcnow
from broker_reconcile.utils.logging import error_message, get_logger

logger = get_logger(__name__)

ProcessFn = Callable[[FlexQueryConfig, str], Awaitable[ConfigProcessResult]]


@dataclass(frozen=True)
class SchedulerOptions:
    cooldown: timedelta = timedelta(hours=6)
    debounce_seconds: float = 2.0
    interval_seconds: float = 3600.0

    @classmethod
    def from_settings(cls, settings: Settings) -> SchedulerOptions:
        return cls(
            cooldown=timedelta(hours=settings.fetch_cooldown_hours),
            debounce_seconds=settings.auto_fetch_debounce_seconds,
            interval_seconds=settings.auto_fetch_interval_seconds,
        )


@dataclass(frozen=True)
class SchedulerRunResult:
    ran: bool
    results: dict[str, ConfigProcessResult] = field(default_factory=dict)
    skipped_reason: str | None = None
    cooldown_skipped: list[str] = field(default_factory=list)


class AutoFetchScheduler:
    def __init__(
        self,
        storage: FlexConfigStorage,
        process: ProcessFn,
        options: SchedulerOptions | None = None,
        *,
        clock: Clock = utcnow,
        lock: AsyncLock | None = None,
    ) -> None:
        self.storage = storage
        self.process = process
        self.options = options or SchedulerOptions()
        self.clock = clock
        self.lock = lock or AsyncLock()
        self._timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[SchedulerRunResult]] = set()
        self._closed = asyncio.Event()

    async def run_once(self) -> SchedulerRunResult:
        if not self.lock.try_acquire():
            logger.debug("Auto-fetch skipped: fetch already in progress")
            return SchedulerRunResult(ran=False, skipped_reason="in progress")
        try:
            return await self._run_locked()
        except Exception as exc:
            logger.error("Auto-fetch failed: %s", error_message(exc))
            return SchedulerRunResult(ran=False, skipped_reason="error")
        finally:
            self.lock.release()

    async def _still_eligible(self, config: FlexQueryConfig) -> bool:
        fresh = await self.storage.load_configs_safe()
        if not fresh.success:
            return True
        current = next((c for c in fresh.configs or [] if c.id == config.id), None)
        if current is None:
            return True
        check = check_cooldown(current.last_fetch_time, self.options.cooldown, self.clock())
        if check.in_cooldown:
            logger.debug(
                "Auto-fetch [%s]: cooldown became active (%sh remaining)", config.name, check.hours_remaining
            )
            return False
        return True

    async def _claim(self, config: FlexQueryConfig) -> bool:
        status = pending_status(self.clock())
        try:
            claimed = await self.storage.update_config_status(
                config.id,
                last_fetch_time=status.last_fetch_time,
                last_fetch_status=status.last_fetch_status,
            )
        except Exception as exc:
            logger.warning("Auto-fetch [%s]: failed to claim config, skipping: %s", config.name, error_message(exc))
            return False
        return claimed

    async def _run_locked(self) -> SchedulerRunResult:
        token = await self.storage.load_token()
        if not token:
            logger.debug("Auto-fetch skipped: no token configured")
            return SchedulerRunResult(ran=False, skipped_reason="no token")

        loaded = await self.storage.load_configs_safe()
        if not loaded.success:
            logger.error("Auto-fetch: failed to load configs - %s", loaded.error)
            return SchedulerRunResult(ran=False, skipped_reason="config load failed")

        enabled = [config for config in loaded.configs or [] if config.auto_fetch_enabled]
        if not enabled:
            logger.debug("Auto-fetch skipped: no auto-fetch configs enabled")
            return SchedulerRunResult(ran=False, skipped_reason="no enabled configs")

        logger.info("Auto-fetch: processing %s configs", len(enabled))
        results: dict[str, ConfigProcessResult] = {}
        cooldown_skipped: list[str] = []
        for config in enabled:
            check = check_cooldown(config.last_fetch_time, self.options.cooldown, self.clock())
            if check.in_cooldown:
                logger.debug(
                    "Auto-fetch [%s]: cooldown active (%sh remaining)", config.name, check.hours_remaining
                )
                cooldown_skipped.append(config.id)
                continue
            if not await self._still_eligible(config):
                cooldown_skipped.append(config.id)
                continue
            if not await self._claim(config):
                continue

            logger.info("Auto-fetch [%s]: starting", config.name)
            try:
                results[config.id] = await self.process(config, token)
            except Exception as exc:
                logger.error("Auto-fetch [%s]: unexpected error - %s", config.name, error_message(exc))
                results[config.id] = ConfigProcessResult(success=False, error=error_message(exc))

        return SchedulerRunResult(ran=True, results=results, cooldown_skipped=cooldown_skipped)

    def _fire(self) -> None:
        self._timer = None
        if self._closed.is_set():
            return
        task = asyncio.get_running_loop().create_task(self.run_once())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def trigger(self) -> None:
        """Debounced request for a run; bursts inside the window collapse into one."""
        if self._closed.is_set():
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().call_later(self.options.debounce_seconds, self._fire)

    async def run_forever(self) -> None:
        while not self._closed.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._closed.wait(), timeout=self.options.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def close(self) -> None:
        self._closed.set()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

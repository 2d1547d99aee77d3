from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

from ..core.config import Settings
from ..core.logging import get_logger
from .coordinator import CampaignCoordinator

logger = get_logger(name=__name__)


class CoordinationRunner:
    """Drives the coordinator on a fixed cadence.

    Every cycle processes queued goals, ticks every campaign and checks for stalled plans.
    Trigger evaluation runs on its own, slower poll interval.
    """

    def __init__(
        self,
        coordinator: CampaignCoordinator,
        *,
        interval_seconds: float = 5.0,
        trigger_interval_seconds: float = 300.0,
    ) -> None:
        self._coordinator = coordinator
        self._interval = interval_seconds
        self._trigger_interval = timedelta(seconds=trigger_interval_seconds)
        self._last_trigger_run: datetime | None = None
        self._loop_task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def run_once(self) -> None:
        try:
            await self._coordinator.run_cycle()
        except Exception as exc:  # pragma: no cover - log unexpected cycle errors
            logger.exception("coordination_cycle_failed", error=str(exc))

        now = self._coordinator.clock.now()
        if self._last_trigger_run is not None and now - self._last_trigger_run < self._trigger_interval:
            return
        self._last_trigger_run = now
        campaigns = self._coordinator.triggers.campaigns
        results = await asyncio.gather(
            *(self._coordinator.evaluate_triggers(campaign_id) for campaign_id in campaigns),
            return_exceptions=True,
        )
        for campaign_id, result in zip(campaigns, results):
            if isinstance(result, BaseException):
                logger.error("trigger_evaluation_failed", campaign_id=campaign_id, error=str(result))

    async def _loop(self) -> None:
        logger.info("coordination_runner_started", interval_seconds=self._interval)
        while True:
            await self.run_once()
            await asyncio.sleep(self._interval)

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["CoordinationRunner"]:
        await self.start()
        try:
            yield self
        finally:
            await self.stop()

    async def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None
            logger.info("coordination_runner_stopped")

    @classmethod
    def from_settings(cls, coordinator: CampaignCoordinator, settings: Settings) -> "CoordinationRunner":
        return cls(
            coordinator,
            interval_seconds=settings.runner.interval_seconds,
            trigger_interval_seconds=settings.triggers.poll_interval_seconds,
        )

from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import Depends

from .core.config import Settings, get_settings
from .orchestration.coordinator import CampaignCoordinator

_coordinator_singleton: CampaignCoordinator | None = None


def get_coordinator_singleton(settings: Settings) -> CampaignCoordinator:
    global _coordinator_singleton
    if _coordinator_singleton is None:
        _coordinator_singleton = CampaignCoordinator.from_settings(settings)
    return _coordinator_singleton


def reset_coordinator_singleton() -> None:
    global _coordinator_singleton
    _coordinator_singleton = None


async def get_app_settings() -> AsyncIterator[Settings]:
    yield get_settings()


async def get_coordinator(
    settings: Settings = Depends(get_app_settings),
) -> AsyncIterator[CampaignCoordinator]:
    yield get_coordinator_singleton(settings)

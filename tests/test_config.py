from __future__ import annotations

import pytest

from campaign_mesh.core.config import SchedulingSettings, Settings, get_settings


def test_defaults_match_documented_policy() -> None:
    settings = Settings(environment="test")

    assert settings.scheduling.default_max_retries == 3
    assert settings.scheduling.base_backoff_seconds == pytest.approx(5.0)
    assert settings.scheduling.max_backoff_seconds == pytest.approx(60.0)
    assert settings.triggers.default_cooldown_seconds == pytest.approx(300.0)
    assert settings.planning.quorum_threshold == pytest.approx(0.6)
    assert settings.monitor.blocker_timeout_seconds == pytest.approx(900.0)
    assert settings.monitor.max_replans == 3
    assert settings.api_v1_prefix == "/api/v1"


def test_nested_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CAMPAIGN_MESH_SCHEDULING__DEFAULT_MAX_RETRIES", "5")
    monkeypatch.setenv("CAMPAIGN_MESH_PLANNING__QUORUM_THRESHOLD", "0.75")
    monkeypatch.setenv("CAMPAIGN_MESH_RUNNER__ENABLED", "false")

    settings = Settings()

    assert settings.scheduling.default_max_retries == 5
    assert settings.planning.quorum_threshold == pytest.approx(0.75)
    assert settings.runner.enabled is False


def test_get_settings_caches_defaults_and_honours_overrides() -> None:
    assert get_settings() is get_settings()

    custom = get_settings({"environment": "test", "monitor": {"max_replans": 0}})

    assert custom is not get_settings()
    assert custom.monitor.max_replans == 0


def test_agent_concurrency_overrides_fall_back_to_default() -> None:
    scheduling = SchedulingSettings(max_concurrency_per_agent=4, agent_concurrency={"ad_agent": 1, "seo_agent": 0})

    assert scheduling.concurrency_for("ad_agent") == 1
    assert scheduling.concurrency_for("content_agent") == 4
    assert scheduling.concurrency_for("seo_agent") == 1


def test_invalid_quorum_is_rejected() -> None:
    with pytest.raises(ValueError):
        Settings(planning={"quorum_threshold": 1.5})

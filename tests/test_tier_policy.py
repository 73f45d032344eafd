from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from postflow.core.config import get_settings
from postflow.tiers.config import get_tier_limits, load_tiers
from postflow.tiers.policy import (
    REASON_ADVANCE_WINDOW,
    REASON_IN_PAST,
    REASON_QUEUE_FULL,
    calculate_post_credits,
    can_connect,
    can_generate,
    can_post,
    can_schedule,
    can_use_automation,
    has_enough_credits,
)
from postflow.tiers.report import limit_status


NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def test_default_tiers_file_is_loaded(monkeypatch) -> None:
    monkeypatch.setenv("TIERS_FILE_PATH", "config/tiers.yaml")
    get_settings.cache_clear()
    load_tiers.cache_clear()

    free = get_tier_limits("free")
    assert free.monthly_credits == 10
    assert free.automation_enabled is False
    assert get_tier_limits("pro").advance_scheduling_days == 30
    assert get_tier_limits("business").max_automation_rules == 20

    with pytest.raises(ValueError, match="enterprise"):
        get_tier_limits("enterprise")

    load_tiers.cache_clear()
    get_settings.cache_clear()


def test_custom_tiers_file_overrides_limits(monkeypatch, tmp_path) -> None:
    base = {
        "monthly_credits": 10,
        "max_credit_carryover": 0,
        "connected_accounts_per_platform": 1,
        "total_connected_accounts": 4,
        "daily_posts_per_platform": 5,
        "daily_generations": 5,
        "queue_size": 5,
        "advance_scheduling_days": 7,
        "automation_enabled": False,
        "max_automation_rules": 0,
    }
    lines = ["free:"] + [f"  {key}: {str(value).lower()}" for key, value in base.items()]
    tiers_path = tmp_path / "tiers.yaml"
    tiers_path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    monkeypatch.setenv("TIERS_FILE_PATH", str(tiers_path))
    get_settings.cache_clear()
    load_tiers.cache_clear()
    try:
        assert can_post("free", "twitter", {"twitter": 4}).allowed is True
        decision = can_post("free", "twitter", {"twitter": 5})
        assert decision.allowed is False
        assert decision.limit == 5
    finally:
        load_tiers.cache_clear()
        get_settings.cache_clear()


def test_invalid_tiers_file_is_rejected(monkeypatch, tmp_path) -> None:
    tiers_path = tmp_path / "tiers.yaml"
    tiers_path.write_text("free:\n  monthly_credits: -1\n", encoding="utf-8")
    monkeypatch.setenv("TIERS_FILE_PATH", str(tiers_path))
    get_settings.cache_clear()
    load_tiers.cache_clear()
    try:
        with pytest.raises(ValueError, match="free"):
            load_tiers()
    finally:
        load_tiers.cache_clear()
        get_settings.cache_clear()


def test_can_connect_checks_platform_then_total() -> None:
    assert can_connect("free", {}, "twitter").allowed is True

    per_platform = can_connect("free", {"twitter": 1}, "twitter")
    assert per_platform.allowed is False
    assert per_platform.reason == "platform_limit"
    assert "twitter" in per_platform.message

    total = can_connect("free", {"facebook": 1, "instagram": 1, "twitter": 1, "linkedin": 1}, "linkedin")
    assert total.allowed is False

    total_only = can_connect("pro", {"facebook": 3, "instagram": 3, "twitter": 3, "linkedin": 3}, "linkedin")
    assert total_only.allowed is False
    assert total_only.reason == "total_limit"
    assert total_only.limit == 12


def test_can_post_boundary() -> None:
    assert can_post("free", "facebook", {"facebook": 1}).allowed is True
    blocked = can_post("free", "facebook", {"facebook": 2})
    assert blocked.allowed is False
    assert blocked.current == 2
    assert can_post("free", "linkedin", {}).current == 0


def test_can_schedule_rejects_full_queue_first() -> None:
    decision = can_schedule("free", 5, NOW - timedelta(days=1), now=NOW)
    assert decision.allowed is False
    assert decision.reason == REASON_QUEUE_FULL
    assert decision.limit == 5


def test_can_schedule_rejects_past_dates() -> None:
    decision = can_schedule("pro", 0, NOW - timedelta(seconds=1), now=NOW)
    assert decision.allowed is False
    assert decision.reason == REASON_IN_PAST


def test_can_schedule_advance_window_rounds_partial_days_up() -> None:
    assert can_schedule("free", 0, NOW + timedelta(days=7), now=NOW).allowed is True

    late = can_schedule("free", 0, NOW + timedelta(days=7, minutes=1), now=NOW)
    assert late.allowed is False
    assert late.reason == REASON_ADVANCE_WINDOW
    assert late.current == 8

    pro = can_schedule("pro", 0, NOW + timedelta(days=40), now=NOW)
    assert pro.allowed is False
    assert pro.limit == 30


def test_can_schedule_accepts_naive_dates_as_utc() -> None:
    decision = can_schedule("free", 2, datetime(2026, 10, 19, 12, 0), now=NOW)
    assert decision.allowed is True
    assert decision.limit == 5
    assert decision.current == 2


def test_can_generate_and_automation() -> None:
    assert can_generate("free", 4).allowed is True
    assert can_generate("free", 5).allowed is False

    disabled = can_use_automation("free", 0)
    assert disabled.allowed is False
    assert disabled.reason == "automation_disabled"
    assert can_use_automation("pro", 4).allowed is True
    assert can_use_automation("pro", 5).reason == "rule_limit"


def test_credit_checks() -> None:
    assert has_enough_credits(3, 1, 2).allowed is True
    short = has_enough_credits(3, 2, 2)
    assert short.allowed is False
    assert short.current == 1
    assert calculate_post_credits(["facebook", "twitter", "linkedin"]) == 3


def test_limit_status_percentages() -> None:
    status = limit_status(3, 4)
    assert status.remaining == 1
    assert status.percentage == 75
    assert status.is_at_limit is False
    assert limit_status(5, 5).is_at_limit is True
    assert limit_status(2, 0).percentage == 0

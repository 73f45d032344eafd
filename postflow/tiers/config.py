"""Tier limits table loaded from YAML."""

from __future__ import annotations

from dataclasses import dataclass, fields
from functools import lru_cache
from pathlib import Path
from typing import Dict

import yaml

from postflow.core.config import get_settings


@dataclass(frozen=True)
class TierLimits:
    monthly_credits: int
    max_credit_carryover: int
    connected_accounts_per_platform: int
    total_connected_accounts: int
    daily_posts_per_platform: int
    daily_generations: int
    queue_size: int
    advance_scheduling_days: int
    automation_enabled: bool
    max_automation_rules: int


def _resolve_tiers_path() -> Path:
    settings = get_settings()
    configured = Path(settings.tiers_file_path)
    if configured.is_absolute():
        return configured
    return Path.cwd() / configured


def _parse_limits(tier: str, raw: object) -> TierLimits:
    if not isinstance(raw, dict):
        raise ValueError(f"Tier '{tier}' must be a mapping of limits")

    values: Dict[str, object] = {}
    for limit_field in fields(TierLimits):
        if limit_field.name not in raw:
            raise ValueError(f"Tier '{tier}' is missing limit: {limit_field.name}")
        value = raw[limit_field.name]
        if limit_field.name == "automation_enabled":
            if not isinstance(value, bool):
                raise ValueError(f"Tier '{tier}' limit automation_enabled must be a boolean")
        elif isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValueError(f"Tier '{tier}' limit {limit_field.name} must be a non-negative integer")
        values[limit_field.name] = value
    return TierLimits(**values)  # type: ignore[arg-type]


@lru_cache(maxsize=1)
def load_tiers() -> Dict[str, TierLimits]:
    tiers_path = _resolve_tiers_path()
    with tiers_path.open("r", encoding="utf-8") as file:
        content = yaml.safe_load(file) or {}
    if not isinstance(content, dict):
        raise ValueError("Invalid tiers file format")

    return {str(name): _parse_limits(str(name), limits) for name, limits in content.items()}


def get_tier_limits(tier: str) -> TierLimits:
    tiers = load_tiers()
    limits = tiers.get(tier)
    if limits is None:
        raise ValueError(f"Tier is not configured: {tier}")
    return limits

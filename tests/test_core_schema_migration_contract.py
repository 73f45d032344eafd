from __future__ import annotations

from pathlib import Path


def test_core_schema_migration_declares_tables() -> None:
    migration_path = Path("migrations/versions/20261018_0001_core_schema.py")
    source = migration_path.read_text(encoding="utf-8")

    for table in (
        "users",
        "posts",
        "credit_reservations",
        "credit_transactions",
        "daily_usage_counters",
        "connected_accounts",
        "automation_rules",
        "job_logs",
        "generation_logs",
        "user_notifications",
    ):
        assert f"\"{table}\"," in source

    assert 'revision = "20261018_0001"' in source
    assert "down_revision = None" in source


def test_core_schema_migration_guards_credit_invariants() -> None:
    migration_path = Path("migrations/versions/20261018_0001_core_schema.py")
    source = migration_path.read_text(encoding="utf-8")

    assert "ck_users_reserved_within_balance" in source
    assert "reserved_credits <= credit_balance" in source
    assert "ck_users_credit_balance_non_negative" in source
    assert "uq_credit_reservations_active_post" in source
    assert "postgresql_where=sa.text(\"status = 'active'\")" in source
    assert "ix_credit_reservations_status_expires_at" in source
    assert "ix_posts_status_scheduled_date" in source
    assert "uq_daily_usage_counters_unique" in source
    assert "uq_user_notifications_daily" in source

from __future__ import annotations

from datetime import timedelta
import threading
from typing import List
import uuid

import pytest
from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from postflow.core.clock import utc_now
from postflow.core.errors import (
    DuplicateReservation,
    InsufficientCredits,
    NoActiveReservation,
    UserNotFound,
    ValidationFailed,
)
from postflow.credits.ledger import (
    add_credits,
    consume_reservation,
    deduct_credits,
    get_active_reservation,
    get_available_credits,
    get_credit_snapshot,
    release_expired_reservations,
    release_reservation,
    reserve_credits,
    reset_monthly_credits,
)
from postflow.storage.db import Base, load_models
from postflow.storage.models import CreditReservation, CreditTransaction, Post, User


def _build_sqlite_session_factory() -> sessionmaker:
    load_models()
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def _create_user(session, *, balance: int, tier: str = "free", reserved: int = 0) -> User:
    user = User(
        id=str(uuid.uuid4()),
        email=f"user-{uuid.uuid4()}@example.com",
        tier=tier,
        credit_balance=balance,
        reserved_credits=reserved,
    )
    session.add(user)
    session.commit()
    return user


def _create_post(session, user: User, *, status: str = "draft") -> Post:
    post = Post(user_id=user.id, platform="twitter", content="hello", status=status)
    session.add(post)
    session.commit()
    return post


def _balance(session, user_id: str) -> tuple[int, int]:
    row = session.execute(
        select(User.credit_balance, User.reserved_credits)
        .where(User.id == user_id)
        .execution_options(populate_existing=True)
    ).one()
    return int(row[0]), int(row[1])


def test_reserve_holds_credits_without_touching_balance() -> None:
    session = _build_sqlite_session_factory()()
    try:
        user = _create_user(session, balance=5)
        post = _create_post(session, user)

        reservation = reserve_credits(session, user_id=user.id, post_id=post.id, amount=1)

        assert reservation.status == "active"
        assert _balance(session, user.id) == (5, 1)
        snapshot = get_credit_snapshot(session, user.id)
        assert (snapshot.balance, snapshot.reserved, snapshot.available) == (5, 1, 4)
    finally:
        session.close()


def test_second_reservation_for_same_post_is_rejected() -> None:
    session = _build_sqlite_session_factory()()
    try:
        user = _create_user(session, balance=5)
        post = _create_post(session, user)
        reserve_credits(session, user_id=user.id, post_id=post.id, amount=1)

        with pytest.raises(DuplicateReservation):
            reserve_credits(session, user_id=user.id, post_id=post.id, amount=1)

        assert _balance(session, user.id) == (5, 1)
    finally:
        session.close()


def test_reserve_counts_existing_holds_against_balance() -> None:
    session = _build_sqlite_session_factory()()
    try:
        user = _create_user(session, balance=3)
        first = _create_post(session, user)
        second = _create_post(session, user)
        reserve_credits(session, user_id=user.id, post_id=first.id, amount=2)

        with pytest.raises(InsufficientCredits) as exc_info:
            reserve_credits(session, user_id=user.id, post_id=second.id, amount=2)

        assert exc_info.value.required == 2
        assert exc_info.value.available == 1
        assert get_active_reservation(session, post_id=second.id) is None
        assert _balance(session, user.id) == (3, 2)
    finally:
        session.close()


def test_reserve_rejects_non_positive_amounts_and_unknown_users() -> None:
    session = _build_sqlite_session_factory()()
    try:
        user = _create_user(session, balance=3)
        post = _create_post(session, user)

        with pytest.raises(ValidationFailed):
            reserve_credits(session, user_id=user.id, post_id=post.id, amount=0)
        with pytest.raises(UserNotFound):
            reserve_credits(session, user_id=str(uuid.uuid4()), post_id=post.id, amount=1)
    finally:
        session.close()


def test_consume_debits_balance_and_clears_hold() -> None:
    session = _build_sqlite_session_factory()()
    try:
        user = _create_user(session, balance=5)
        post = _create_post(session, user)
        reserve_credits(session, user_id=user.id, post_id=post.id, amount=1)

        consumed = consume_reservation(session, post_id=post.id)

        assert consumed.status == "consumed"
        assert consumed.settled_at is not None
        assert _balance(session, user.id) == (4, 0)
        entry = session.scalar(select(CreditTransaction).where(CreditTransaction.user_id == user.id))
        assert (entry.kind, entry.amount, entry.balance_after, entry.post_id) == ("consume", -1, 4, post.id)

        assert release_reservation(session, post_id=post.id) is False
        with pytest.raises(NoActiveReservation):
            consume_reservation(session, post_id=post.id)
        assert _balance(session, user.id) == (4, 0)
    finally:
        session.close()


def test_release_is_idempotent() -> None:
    session = _build_sqlite_session_factory()()
    try:
        user = _create_user(session, balance=5)
        post = _create_post(session, user)
        reserve_credits(session, user_id=user.id, post_id=post.id, amount=1)

        assert release_reservation(session, post_id=post.id) is True
        assert release_reservation(session, post_id=post.id) is False
        assert _balance(session, user.id) == (5, 0)

        reservation = session.scalar(select(CreditReservation).where(CreditReservation.post_id == post.id))
        assert reservation.status == "released"
        assert session.scalars(select(CreditTransaction)).all() == []
    finally:
        session.close()


def test_post_can_be_reserved_again_after_release() -> None:
    session = _build_sqlite_session_factory()()
    try:
        user = _create_user(session, balance=2)
        post = _create_post(session, user)
        reserve_credits(session, user_id=user.id, post_id=post.id, amount=1)
        release_reservation(session, post_id=post.id)

        reserve_credits(session, user_id=user.id, post_id=post.id, amount=1)

        assert _balance(session, user.id) == (2, 1)
        statuses = sorted(
            session.scalars(select(CreditReservation.status).where(CreditReservation.post_id == post.id)).all()
        )
        assert statuses == ["active", "released"]
    finally:
        session.close()


def test_expired_reservations_return_credits() -> None:
    session = _build_sqlite_session_factory()()
    try:
        now = utc_now()
        user = _create_user(session, balance=2)
        post = _create_post(session, user)
        reserve_credits(session, user_id=user.id, post_id=post.id, amount=2, expires_at=now + timedelta(hours=1), now=now)

        assert get_available_credits(session, user.id, now=now) == 0
        assert get_available_credits(session, user.id, now=now + timedelta(hours=2)) == 2

        assert release_expired_reservations(session, now=now + timedelta(hours=2)) == 1
        assert release_expired_reservations(session, now=now + timedelta(hours=2)) == 0
        assert _balance(session, user.id) == (2, 0)
        reservation = session.scalar(select(CreditReservation).where(CreditReservation.post_id == post.id))
        assert reservation.status == "expired"
    finally:
        session.close()


def test_deduct_cannot_spend_reserved_credits() -> None:
    session = _build_sqlite_session_factory()()
    try:
        user = _create_user(session, balance=3)
        post = _create_post(session, user)
        reserve_credits(session, user_id=user.id, post_id=post.id, amount=2)

        assert deduct_credits(session, user_id=user.id, amount=1, reason="publish") == 2

        with pytest.raises(InsufficientCredits) as exc_info:
            deduct_credits(session, user_id=user.id, amount=1, reason="publish")
        assert exc_info.value.available == 0
        assert _balance(session, user.id) == (2, 2)
    finally:
        session.close()


def test_add_credits_records_transaction() -> None:
    session = _build_sqlite_session_factory()()
    try:
        user = _create_user(session, balance=1)

        assert add_credits(session, user_id=user.id, amount=9, reason="promo") == 10

        entry = session.scalar(select(CreditTransaction).where(CreditTransaction.user_id == user.id))
        assert (entry.kind, entry.amount, entry.reason) == ("add", 9, "promo")
        with pytest.raises(ValidationFailed):
            add_credits(session, user_id=user.id, amount=-3)
    finally:
        session.close()


def test_monthly_reset_applies_capped_carryover() -> None:
    session = _build_sqlite_session_factory()()
    try:
        user = _create_user(session, balance=250, tier="pro")

        result = reset_monthly_credits(session, user_id=user.id)

        assert result.carried_over == 100
        assert result.allocated == 500
        assert result.new_balance == 600
        assert _balance(session, user.id) == (600, 0)

        free_user = _create_user(session, balance=7, tier="free")
        assert reset_monthly_credits(session, user_id=free_user.id).new_balance == 10
    finally:
        session.close()


def test_monthly_reset_never_drops_below_outstanding_holds() -> None:
    session = _build_sqlite_session_factory()()
    try:
        user = _create_user(session, balance=15, tier="free")
        for _ in range(12):
            post = _create_post(session, user)
            reserve_credits(session, user_id=user.id, post_id=post.id, amount=1)

        result = reset_monthly_credits(session, user_id=user.id)

        assert result.new_balance == 12
        assert _balance(session, user.id) == (12, 12)
        refreshed = session.scalar(select(User).where(User.id == user.id).execution_options(populate_existing=True))
        assert refreshed.last_credit_reset_at is not None
    finally:
        session.close()


def test_deduct_spends_credits_held_by_a_lapsed_reservation() -> None:
    session = _build_sqlite_session_factory()()
    try:
        now = utc_now()
        user = _create_user(session, balance=1)
        post = _create_post(session, user)
        reserve_credits(
            session,
            user_id=user.id,
            post_id=post.id,
            amount=1,
            expires_at=now - timedelta(minutes=5),
            now=now - timedelta(hours=1),
        )
        assert get_available_credits(session, user.id) == 1

        assert deduct_credits(session, user_id=user.id, amount=1, reason="publish") == 0

        assert _balance(session, user.id) == (0, 0)
        reservation = session.scalar(select(CreditReservation).where(CreditReservation.post_id == post.id))
        assert reservation.status == "expired"
    finally:
        session.close()


def test_concurrent_reservations_never_overcommit_the_balance(tmp_path) -> None:
    load_models()
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        future=True,
    )

    # Writers take the lock up front so threads queue instead of failing a lock upgrade.
    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record) -> None:  # noqa: ARG001
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(connection) -> None:
        connection.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(engine)
    session_factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

    workers = 10
    with session_factory() as session:
        user = _create_user(session, balance=3)
        post_ids = [_create_post(session, user).id for _ in range(workers)]

    barrier = threading.Barrier(workers)
    outcomes: List[str] = []
    outcomes_lock = threading.Lock()

    def _reserve(post_id: str) -> None:
        barrier.wait()
        with session_factory() as session:
            try:
                reserve_credits(session, user_id=user.id, post_id=post_id, amount=1)
                outcome = "reserved"
            except InsufficientCredits:
                session.rollback()
                outcome = "insufficient"
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=_reserve, args=(post_id,)) for post_id in post_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    try:
        assert sorted(outcomes) == ["insufficient"] * 7 + ["reserved"] * 3
        with session_factory() as session:
            assert _balance(session, user.id) == (3, 3)
            active = session.scalars(
                select(CreditReservation).where(CreditReservation.status == "active")
            ).all()
            assert len(active) == 3
    finally:
        engine.dispose()

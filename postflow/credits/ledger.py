"""Credit ledger: balances, per-post reservations and the transaction journal.

Every balance change goes through a conditional ``UPDATE`` on the ``users`` row
so that concurrent callers cannot both spend the same credits. ``users.reserved_credits``
mirrors the sum of active reservations and is guarded by check constraints
(``reserved_credits <= credit_balance``), so the database rejects any write
that would overcommit a balance even if application code misbehaves.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from postflow.core.clock import ensure_utc, utc_now
from postflow.core.config import get_settings
from postflow.core.errors import (
    DuplicateReservation,
    InsufficientCredits,
    NoActiveReservation,
    UserNotFound,
    ValidationFailed,
)
from postflow.core.logger import get_logger
from postflow.storage.models import (
    RESERVATION_ACTIVE,
    RESERVATION_CONSUMED,
    RESERVATION_EXPIRED,
    RESERVATION_RELEASED,
    CreditReservation,
    CreditTransaction,
    User,
)
from postflow.tiers.config import get_tier_limits


TX_ADD = "add"
TX_DEDUCT = "deduct"
TX_CONSUME = "consume"
TX_MONTHLY_RESET = "monthly_reset"

logger = get_logger("postflow.credits.ledger")


@dataclass(frozen=True)
class CreditSnapshot:
    user_id: str
    balance: int
    reserved: int
    available: int


@dataclass(frozen=True)
class MonthlyResetResult:
    user_id: str
    tier: str
    previous_balance: int
    carried_over: int
    allocated: int
    new_balance: int


def _require_positive(amount: int) -> None:
    if amount <= 0:
        raise ValidationFailed("Credit amount must be a positive integer", amount=amount)


def _load_user(session: Session, user_id: str) -> User:
    user = session.scalar(
        select(User).where(User.id == user_id).execution_options(populate_existing=True)
    )
    if user is None:
        raise UserNotFound(f"User not found: {user_id}", user_id=user_id)
    return user


def _finish(session: Session, commit: bool) -> None:
    if commit:
        session.commit()
    else:
        session.flush()


def _record_transaction(
    session: Session,
    *,
    user_id: str,
    kind: str,
    amount: int,
    reason: str,
    post_id: Optional[str] = None,
) -> CreditTransaction:
    balance_after = session.scalar(select(User.credit_balance).where(User.id == user_id))
    entry = CreditTransaction(
        user_id=user_id,
        kind=kind,
        amount=amount,
        balance_after=int(balance_after or 0),
        reason=reason[:255],
        post_id=post_id,
    )
    session.add(entry)
    return entry


def get_reserved_credits(session: Session, user_id: str, *, now: Optional[datetime] = None) -> int:
    reference = ensure_utc(now) if now is not None else utc_now()
    total = session.scalar(
        select(func.coalesce(func.sum(CreditReservation.amount), 0)).where(
            CreditReservation.user_id == user_id,
            CreditReservation.status == RESERVATION_ACTIVE,
            CreditReservation.expires_at > reference,
        )
    )
    return int(total or 0)


def get_available_credits(session: Session, user_id: str, *, now: Optional[datetime] = None) -> int:
    """Balance minus active, non-expired reservations, floored at zero."""

    user = _load_user(session, user_id)
    return max(0, int(user.credit_balance) - get_reserved_credits(session, user_id, now=now))


def get_credit_snapshot(session: Session, user_id: str, *, now: Optional[datetime] = None) -> CreditSnapshot:
    user = _load_user(session, user_id)
    reserved = get_reserved_credits(session, user_id, now=now)
    return CreditSnapshot(
        user_id=user_id,
        balance=int(user.credit_balance),
        reserved=reserved,
        available=max(0, int(user.credit_balance) - reserved),
    )


def get_active_reservation(session: Session, *, post_id: str) -> Optional[CreditReservation]:
    return session.scalar(
        select(CreditReservation)
        .where(
            CreditReservation.post_id == post_id,
            CreditReservation.status == RESERVATION_ACTIVE,
        )
        .execution_options(populate_existing=True)
    )


def list_user_reservations(
    session: Session,
    *,
    user_id: str,
    status: Optional[str] = None,
    limit: int = 100,
) -> List[CreditReservation]:
    statement = select(CreditReservation).where(CreditReservation.user_id == user_id)
    if status is not None:
        statement = statement.where(CreditReservation.status == status)
    statement = statement.order_by(CreditReservation.created_at.desc()).limit(max(1, limit))
    return list(session.scalars(statement).all())


def _settle(
    session: Session,
    reservation_id: str,
    *,
    new_status: str,
    settled_at: datetime,
) -> bool:
    result = session.execute(
        update(CreditReservation)
        .where(
            CreditReservation.id == reservation_id,
            CreditReservation.status == RESERVATION_ACTIVE,
        )
        .values(status=new_status, settled_at=settled_at)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _unreserve(session: Session, *, user_id: str, amount: int) -> None:
    session.execute(
        update(User)
        .where(User.id == user_id)
        .values(reserved_credits=User.reserved_credits - amount, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )


def release_expired_reservations(
    session: Session,
    *,
    now: Optional[datetime] = None,
    user_id: Optional[str] = None,
    post_id: Optional[str] = None,
    commit: bool = True,
) -> int:
    """Mark overdue active reservations as expired and return the credits to ``available``."""

    reference = ensure_utc(now) if now is not None else utc_now()
    statement = select(CreditReservation.id, CreditReservation.user_id, CreditReservation.amount).where(
        CreditReservation.status == RESERVATION_ACTIVE,
        CreditReservation.expires_at <= reference,
    )
    if user_id is not None:
        statement = statement.where(CreditReservation.user_id == user_id)
    if post_id is not None:
        statement = statement.where(CreditReservation.post_id == post_id)

    expired = 0
    for reservation_id, owner_id, amount in session.execute(statement).all():
        if _settle(session, reservation_id, new_status=RESERVATION_EXPIRED, settled_at=reference):
            _unreserve(session, user_id=owner_id, amount=int(amount))
            expired += 1

    if expired:
        logger.info("credit_reservations_expired", count=expired, user_id=user_id, post_id=post_id)
    _finish(session, commit)
    return expired


def reserve_credits(
    session: Session,
    *,
    user_id: str,
    post_id: str,
    amount: int,
    expires_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> CreditReservation:
    """Hold ``amount`` credits for ``post_id``.

    The availability check and the hold are a single conditional UPDATE on the
    user row; with ``commit=False`` the caller owns the surrounding transaction.
    """

    _require_positive(amount)
    reference = ensure_utc(now) if now is not None else utc_now()
    expiry = ensure_utc(expires_at) if expires_at is not None else (
        reference + timedelta(days=get_settings().reservation_expiry_days)
    )

    _load_user(session, user_id)
    release_expired_reservations(session, now=reference, user_id=user_id, commit=False)

    if get_active_reservation(session, post_id=post_id) is not None:
        raise DuplicateReservation(f"An active reservation already exists for post {post_id}", post_id=post_id)

    result = session.execute(
        update(User)
        .where(
            User.id == user_id,
            User.credit_balance - User.reserved_credits >= amount,
        )
        .values(reserved_credits=User.reserved_credits + amount, updated_at=reference)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        user = _load_user(session, user_id)
        available = max(0, int(user.credit_balance) - int(user.reserved_credits))
        raise InsufficientCredits(required=amount, available=available)

    reservation = CreditReservation(
        user_id=user_id,
        post_id=post_id,
        amount=amount,
        status=RESERVATION_ACTIVE,
        expires_at=expiry,
    )
    session.add(reservation)
    try:
        _finish(session, commit)
    except IntegrityError as exc:
        session.rollback()
        raise DuplicateReservation(
            f"An active reservation already exists for post {post_id}",
            post_id=post_id,
        ) from exc

    logger.info("credits_reserved", user_id=user_id, post_id=post_id, amount=amount)
    return reservation


def consume_reservation(
    session: Session,
    *,
    post_id: str,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> CreditReservation:
    """Turn the post's active hold into a permanent debit."""

    reference = ensure_utc(now) if now is not None else utc_now()
    reservation = get_active_reservation(session, post_id=post_id)
    if reservation is None or not _settle(
        session,
        reservation.id,
        new_status=RESERVATION_CONSUMED,
        settled_at=reference,
    ):
        raise NoActiveReservation(f"No active reservation for post {post_id}", post_id=post_id)

    amount = int(reservation.amount)
    session.execute(
        update(User)
        .where(User.id == reservation.user_id)
        .values(
            credit_balance=User.credit_balance - amount,
            reserved_credits=User.reserved_credits - amount,
            updated_at=reference,
        )
        .execution_options(synchronize_session=False)
    )
    _record_transaction(
        session,
        user_id=reservation.user_id,
        kind=TX_CONSUME,
        amount=-amount,
        reason="Scheduled post published",
        post_id=post_id,
    )
    _finish(session, commit)
    session.refresh(reservation)

    logger.info("credit_reservation_consumed", user_id=reservation.user_id, post_id=post_id, amount=amount)
    return reservation


def release_reservation(
    session: Session,
    *,
    post_id: str,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> bool:
    """Drop the post's hold without touching the balance; no-op when nothing is active."""

    reference = ensure_utc(now) if now is not None else utc_now()
    reservation = get_active_reservation(session, post_id=post_id)
    if reservation is None:
        return False
    if not _settle(session, reservation.id, new_status=RESERVATION_RELEASED, settled_at=reference):
        return False

    _unreserve(session, user_id=reservation.user_id, amount=int(reservation.amount))
    _finish(session, commit)
    logger.info(
        "credit_reservation_released",
        user_id=reservation.user_id,
        post_id=post_id,
        amount=int(reservation.amount),
    )
    return True


def add_credits(
    session: Session,
    *,
    user_id: str,
    amount: int,
    reason: str = "",
    commit: bool = True,
) -> int:
    _require_positive(amount)
    _load_user(session, user_id)
    session.execute(
        update(User)
        .where(User.id == user_id)
        .values(credit_balance=User.credit_balance + amount, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    entry = _record_transaction(session, user_id=user_id, kind=TX_ADD, amount=amount, reason=reason)
    _finish(session, commit)
    logger.info("credits_added", user_id=user_id, amount=amount, reason=reason)
    return entry.balance_after


def deduct_credits(
    session: Session,
    *,
    user_id: str,
    amount: int,
    reason: str = "",
    post_id: Optional[str] = None,
    commit: bool = True,
) -> int:
    """Debit unreserved credits directly; returns the new balance.

    Overdue holds are expired first so the check agrees with ``get_available_credits``.
    """

    _require_positive(amount)
    _load_user(session, user_id)
    release_expired_reservations(session, user_id=user_id, commit=False)
    result = session.execute(
        update(User)
        .where(
            User.id == user_id,
            User.credit_balance - User.reserved_credits >= amount,
        )
        .values(credit_balance=User.credit_balance - amount, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        user = _load_user(session, user_id)
        raise InsufficientCredits(
            required=amount,
            available=max(0, int(user.credit_balance) - int(user.reserved_credits)),
        )

    entry = _record_transaction(
        session,
        user_id=user_id,
        kind=TX_DEDUCT,
        amount=-amount,
        reason=reason,
        post_id=post_id,
    )
    _finish(session, commit)
    logger.info("credits_deducted", user_id=user_id, amount=amount, reason=reason, post_id=post_id)
    return entry.balance_after


def reset_monthly_credits(
    session: Session,
    *,
    user_id: str,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> MonthlyResetResult:
    """Grant the tier allocation plus capped carry-over; never drops below outstanding holds."""

    reference = ensure_utc(now) if now is not None else utc_now()
    user = session.scalar(
        select(User).where(User.id == user_id).with_for_update().execution_options(populate_existing=True)
    )
    if user is None:
        raise UserNotFound(f"User not found: {user_id}", user_id=user_id)

    limits = get_tier_limits(user.tier)
    previous = int(user.credit_balance)
    carried_over = min(previous, limits.max_credit_carryover)
    new_balance = max(limits.monthly_credits + carried_over, int(user.reserved_credits))

    user.credit_balance = new_balance
    user.last_credit_reset_at = reference
    user.updated_at = reference
    session.flush()
    _record_transaction(
        session,
        user_id=user_id,
        kind=TX_MONTHLY_RESET,
        amount=new_balance - previous,
        reason=f"Monthly {user.tier} allocation",
    )
    _finish(session, commit)

    logger.info(
        "monthly_credits_reset",
        user_id=user_id,
        tier=user.tier,
        previous_balance=previous,
        carried_over=carried_over,
        new_balance=new_balance,
    )
    return MonthlyResetResult(
        user_id=user_id,
        tier=user.tier,
        previous_balance=previous,
        carried_over=carried_over,
        allocated=limits.monthly_credits,
        new_balance=new_balance,
    )

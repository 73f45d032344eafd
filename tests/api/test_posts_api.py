from __future__ import annotations

from datetime import timedelta

from sqlalchemy import select

from postflow.core.clock import utc_now
from postflow.storage.models import CreditReservation, Post, User
from tests.api.conftest import (
    FakePublisher,
    connect_account,
    create_api_test_context,
    issue_token,
    seed_user,
    teardown_api_test_context,
)


def _create_draft(context, *, platform: str = "twitter", content: str = "Launch day thread") -> str:
    response = context.client.post(
        "/posts",
        json={"platform": platform, "content": content},
        headers=context.headers(),
    )
    assert response.status_code == 201
    assert response.json()["status"] == "draft"
    return response.json()["id"]


def test_schedule_post_reserves_credit_and_emits_event(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch, balance=10)
    try:
        post_id = _create_draft(context)
        scheduled_date = utc_now() + timedelta(days=1)

        response = context.client.post(
            "/posts/schedule",
            json={"post_id": post_id, "scheduled_date": scheduled_date.isoformat()},
            headers=context.headers(),
        )

        assert response.status_code == 200
        payload = response.json()
        assert payload["post"]["status"] == "scheduled"
        assert payload["credits_reserved"] == 1
        assert payload["credits_available"] == 9
        assert payload["queue_position"] == 1
        assert payload["queue_limit"] == 5

        assert len(context.event_sender.events) == 1
        event_name, event_payload = context.event_sender.events[0]
        assert event_name == "post/scheduled.process"
        assert event_payload["post_id"] == post_id
        assert event_payload["user_id"] == context.user_id

        with context.session_factory() as session:
            user = session.scalar(select(User).where(User.id == context.user_id))
            assert user.credit_balance == 10
            assert user.reserved_credits == 1
            reservation = session.scalar(select(CreditReservation).where(CreditReservation.post_id == post_id))
            assert reservation.status == "active"
    finally:
        teardown_api_test_context()


def test_scheduling_a_scheduled_post_again_is_a_conflict(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch)
    try:
        post_id = _create_draft(context)
        body = {"post_id": post_id, "scheduled_date": (utc_now() + timedelta(hours=3)).isoformat()}
        assert context.client.post("/posts/schedule", json=body, headers=context.headers()).status_code == 200

        response = context.client.post("/posts/schedule", json=body, headers=context.headers())

        assert response.status_code == 409
        assert response.json()["error"] == "invalid_transition"
        with context.session_factory() as session:
            reservations = session.scalars(
                select(CreditReservation).where(CreditReservation.post_id == post_id)
            ).all()
            assert len(reservations) == 1
    finally:
        teardown_api_test_context()


def test_schedule_without_available_credits_returns_402(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch, balance=0)
    try:
        post_id = _create_draft(context)
        response = context.client.post(
            "/posts/schedule",
            json={"post_id": post_id, "scheduled_date": (utc_now() + timedelta(days=1)).isoformat()},
            headers=context.headers(),
        )

        assert response.status_code == 402
        payload = response.json()
        assert payload["error"] == "insufficient_credits"
        assert payload["required"] == 1
        assert payload["available"] == 0
        assert context.event_sender.events == []
    finally:
        teardown_api_test_context()


def test_schedule_beyond_advance_window_is_rejected(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch, tier="free")
    try:
        post_id = _create_draft(context)
        response = context.client.post(
            "/posts/schedule",
            json={"post_id": post_id, "scheduled_date": (utc_now() + timedelta(days=10)).isoformat()},
            headers=context.headers(),
        )

        assert response.status_code == 403
        payload = response.json()
        assert payload["error"] == "advance_window_exceeded"
        assert payload["limit"] == 7
    finally:
        teardown_api_test_context()


def test_schedule_in_the_past_is_a_validation_error(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch)
    try:
        post_id = _create_draft(context)
        response = context.client.post(
            "/posts/schedule",
            json={"post_id": post_id, "scheduled_date": (utc_now() - timedelta(minutes=5)).isoformat()},
            headers=context.headers(),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "validation_failed"
    finally:
        teardown_api_test_context()


def test_cancel_scheduled_post_releases_the_hold(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch)
    try:
        post_id = _create_draft(context)
        context.client.post(
            "/posts/schedule",
            json={"post_id": post_id, "scheduled_date": (utc_now() + timedelta(days=2)).isoformat()},
            headers=context.headers(),
        )

        response = context.client.delete(f"/posts/{post_id}/schedule", headers=context.headers())

        assert response.status_code == 200
        assert response.json() == {"post_id": post_id, "cancelled": True, "credits_released": True}
        with context.session_factory() as session:
            assert session.scalar(select(Post).where(Post.id == post_id)) is None
            user = session.scalar(select(User).where(User.id == context.user_id))
            assert user.reserved_credits == 0
            assert user.credit_balance == 10
    finally:
        teardown_api_test_context()


def test_publish_now_reports_partial_success_and_charges_only_successes(monkeypatch) -> None:
    publishers = [
        FakePublisher("facebook"),
        FakePublisher("twitter", error="twitter api unavailable"),
        FakePublisher("linkedin"),
    ]
    context = create_api_test_context(monkeypatch, balance=10, publishers=publishers)
    try:
        for platform in ("facebook", "twitter", "linkedin"):
            connect_account(context.session_factory, user_id=context.user_id, platform=platform)

        response = context.client.post(
            "/posts/publish",
            json={"platforms": ["facebook", "twitter", "linkedin"], "content": "We just shipped v2"},
            headers=context.headers(),
        )

        assert response.status_code == 200
        payload = response.json()
        assert payload["status"] == "partial"
        assert payload["credits_deducted"] == 2
        assert payload["credits_remaining"] == 8
        by_platform = {item["platform"]: item for item in payload["results"]}
        assert by_platform["facebook"]["success"] is True
        assert by_platform["linkedin"]["success"] is True
        assert by_platform["twitter"]["success"] is False
        assert "twitter api unavailable" in by_platform["twitter"]["error"]

        with context.session_factory() as session:
            statuses = {
                post.platform: post.status
                for post in session.scalars(select(Post).where(Post.user_id == context.user_id)).all()
            }
            assert statuses == {"facebook": "posted", "twitter": "failed", "linkedin": "posted"}
    finally:
        teardown_api_test_context()


def test_publish_now_with_no_successful_platform_returns_502(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch, balance=10)
    try:
        response = context.client.post(
            "/posts/publish",
            json={"platforms": ["twitter"], "content": "Nobody is connected"},
            headers=context.headers(),
        )

        assert response.status_code == 502
        payload = response.json()
        assert payload["status"] == "failed"
        assert payload["credits_deducted"] == 0
        assert payload["credits_remaining"] == 10
        assert payload["results"][0]["error"] == "No connected twitter account"
    finally:
        teardown_api_test_context()


def test_publish_now_requires_an_image_for_instagram(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch)
    try:
        response = context.client.post(
            "/posts/publish",
            json={"platforms": ["instagram"], "content": "Picture this"},
            headers=context.headers(),
        )

        assert response.status_code == 400
        assert response.json()["field"] == "image_url"
    finally:
        teardown_api_test_context()


def test_another_users_post_cannot_be_scheduled(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch)
    try:
        post_id = _create_draft(context)
        intruder_email = "intruder@example.com"
        intruder_id = seed_user(context.session_factory, email=intruder_email)
        intruder_token = issue_token(intruder_id, intruder_email)

        response = context.client.post(
            "/posts/schedule",
            json={"post_id": post_id, "scheduled_date": (utc_now() + timedelta(days=1)).isoformat()},
            headers=context.headers(intruder_token),
        )

        assert response.status_code == 403
        assert response.json()["error"] == "post_not_owned"
    finally:
        teardown_api_test_context()


def test_posts_endpoints_require_authentication(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch)
    try:
        assert context.client.get("/posts").status_code == 401
        assert context.client.get("/posts", headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401
    finally:
        teardown_api_test_context()


def test_list_posts_filters_by_status(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch)
    try:
        scheduled_id = _create_draft(context, content="first")
        _create_draft(context, content="second")
        context.client.post(
            "/posts/schedule",
            json={"post_id": scheduled_id, "scheduled_date": (utc_now() + timedelta(days=1)).isoformat()},
            headers=context.headers(),
        )

        response = context.client.get("/posts", params={"status": "scheduled"}, headers=context.headers())

        assert response.status_code == 200
        assert [item["id"] for item in response.json()] == [scheduled_id]
        assert len(context.client.get("/posts", headers=context.headers()).json()) == 2
    finally:
        teardown_api_test_context()

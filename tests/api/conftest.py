from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional
import uuid

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import postflow.api.main as api_main
from postflow.api.dependencies import (
    get_event_sender,
    get_generator,
    get_job_session_factory,
    get_lock_manager,
    get_oauth,
    get_publishers,
)
from postflow.auth.jwt import AuthContext, create_access_token
from postflow.channels.base import PlatformPublishResult, PublisherRegistry
from postflow.connections.relay import AccountProfile, OAuthTokens
from postflow.core.config import get_settings
from postflow.core.errors import EventEmitError
from postflow.jobs.locks import RedisLockManager
from postflow.storage.db import Base, get_session, load_models
from postflow.storage.models import ConnectedAccount, User
from postflow.storage.security import encrypt_token, get_token_key


CRON_SECRET = "cron-secret-for-tests"
JOB_RUNNER_SECRET = "job-runner-secret-for-tests"


class FakeRedis:
    def __init__(self) -> None:
        self._store: Dict[str, str] = {}

    def set(self, key: str, value: str, nx: bool = False, ex: int | None = None):
        del ex
        if nx and key in self._store:
            return False
        self._store[key] = str(value)
        return True

    def get(self, key: str):
        return self._store.get(key)

    def eval(self, script: str, numkeys: int, key: str, token: str):
        del script, numkeys
        if self._store.get(key) == token:
            self._store.pop(key, None)
            return 1
        return 0


class RecordingEventSender:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.events: List[tuple[str, dict]] = []
        self.deliver_at: List[Optional[datetime]] = []

    def send(self, event_name: str, payload, *, deliver_at: Optional[datetime] = None) -> str:
        if self.fail:
            raise EventEmitError("event queue unavailable")
        self.events.append((event_name, dict(payload)))
        self.deliver_at.append(deliver_at)
        return f"evt-{len(self.events)}"


class FakePublisher:
    def __init__(self, platform: str, *, error: Optional[str] = None) -> None:
        self.platform = platform
        self.error = error
        self.published: List[str] = []

    def publish(self, account, content) -> PlatformPublishResult:
        del account
        if self.error:
            raise RuntimeError(self.error)
        self.published.append(content.text)
        post_id = f"{self.platform}-{len(self.published)}"
        return PlatformPublishResult(
            success=True,
            platform_post_id=post_id,
            post_url=f"https://{self.platform}.example/{post_id}",
        )

    def revoke_token(self, token: str) -> None:
        del token


class FakeGenerator:
    def __init__(self, text: str = "Generated post about the topic") -> None:
        self.text = text
        self.calls = 0

    def generate_content(self, *, topic, platform, tone, language, options=None) -> str:
        del topic, platform, tone, language, options
        self.calls += 1
        return self.text


class FakeOAuthProvider:
    def __init__(self) -> None:
        self.revoked: List[str] = []

    def authorization_url(self, *, platform: str, state: str, redirect_uri: str) -> str:
        return f"https://oauth.example/{platform}/authorize?state={state}&redirect_uri={redirect_uri}"

    def exchange_code_for_token(self, *, platform: str, code: str, redirect_uri: str) -> OAuthTokens:
        del redirect_uri
        return OAuthTokens(access_token=f"{platform}-token-{code}", refresh_token="refresh", expires_in=3600)

    def get_user_profile(self, *, platform: str, access_token: str) -> AccountProfile:
        del access_token
        return AccountProfile(external_account_id=f"{platform}-account-1", account_name="Acme")

    def revoke_token(self, *, platform: str, token: str) -> None:
        del platform
        self.revoked.append(token)


@dataclass
class ApiTestContext:
    client: TestClient
    session_factory: sessionmaker
    user_id: str
    email: str
    access_token: str
    event_sender: RecordingEventSender
    publishers: PublisherRegistry
    generator: FakeGenerator
    oauth: FakeOAuthProvider
    fake_redis: FakeRedis
    extra_tokens: Dict[str, str] = field(default_factory=dict)

    def headers(self, token: Optional[str] = None) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token or self.access_token}"}


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


def seed_user(
    session_factory: sessionmaker,
    *,
    email: str,
    tier: str = "free",
    balance: int = 10,
) -> str:
    with session_factory() as session:
        user = User(id=str(uuid.uuid4()), email=email, tier=tier, credit_balance=balance, reserved_credits=0)
        session.add(user)
        session.commit()
        return user.id


def connect_account(session_factory: sessionmaker, *, user_id: str, platform: str) -> None:
    with session_factory() as session:
        session.add(
            ConnectedAccount(
                user_id=user_id,
                platform=platform,
                external_account_id=f"{platform}-{uuid.uuid4()}",
                account_name=f"{platform} page",
                access_token_encrypted=encrypt_token(f"{platform}-access-token"),
                is_active=True,
            )
        )
        session.commit()


def issue_token(user_id: str, email: str) -> str:
    token, _ = create_access_token(AuthContext(user_id=user_id, email=email))
    return token


def create_api_test_context(
    monkeypatch,
    *,
    tier: str = "free",
    balance: int = 10,
    admin: bool = False,
    publishers: Optional[List[FakePublisher]] = None,
    event_sender: Optional[RecordingEventSender] = None,
) -> ApiTestContext:
    email = f"owner-{uuid.uuid4()}@example.com"

    monkeypatch.setenv("SECRET_KEY", "api-test-secret-key-0123456789abcdef")
    monkeypatch.setenv("TOKEN_ENCRYPTION_KEY", "api-test-token-key")
    monkeypatch.setenv("ADMIN_EMAILS", email if admin else "")
    monkeypatch.setenv("ADMIN_EMAIL_DOMAIN", "")
    monkeypatch.setenv("CRON_SECRET", CRON_SECRET)
    monkeypatch.setenv("JOB_RUNNER_SECRET", JOB_RUNNER_SECRET)
    get_settings.cache_clear()
    get_token_key.cache_clear()

    session_factory = _build_sqlite_session_factory()
    fake_redis = FakeRedis()
    sender = event_sender or RecordingEventSender()
    registry = PublisherRegistry(
        publishers
        if publishers is not None
        else [FakePublisher(platform) for platform in ("facebook", "instagram", "twitter", "linkedin")]
    )
    generator = FakeGenerator()
    oauth = FakeOAuthProvider()

    def override_get_session():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    api_main.app.dependency_overrides[get_session] = override_get_session
    api_main.app.dependency_overrides[get_event_sender] = lambda: sender
    api_main.app.dependency_overrides[get_publishers] = lambda: registry
    api_main.app.dependency_overrides[get_generator] = lambda: generator
    api_main.app.dependency_overrides[get_oauth] = lambda: oauth
    api_main.app.dependency_overrides[get_lock_manager] = lambda: RedisLockManager(fake_redis)
    api_main.app.dependency_overrides[get_job_session_factory] = lambda: session_factory

    user_id = seed_user(session_factory, email=email, tier=tier, balance=balance)
    return ApiTestContext(
        client=TestClient(api_main.app),
        session_factory=session_factory,
        user_id=user_id,
        email=email,
        access_token=issue_token(user_id, email),
        event_sender=sender,
        publishers=registry,
        generator=generator,
        oauth=oauth,
        fake_redis=fake_redis,
    )


def teardown_api_test_context() -> None:
    api_main.app.dependency_overrides.clear()
    api_main.app.state.state_store.clear()
    get_settings.cache_clear()
    get_token_key.cache_clear()

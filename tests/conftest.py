"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database engine and session factory (in-memory SQLite)
- Storage, queue and ingestion services wired like the app does
- Signed request builders for each provider
"""
# Settings are read at import time; point them at SQLite and test secrets first
import os
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("GITHUB_WEBHOOK_SECRET", "github-test-secret")
os.environ.setdefault("LINEAR_WEBHOOK_SECRET", "linear-test-secret")
os.environ.setdefault("SLACK_SIGNING_SECRET", "slack-test-secret")
os.environ.setdefault("HEALTH_CHECK_BROKER", "false")

import json
import time
import uuid
from typing import Any

import pytest

from webhook_gateway.core.config import Settings
from webhook_gateway.db import models  # noqa: F401
from webhook_gateway.db.database import Base, build_engine, build_session_factory
from webhook_gateway.domain.events import Source
from webhook_gateway.domain.services.signature_service import generate_signature
from webhook_gateway.domain.services.storage_service import EventStorageService

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

GITHUB_SECRET = "github-test-secret"
LINEAR_SECRET = "linear-test-secret"
SLACK_SECRET = "slack-test-secret"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = build_engine(TEST_DATABASE_URL)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine):
    return build_session_factory(async_engine)


@pytest.fixture
def store(session_factory) -> EventStorageService:
    return EventStorageService(
        session_factory,
        retry_enabled=True,
        max_retries=3,
        retry_base_seconds=0.5,
        retry_max_backoff_seconds=3600.0,
        chunk_size=100,
    )


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        DATABASE_URL=TEST_DATABASE_URL,
        GITHUB_WEBHOOK_SECRET=GITHUB_SECRET,
        LINEAR_WEBHOOK_SECRET=LINEAR_SECRET,
        SLACK_SIGNING_SECRET=SLACK_SECRET,
        ENABLE_BATCHING=False,
        HEALTH_CHECK_BROKER=False,
        WEBHOOK_RATE_LIMIT_MAX_REQUESTS=1000,
    )


# ============================================================================
# Provider payloads and signed requests
# ============================================================================

def github_push_payload(after: str = "9f8e7d6c5b4a39281706f5e4d3c2b1a098765432") -> dict[str, Any]:
    return {
        "ref": "refs/heads/main",
        "before": "0123456789abcdef0123456789abcdef01234567",
        "after": after,
        "created": False,
        "deleted": False,
        "forced": False,
        "compare": "https://github.com/acme/widgets/compare/0123456789ab...9f8e7d6c5b4a",
        "commits": [
            {
                "id": after,
                "message": "Fix flaky widget test",
                "timestamp": "2026-03-01T10:15:00Z",
                "author": {"name": "Dana", "email": "dana@example.com"},
            }
        ],
        "head_commit": {
            "id": after,
            "message": "Fix flaky widget test",
            "timestamp": "2026-03-01T10:15:00Z",
        },
        "repository": {
            "id": 1296269,
            "name": "widgets",
            "full_name": "acme/widgets",
            "owner": {"login": "acme", "id": 42},
        },
        "organization": {"login": "acme", "id": 42},
        "sender": {"login": "dana", "id": 7, "type": "User"},
    }


def linear_issue_payload(action: str = "create") -> dict[str, Any]:
    return {
        "action": action,
        "type": "Issue",
        "createdAt": "2026-03-01T09:00:00.000Z",
        "organizationId": "org-1",
        "webhookId": "hook-1",
        "webhookTimestamp": 1772355600000,
        "url": "https://linear.app/acme/issue/ENG-12",
        "actor": {"id": "user-1", "name": "Robin", "email": "robin@example.com", "type": "user"},
        "data": {
            "id": "issue-12",
            "identifier": "ENG-12",
            "title": "Webhook retries pile up",
            "number": 12,
            "priority": 2,
            "team": {"id": "team-1", "key": "ENG", "name": "Engineering"},
            "state": {"name": "Todo"},
            "updatedAt": "2026-03-01T09:00:00.000Z",
        },
    }


def slack_message_payload(event_id: str = "Ev0001") -> dict[str, Any]:
    return {
        "token": "verification-token",
        "team_id": "T123",
        "api_app_id": "A123",
        "type": "event_callback",
        "event_id": event_id,
        "event_time": 1772355600,
        "event": {
            "type": "message",
            "user": "U123",
            "text": "deploy is done <@U456> see <https://ci.example.com/1|build>",
            "ts": "1772355600.000100",
            "channel": "C123",
            "channel_type": "channel",
        },
    }


def github_request(
    payload: dict[str, Any],
    *,
    event: str = "push",
    delivery: str | None = None,
    secret: str = GITHUB_SECRET,
) -> tuple[bytes, dict[str, str]]:
    body = json.dumps(payload).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "X-GitHub-Event": event,
        "X-GitHub-Delivery": delivery or str(uuid.uuid4()),
        "X-Hub-Signature-256": generate_signature(Source.GITHUB, secret, body),
    }
    return body, headers


def linear_request(
    payload: dict[str, Any],
    *,
    delivery: str | None = None,
    secret: str = LINEAR_SECRET,
) -> tuple[bytes, dict[str, str]]:
    body = json.dumps(payload).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "Linear-Event": payload.get("type", "Issue"),
        "Linear-Delivery": delivery or str(uuid.uuid4()),
        "Linear-Signature": generate_signature(Source.LINEAR, secret, body),
    }
    return body, headers


def slack_request(
    payload: dict[str, Any] | None = None,
    *,
    body: bytes | None = None,
    content_type: str = "application/json",
    timestamp: int | None = None,
    secret: str = SLACK_SECRET,
) -> tuple[bytes, dict[str, str]]:
    if body is None:
        body = json.dumps(payload).encode("utf-8")
    ts = str(timestamp if timestamp is not None else int(time.time()))
    headers = {
        "Content-Type": content_type,
        "X-Slack-Request-Timestamp": ts,
        "X-Slack-Signature": generate_signature(Source.SLACK, secret, body, timestamp=ts),
    }
    return body, headers

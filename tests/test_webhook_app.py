from __future__ import annotations

import json
from typing import Any

import pytest
from aiohttp import test_utils

from agentrelay.db.database import Database
from agentrelay.models.audit import AuditEvent, AuditStatus
from agentrelay.models.project import Project
from agentrelay.services.audit import AuditLog
from agentrelay.services.work_queue import WorkQueue
from agentrelay.webhooks.app import WebhookApp
from agentrelay.webhooks.rate_limit import FixedWindowRateLimiter
from agentrelay.webhooks.reconciler import Reconciler
from agentrelay.webhooks.verifier import sign

PATH = "/webhooks/github"

ISSUE_OPENED = {
    "action": "opened",
    "issue": {"number": 12, "title": "Broken build", "labels": [{"name": "bug"}]},
}


@pytest.fixture
def reconciler(db: Database, work_queue: WorkQueue, tracker, agents) -> Reconciler:
    return Reconciler(db, work_queue, tracker, agents)


@pytest.fixture
def webhook_app(db: Database, reconciler: Reconciler, audit: AuditLog) -> WebhookApp:
    return WebhookApp(db, reconciler, audit, path=PATH)


@pytest.fixture
async def client(webhook_app: WebhookApp):
    async with test_utils.TestClient(test_utils.TestServer(webhook_app.build())) as client:
        yield client


def delivery(
    payload: dict[str, Any] | bytes,
    secret: str | None,
    *,
    event: str = "issues",
    delivery_id: str = "delivery-1",
) -> tuple[bytes, dict[str, str]]:
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    headers = {
        "Content-Type": "application/json",
        "X-GitHub-Event": event,
        "X-GitHub-Delivery": delivery_id,
    }
    if secret is not None:
        headers["X-Hub-Signature-256"] = sign(body, secret)
    return body, headers


@pytest.mark.asyncio
class TestWebhookEndpoint:
    async def test_valid_delivery_is_reconciled(
        self,
        client: test_utils.TestClient,
        project: Project,
        work_queue: WorkQueue,
        audit: AuditLog,
    ) -> None:
        body, headers = delivery(ISSUE_OPENED, project.webhook_secret)

        resp = await client.post(PATH, data=body, headers=headers)

        assert resp.status == 202
        data = await resp.json()
        assert data["status"] == "accepted"
        assert resp.headers["X-RateLimit-Limit"] == "100"
        assert await work_queue.find_by_issue(project.id, 12) is not None  # type: ignore[arg-type]
        received = await audit.recent(AuditEvent.WEBHOOK_RECEIVED)
        assert received[0].project_id == project.id

    async def test_duplicate_delivery_processed_once(
        self,
        client: test_utils.TestClient,
        project: Project,
        db: Database,
        work_queue: WorkQueue,
        audit: AuditLog,
    ) -> None:
        body, headers = delivery(ISSUE_OPENED, project.webhook_secret)

        first = await client.post(PATH, data=body, headers=headers)
        second = await client.post(PATH, data=body, headers=headers)

        assert (first.status, second.status) == (202, 202)
        assert (await second.json())["status"] == "duplicate"
        assert await db.count_webhook_events() == 1
        assert len(await work_queue.list_items()) == 1
        assert len(await audit.recent(AuditEvent.WEBHOOK_DUPLICATE)) == 1

    async def test_tampered_body_is_rejected(
        self, client: test_utils.TestClient, project: Project, db: Database, audit: AuditLog
    ) -> None:
        body, headers = delivery(ISSUE_OPENED, project.webhook_secret)
        tampered = body.replace(b"Broken build", b"Broken buildX")

        resp = await client.post(PATH, data=tampered, headers=headers)

        assert resp.status == 401
        assert await db.count_webhook_events() == 0
        blocked = await audit.recent(AuditEvent.WEBHOOK_INVALID_SIGNATURE)
        assert len(blocked) == 1
        assert blocked[0].status is AuditStatus.BLOCKED

    async def test_missing_signature(
        self, client: test_utils.TestClient, project: Project, audit: AuditLog
    ) -> None:
        body, headers = delivery(ISSUE_OPENED, None)
        resp = await client.post(PATH, data=body, headers=headers)
        assert resp.status == 401
        assert len(await audit.recent(AuditEvent.WEBHOOK_MISSING_SIGNATURE)) == 1

    async def test_missing_headers(self, client: test_utils.TestClient, project: Project) -> None:
        body, headers = delivery(ISSUE_OPENED, project.webhook_secret)
        del headers["X-GitHub-Delivery"]
        resp = await client.post(PATH, data=body, headers=headers)
        assert resp.status == 400

    async def test_unsupported_event(
        self, client: test_utils.TestClient, project: Project, db: Database
    ) -> None:
        body, headers = delivery({"action": "created"}, project.webhook_secret, event="star")
        resp = await client.post(PATH, data=body, headers=headers)
        assert resp.status == 400
        assert "Unsupported event type" in (await resp.json())["error"]
        assert await db.count_webhook_events() == 0

    @pytest.mark.parametrize(
        "payload",
        [b"not json", b"[1, 2]", json.dumps({"action": "opened"}).encode()],
    )
    async def test_malformed_payload(
        self, client: test_utils.TestClient, project: Project, db: Database, payload: bytes
    ) -> None:
        body, headers = delivery(payload, project.webhook_secret)
        resp = await client.post(PATH, data=body, headers=headers)
        assert resp.status == 400
        assert await db.count_webhook_events() == 0

    async def test_processing_error_allows_redelivery(
        self,
        client: test_utils.TestClient,
        project: Project,
        db: Database,
        reconciler: Reconciler,
        audit: AuditLog,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        async def broken(*args: Any) -> str:
            raise RuntimeError("database on fire")

        monkeypatch.setattr(reconciler, "reconcile", broken)
        body, headers = delivery(ISSUE_OPENED, project.webhook_secret)

        resp = await client.post(PATH, data=body, headers=headers)

        assert resp.status == 500
        assert "database on fire" not in await resp.text()
        assert await db.count_webhook_events() == 0
        assert len(await audit.recent(AuditEvent.WEBHOOK_ERROR)) == 1

        monkeypatch.undo()
        retry = await client.post(PATH, data=body, headers=headers)
        assert retry.status == 202
        assert (await retry.json())["status"] == "accepted"

    async def test_health(self, client: test_utils.TestClient) -> None:
        resp = await client.get("/health")
        assert resp.status == 200
        assert (await resp.json())["status"] == "healthy"
        assert "X-RateLimit-Limit" not in resp.headers


@pytest.mark.asyncio
async def test_rate_limit_returns_429(
    db: Database, reconciler: Reconciler, audit: AuditLog, project: Project
) -> None:
    app = WebhookApp(
        db, reconciler, audit, path=PATH, limiter=FixedWindowRateLimiter(limit=2, window_seconds=60)
    )
    async with test_utils.TestClient(test_utils.TestServer(app.build())) as client:
        statuses = []
        for i in range(3):
            body, headers = delivery(
                {"zen": "hi", "hook_id": 1},
                project.webhook_secret,
                event="ping",
                delivery_id=f"ping-{i}",
            )
            resp = await client.post(PATH, data=body, headers=headers)
            statuses.append(resp.status)

        assert statuses == [202, 202, 429]
        assert resp.headers["X-RateLimit-Remaining"] == "0"
        assert "Retry-After" in resp.headers
    assert len(await audit.recent(AuditEvent.WEBHOOK_RATE_LIMITED)) == 1

"""aiohttp endpoint that receives hosting webhooks."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable

from aiohttp import web
from pydantic import ValidationError

from agentrelay.db.database import Database
from agentrelay.models.audit import AuditEvent, AuditStatus
from agentrelay.services.audit import AuditLog
from agentrelay.utils.clock import utc_now
from agentrelay.webhooks.events import SUPPORTED_EVENTS, parse_event
from agentrelay.webhooks.rate_limit import FixedWindowRateLimiter
from agentrelay.webhooks.reconciler import Reconciler
from agentrelay.webhooks.verifier import find_project_by_signature

logger = logging.getLogger(__name__)

HEADER_EVENT = "X-GitHub-Event"
HEADER_DELIVERY = "X-GitHub-Delivery"
HEADER_SIGNATURE = "X-Hub-Signature-256"

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


class WebhookApp:
    """Builds the web application and holds what its handlers need.

    Status codes: 202 processed or duplicate, 400 malformed, 401 bad
    signature, 429 throttled, 500 processing error. Every outcome is
    written to the audit log.
    """

    def __init__(
        self,
        db: Database,
        reconciler: Reconciler,
        audit: AuditLog,
        *,
        path: str = "/webhooks/github",
        limiter: FixedWindowRateLimiter | None = None,
    ):
        self.db = db
        self.reconciler = reconciler
        self.audit = audit
        self.path = path
        self.limiter = limiter or FixedWindowRateLimiter()

    def build(self) -> web.Application:
        app = web.Application(middlewares=[self._rate_limit])
        app.router.add_post(self.path, self._handle_webhook)
        app.router.add_get("/health", self._handle_health)
        return app

    async def serve(self, host: str, port: int, stop_event: asyncio.Event) -> None:
        runner = web.AppRunner(self.build())
        await runner.setup()
        site = web.TCPSite(runner, host, port)
        await site.start()
        logger.info("Webhook endpoint listening on http://%s:%d%s", host, port, self.path)
        try:
            await stop_event.wait()
        finally:
            await runner.cleanup()
            logger.info("Webhook endpoint stopped")

    # ------------------------------------------------------------------
    # Middleware
    # ------------------------------------------------------------------

    @web.middleware
    async def _rate_limit(self, request: web.Request, handler: Handler) -> web.StreamResponse:
        if request.path != self.path:
            return await handler(request)

        client = request.remote or "unknown"
        decision = self.limiter.hit(client)
        if not decision.allowed:
            logger.warning("Rate limit exceeded for %s", client)
            await self.audit.record(
                AuditEvent.WEBHOOK_RATE_LIMITED,
                AuditStatus.BLOCKED,
                ip_address=client,
                request_id=request.headers.get(HEADER_DELIVERY),
            )
            return web.json_response(
                {"status": "error", "error": "Rate limit exceeded"},
                status=429,
                headers=decision.headers(),
            )

        response = await handler(request)
        response.headers.update(decision.headers())
        return response

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_webhook(self, request: web.Request) -> web.Response:
        body = await request.read()
        client = request.remote
        event_type = request.headers.get(HEADER_EVENT)
        delivery_id = request.headers.get(HEADER_DELIVERY)
        signature = request.headers.get(HEADER_SIGNATURE)
        audit: dict[str, Any] = {"ip_address": client, "request_id": delivery_id}

        if not event_type or not delivery_id:
            await self.audit.record(
                AuditEvent.WEBHOOK_REJECTED, AuditStatus.FAILED, payload=body, **audit
            )
            return _error(400, f"Missing {HEADER_EVENT} or {HEADER_DELIVERY} header")

        if not signature:
            await self.audit.record(
                AuditEvent.WEBHOOK_MISSING_SIGNATURE, AuditStatus.BLOCKED, payload=body, **audit
            )
            return _error(401, "Missing signature")

        project = await find_project_by_signature(self.db, body, signature)
        if project is None:
            await self.audit.record(
                AuditEvent.WEBHOOK_INVALID_SIGNATURE, AuditStatus.BLOCKED, payload=body, **audit
            )
            return _error(401, "Invalid signature")
        audit["project_id"] = project.id

        if event_type not in SUPPORTED_EVENTS:
            await self.audit.record(
                AuditEvent.WEBHOOK_REJECTED,
                AuditStatus.FAILED,
                payload={"event": event_type},
                **audit,
            )
            return _error(400, f"Unsupported event type: {event_type}")

        try:
            payload = json.loads(body)
            if not isinstance(payload, dict):
                raise ValueError("payload is not a JSON object")
            event = parse_event(event_type, payload)
        except (ValueError, ValidationError) as exc:
            await self.audit.record(
                AuditEvent.WEBHOOK_REJECTED, AuditStatus.FAILED, payload=body, **audit
            )
            logger.warning("Malformed %s delivery %s: %s", event_type, delivery_id, exc)
            return _error(400, "Malformed payload")

        if not await self.reconciler.record(delivery_id, event_type, payload, project.id):
            await self.audit.record(
                AuditEvent.WEBHOOK_DUPLICATE,
                AuditStatus.SUCCESS,
                payload={"event": event_type},
                **audit,
            )
            logger.info("Duplicate delivery %s ignored", delivery_id)
            return web.json_response({"status": "duplicate"}, status=202)

        try:
            result = await self.reconciler.reconcile(project, event)
        except Exception:
            logger.exception("Failed to process %s delivery %s", event_type, delivery_id)
            await self.reconciler.forget(delivery_id)
            await self.audit.record(
                AuditEvent.WEBHOOK_ERROR, AuditStatus.FAILED, payload=body, **audit
            )
            return _error(500, "Internal server error")

        await self.audit.record(
            AuditEvent.WEBHOOK_RECEIVED,
            AuditStatus.SUCCESS,
            payload={"event": event_type, "result": result},
            **audit,
        )
        logger.info("Delivery %s (%s): %s", delivery_id, event_type, result)
        return web.json_response({"status": "accepted", "result": result}, status=202)

    async def _handle_health(self, request: web.Request) -> web.Response:
        del request
        return web.json_response(
            {"status": "healthy", "timestamp": utc_now().isoformat()}
        )


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"status": "error", "error": message}, status=status)

"""FastAPI transport for GitHub webhooks.

Provides:
    POST /webhook: GitHub delivery endpoint; ``push`` events reach the orchestrator
    GET  /healthz: liveness probe
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Protocol

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request

from patchfix.events import BranchUpdateEvent, parse_push_event
from patchfix.observability import log_event, log_warning_event


LOGGER = logging.getLogger("patchfix.webhook")


class BranchUpdateHandler(Protocol):
    def handle_branch_update(self, event: BranchUpdateEvent) -> int: ...


def verify_signature(secret: str, body: bytes, signature_header: str | None) -> bool:
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(f"sha256={expected}", signature_header)


def _dispatch(handler: BranchUpdateHandler, event: BranchUpdateEvent) -> None:
    try:
        handler.handle_branch_update(event)
    except Exception as exc:  # noqa: BLE001
        log_warning_event(
            LOGGER,
            "branch_update_failed",
            repo_full_name=event.repo.full_name,
            ref=event.ref,
            error_type=type(exc).__name__,
            error=str(exc),
        )


def create_app(handler: BranchUpdateHandler, *, secret: str | None = None) -> FastAPI:
    app = FastAPI(title="patchfix")

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/webhook")
    async def webhook(request: Request, background: BackgroundTasks) -> dict[str, str]:
        body = await request.body()
        if secret and not verify_signature(
            secret, body, request.headers.get("x-hub-signature-256")
        ):
            log_warning_event(LOGGER, "webhook_rejected", reason="bad_signature")
            raise HTTPException(status_code=401, detail="invalid signature")

        event_name = request.headers.get("x-github-event", "")
        delivery = request.headers.get("x-github-delivery", "")
        if event_name != "push":
            log_event(LOGGER, "webhook_ignored", github_event=event_name, delivery=delivery)
            return {"status": "ignored"}

        try:
            payload = json.loads(body)
        except json.JSONDecodeError as exc:
            raise HTTPException(status_code=400, detail="invalid JSON body") from exc
        event = parse_push_event(payload)
        if event is None:
            raise HTTPException(status_code=400, detail="push payload missing ref or repository")

        log_event(
            LOGGER,
            "webhook_accepted",
            delivery=delivery,
            repo_full_name=event.repo.full_name,
            ref=event.ref,
        )
        background.add_task(_dispatch, handler, event)
        return {"status": "accepted"}

    return app

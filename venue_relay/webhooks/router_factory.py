"""
Webhook router factory — the push transport of the inbound queue.

Pipeline for every incoming update:
1. Verify Telegram secret token → 403 if invalid
2. Parse JSON, require integer update_id → 400 otherwise
3. Store the raw body in the inbound queue (duplicate update_id is a no-op)
4. Commit → 200 OK; store unavailable → 503 so Telegram redelivers

No processing happens here: the inbound worker picks the update up later.
"""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from venue_relay.database import get_db, store_errors
from venue_relay.exceptions import StoreUnavailableError
from venue_relay.services.inbound_queue import InboundUpdateQueue
from venue_relay.webhooks.common import require_update_id, verify_secret

logger = logging.getLogger(__name__)


def create_webhook_router(
    path: str,
    webhook_secret: str,
    queue: InboundUpdateQueue,
) -> APIRouter:
    """
    Creates a FastAPI router with POST <path> endpoint.

    Args:
        path: e.g. "/telegram/webhook"
        webhook_secret: expected secret in header
        queue: inbound queue the raw updates are stored in
    """
    router = APIRouter()

    @router.post(path)
    async def webhook_endpoint(request: Request, db: AsyncSession = Depends(get_db)):
        # 1. Verify secret
        verify_secret(request, webhook_secret)

        # 2. Parse envelope
        raw = await request.body()
        try:
            data = json.loads(raw)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON body")
        update_id = require_update_id(data)

        # 3-4. Persist
        try:
            inserted = await queue.enqueue(db, update_id, raw.decode("utf-8"))
            with store_errors("inbound commit"):
                await db.commit()
        except StoreUnavailableError:
            logger.warning("Webhook update %s not stored, store unavailable", update_id)
            raise HTTPException(status_code=503, detail="Store unavailable")

        if inserted:
            logger.debug("Webhook update %s stored", update_id)
        return {"ok": True}

    return router

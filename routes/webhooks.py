# routes/webhooks.py
import hmac
from typing import Any, Callable, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, Request, Header, BackgroundTasks
from sqlalchemy.orm import Session

from config import settings
from database import get_db, get_session_factory
from services import order_intake, split_lifecycle
from services.clients import SideEffectClients, get_clients
from utils import verify_hmac

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])

RIDER_REQUIRED = ("taskId", "orderId", "rider_name", "rider_contact")

@router.post("/shopify")
async def receive_shopify_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_shopify_hmac_sha256: str = Header(None),
    x_shopify_topic: str = Header(None),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    """
    Verifies the HMAC and hands order topics to the intake service in the
    background.
    """
    if not x_shopify_hmac_sha256:
        raise HTTPException(status_code=400, detail="Missing HMAC header")

    raw_body = await request.body()
    if not verify_hmac(settings.shopify_webhook_secret, raw_body, x_shopify_hmac_sha256):
        raise HTTPException(status_code=401, detail="Invalid HMAC signature")

    payload = await request.json()
    if x_shopify_topic in order_intake.ORDER_TOPICS:
        background_tasks.add_task(order_intake.handle_order_webhook, session_factory, x_shopify_topic, payload)
        return {"status": "ok"}
    return {"status": "ignored", "topic": x_shopify_topic}

@router.post("/rider/track-status")
def receive_rider_status(
    body: Dict[str, Any] = Body(...),
    x_rider_secret: str = Header(None),
    db: Session = Depends(get_db),
    clients: SideEffectClients = Depends(get_clients),
):
    """
    Sync handler: the transition it triggers makes blocking storefront, rider
    and messaging calls, so it runs in FastAPI's threadpool.
    """
    secret = settings.rider_webhook_secret
    if not secret or not hmac.compare_digest(secret, x_rider_secret or ""):
        raise HTTPException(status_code=403, detail="Forbidden: Invalid secret key")

    data = body.get("data") or {}
    if not isinstance(body.get("status"), bool) or not body.get("status_code") or any(not data.get(k) for k in RIDER_REQUIRED):
        raise HTTPException(status_code=400, detail="Bad Request: Missing or invalid fields")

    result = split_lifecycle.apply_rider_update(db, body, clients)
    return {
        "status": "ok",
        "splitId": result.split.split_id,
        "orderStatus": result.split.order_status,
        "failedEffects": result.failed_effects,
    }

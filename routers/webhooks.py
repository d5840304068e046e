# routers/webhooks.py
"""
PayPal webhook receiver.

Deliveries are verified with PayPal before anything is read from them. A
delivery that fails processing gets a 500 so PayPal redelivers it; processing
is idempotent, so redelivery is always safe.
"""
import logging

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session

from database import get_session
from dependencies import EngineServices, get_services
from schemas.webhook import PayPalWebhookEvent, WebhookAck
from services.reconciliation import outcome_from_event_type

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/paypal", response_model=WebhookAck)
def paypal_webhook(
     request: Request,
     body: dict = Body(...),
     db: Session = Depends(get_session),
     services: EngineServices = Depends(get_services),
):
     if not services.payout_client.verify_webhook_signature(request.headers, body):
          raise HTTPException(status_code=401, detail="Invalid signature")

     try:
          event = PayPalWebhookEvent.model_validate(body)
     except ValidationError:
          raise HTTPException(status_code=400, detail="Unrecognized webhook payload")

     outcome = outcome_from_event_type(event.event_type)
     logger.info(
          f"PayPal webhook {event.id}: {event.event_type} for payout "
          f"{event.resource.payout_item_id} (attempt {event.idempotency_key})"
     )
     reason = event.resource.errors.message if event.resource.errors else None

     try:
          result = services.reconciliation.on_delivery_event(
               db,
               event.resource.payout_item_id,
               outcome,
               event_id=event.id,
               event_type=event.event_type,
               idempotency_key=event.idempotency_key,
               reason=reason,
          )
     except Exception as e:
          logger.exception(f"Webhook {event.id} processing failed: {e}")
          raise HTTPException(status_code=500, detail="Webhook processing failed")

     return WebhookAck(result=result.value)


@router.get("/paypal")
def paypal_webhook_health():
     return {"status": "ok", "endpoint": "paypal-webhook"}

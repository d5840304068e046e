# schemas/webhook.py
"""
PayPal webhook payloads. Only the fields reconciliation reads are modelled;
everything else is accepted and ignored.
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict

from services.review_state_machine import receipt_id_from_key


class PayoutItem(BaseModel):
     model_config = ConfigDict(extra="allow")

     receiver: Optional[str] = None
     sender_item_id: Optional[str] = None


class PayoutItemError(BaseModel):
     model_config = ConfigDict(extra="allow")

     name: Optional[str] = None
     message: Optional[str] = None


class PayoutItemResource(BaseModel):
     model_config = ConfigDict(extra="allow")

     payout_item_id: Optional[str] = None
     payout_batch_id: Optional[str] = None
     transaction_status: Optional[str] = None
     payout_item: Optional[PayoutItem] = None
     errors: Optional[PayoutItemError] = None


class PayPalWebhookEvent(BaseModel):
     model_config = ConfigDict(
          extra="allow",
          json_schema_extra={
               "example": {
                    "id": "WH-7Y7254563A4550640-11V2185806837105M",
                    "event_type": "PAYMENT.PAYOUTS-ITEM.RETURNED",
                    "resource": {
                         "payout_item_id": "8AELMXH8UB2P8",
                         "transaction_status": "RETURNED",
                         "payout_item": {"receiver": "jane@example.com", "sender_item_id": "rebate-7-1"},
                    },
               }
          },
     )

     id: str
     event_type: str
     resource: PayoutItemResource

     @property
     def idempotency_key(self) -> Optional[str]:
          """Key of the payout attempt, sent as sender_item_id when it was submitted."""
          item = self.resource.payout_item
          if item is None or receipt_id_from_key(item.sender_item_id) is None:
               return None
          return item.sender_item_id


class WebhookAck(BaseModel):
     received: bool = True
     result: str

# services/paypal_client.py
"""
PayPal Payouts client.

Docs:
- OAuth: https://developer.paypal.com/api/rest/authentication/
- Payouts: https://developer.paypal.com/docs/api/payments.payouts-batch/v1/
- Webhook verification: https://developer.paypal.com/api/rest/webhooks/rest/#verify-webhook-signature

Every call is bounded by settings.payout_http_timeout. The response of a
payout submission is classified into exactly one of:

- a payout reference (accepted for processing)
- PayoutRejected(reason, retryable): PayPal answered and did not create a payout
- PayoutOutcomeUnknown: the request may have been processed (read timeout,
  dropped connection, 5xx, duplicate request id)
"""
import logging
import threading
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Mapping, Optional

import requests

from config import Settings
from services.errors import (
     PayoutAuthError,
     PayoutConfigurationError,
     PayoutOutcomeUnknown,
     PayoutRejected,
)
from utils.clock import utcnow
from utils.masking import mask_identity

logger = logging.getLogger(__name__)

EMAIL_SUBJECT = "You received a rebate payment!"
EMAIL_MESSAGE = "Thank you for taking part in our rebate campaign. Your rebate is on its way."
ITEM_NOTE = "Rebate payment"

# Refusals that may succeed later without changing the request
TRANSIENT_ERRORS = frozenset({"INSUFFICIENT_FUNDS", "RATE_LIMIT_REACHED", "INTERNAL_SERVICE_ERROR"})
# PayPal already saw this idempotency key; what happened to it is not in the response
DUPLICATE_ERRORS = frozenset({"DUPLICATE_REQUEST_ID", "SENDER_BATCH_ID_ALREADY_USED"})

SIGNATURE_HEADERS = {
     "transmission_id": "paypal-transmission-id",
     "transmission_time": "paypal-transmission-time",
     "cert_url": "paypal-cert-url",
     "auth_algo": "paypal-auth-algo",
     "transmission_sig": "paypal-transmission-sig",
}


def _error_name(response: requests.Response) -> str:
     try:
          body = response.json()
     except ValueError:
          return f"HTTP_{response.status_code}"
     name = body.get("name") or body.get("error") or f"HTTP_{response.status_code}"
     for detail in body.get("details") or []:
          if detail.get("issue") in DUPLICATE_ERRORS:
               return detail["issue"]
     return name


class PayPalPayoutClient:

     def __init__(
          self,
          settings: Settings,
          session: Optional[requests.Session] = None,
          clock: Callable[[], datetime] = utcnow,
     ):
          self._settings = settings
          self._http = session or requests.Session()
          self._clock = clock
          self._token: Optional[str] = None
          self._token_expires_at: Optional[datetime] = None
          # Guards the cached token only; never held across a request
          self._token_lock = threading.Lock()

     @property
     def base_url(self) -> str:
          return self._settings.paypal_base_url

     @property
     def configured(self) -> bool:
          return bool(self._settings.paypal_client_id and self._settings.paypal_client_secret)

     # ------------------------------------------------------------------
     # Credentials
     # ------------------------------------------------------------------

     def _cached_token(self) -> Optional[str]:
          with self._token_lock:
               if self._token and self._token_expires_at and self._clock() < self._token_expires_at:
                    return self._token
          return None

     def invalidate_token(self) -> None:
          with self._token_lock:
               self._token = None
               self._token_expires_at = None

     def get_access_token(self) -> str:
          """Client-credentials token, reused until settings.token_refresh_margin before expiry."""
          token = self._cached_token()
          if token:
               return token

          if not self.configured:
               raise PayoutConfigurationError("PayPal credentials not configured")

          try:
               response = self._http.post(
                    f"{self.base_url}/v1/oauth2/token",
                    auth=(self._settings.paypal_client_id, self._settings.paypal_client_secret),
                    data={"grant_type": "client_credentials"},
                    headers={"Accept": "application/json"},
                    timeout=self._settings.payout_http_timeout,
               )
          except requests.RequestException as e:
               raise PayoutAuthError(f"PayPal token request failed: {e.__class__.__name__}") from e

          if response.status_code != 200:
               logger.warning(f"PayPal token request returned {response.status_code}")
               raise PayoutAuthError(f"PayPal token request returned {response.status_code}")

          body = response.json()
          token = body.get("access_token")
          if not token:
               raise PayoutAuthError("PayPal token response carried no access_token")
          expires_in = timedelta(seconds=int(body.get("expires_in", 0)))

          with self._token_lock:
               self._token = token
               self._token_expires_at = self._clock() + expires_in - self._settings.token_refresh_margin
          logger.info("PayPal access token refreshed")
          return token

     # ------------------------------------------------------------------
     # Payouts
     # ------------------------------------------------------------------

     def submit_payout(
          self,
          receipt_id: int,
          recipient: str,
          amount: Decimal,
          currency: str,
          idempotency_key: str,
     ) -> str:
          """
          Submit a single-item payout batch.

          The idempotency key is sent both as the PayPal-Request-Id header and as
          sender_batch_id, so a retried request never creates a second payout. It also
          travels as sender_item_id and comes back on webhook events, tying each
          event to the exact attempt that produced it.

          Returns:
               The payout item id (falls back to the batch id)
          """
          token = self.get_access_token()
          payload = {
               "sender_batch_header": {
                    "sender_batch_id": idempotency_key,
                    "email_subject": EMAIL_SUBJECT,
                    "email_message": EMAIL_MESSAGE,
               },
               "items": [
                    {
                         "recipient_type": "EMAIL",
                         "amount": {"value": f"{Decimal(amount):.2f}", "currency": currency},
                         "receiver": recipient,
                         "note": ITEM_NOTE,
                         "sender_item_id": idempotency_key,
                    }
               ],
          }
          logger.info(
               f"Submitting payout for receipt {receipt_id}: {amount} {currency} "
               f"to {mask_identity(recipient)} (key {idempotency_key})"
          )

          try:
               response = self._http.post(
                    f"{self.base_url}/v1/payments/payouts",
                    json=payload,
                    headers={
                         "Authorization": f"Bearer {token}",
                         "Content-Type": "application/json",
                         "PayPal-Request-Id": idempotency_key,
                    },
                    timeout=self._settings.payout_http_timeout,
               )
          except requests.ConnectTimeout as e:
               # Never reached PayPal
               raise PayoutRejected("PayPal unreachable (connect timeout)", retryable=True) from e
          except requests.RequestException as e:
               raise PayoutOutcomeUnknown(f"{e.__class__.__name__} while submitting payout") from e

          return self._interpret_payout_response(response)

     def _interpret_payout_response(self, response: requests.Response) -> str:
          status = response.status_code

          if status in (200, 201):
               body = response.json()
               header = body.get("batch_header") or {}
               if header.get("batch_status") == "DENIED":
                    raise PayoutRejected("Payout batch denied", retryable=False)
               items = body.get("items") or []
               reference = (items[0].get("payout_item_id") if items else None) or header.get("payout_batch_id")
               if not reference:
                    raise PayoutOutcomeUnknown("PayPal accepted the payout without a reference")
               return reference

          if status >= 500:
               raise PayoutOutcomeUnknown(f"PayPal returned {status}")

          if status == 401:
               self.invalidate_token()
               raise PayoutRejected("PayPal rejected the access token", retryable=True)

          if status == 429:
               raise PayoutRejected("RATE_LIMIT_REACHED", retryable=True)

          name = _error_name(response)
          logger.warning(f"PayPal refused payout: {status} {name}")
          if name in DUPLICATE_ERRORS:
               raise PayoutOutcomeUnknown(f"PayPal reported {name}")
          raise PayoutRejected(name, retryable=name in TRANSIENT_ERRORS)

     # ------------------------------------------------------------------
     # Webhooks
     # ------------------------------------------------------------------

     def verify_webhook_signature(self, headers: Mapping[str, str], event: dict) -> bool:
          """
          Ask PayPal whether a webhook delivery is authentic. Any missing header,
          missing webhook id or failed call counts as not verified.
          """
          if not self._settings.paypal_webhook_id:
               logger.warning("PAYPAL_WEBHOOK_ID not set; webhook cannot be verified")
               return False

          lowered = {k.lower(): v for k, v in headers.items()}
          fields = {name: lowered.get(header) for name, header in SIGNATURE_HEADERS.items()}
          if not all(fields.values()):
               logger.warning("Webhook rejected: missing PayPal signature headers")
               return False

          try:
               token = self.get_access_token()
               response = self._http.post(
                    f"{self.base_url}/v1/notifications/verify-webhook-signature",
                    json={
                         **fields,
                         "webhook_id": self._settings.paypal_webhook_id,
                         "webhook_event": event,
                    },
                    headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
                    timeout=self._settings.payout_http_timeout,
               )
          except (requests.RequestException, PayoutAuthError, PayoutConfigurationError) as e:
               logger.warning(f"Webhook verification call failed: {e}")
               return False

          if response.status_code != 200:
               logger.warning(f"Webhook verification returned {response.status_code}")
               return False
          verified = response.json().get("verification_status") == "SUCCESS"
          if not verified:
               logger.warning("Webhook signature invalid")
          return verified

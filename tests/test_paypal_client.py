import json
from dataclasses import replace
from decimal import Decimal

import pytest
import requests

from services.errors import PayoutAuthError, PayoutConfigurationError, PayoutOutcomeUnknown, PayoutRejected
from services.paypal_client import PayPalPayoutClient

TOKEN_URL = "https://api-m.sandbox.paypal.com/v1/oauth2/token"
PAYOUTS_URL = "https://api-m.sandbox.paypal.com/v1/payments/payouts"
VERIFY_URL = "https://api-m.sandbox.paypal.com/v1/notifications/verify-webhook-signature"

SIGNATURE_HEADERS = {
    "PAYPAL-TRANSMISSION-ID": "tx-1",
    "PAYPAL-TRANSMISSION-TIME": "2026-10-19T12:00:00Z",
    "PAYPAL-CERT-URL": "https://api.paypal.com/cert.pem",
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    "PAYPAL-TRANSMISSION-SIG": "c2lnbmF0dXJl",
}


def _response(status_code: int, body=None) -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    response._content = json.dumps(body).encode() if body is not None else b"not json"
    response.headers["Content-Type"] = "application/json"
    return response


class FakeHTTP:
    """Records posts and answers from a per-URL queue of responses or exceptions."""

    def __init__(self):
        self.posts = []
        self.queues = {}

    def queue(self, url, *responses):
        self.queues.setdefault(url, []).extend(responses)

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        answer = self.queues[url].pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer

    def posts_to(self, url):
        return [kwargs for posted_url, kwargs in self.posts if posted_url == url]


def _token(token="A21AA-token", expires_in=32400):
    return _response(200, {"access_token": token, "token_type": "Bearer", "expires_in": expires_in})


def _accepted(item_id="ITEM-1", batch_id="BATCH-1", batch_status="PENDING"):
    return _response(201, {
        "batch_header": {"payout_batch_id": batch_id, "batch_status": batch_status},
        "items": [{"payout_item_id": item_id}] if item_id else [],
    })


@pytest.fixture()
def http() -> FakeHTTP:
    return FakeHTTP()


@pytest.fixture()
def paypal(settings, http, clock) -> PayPalPayoutClient:
    configured = replace(
        settings,
        paypal_client_id="client-id",
        paypal_client_secret="client-secret",
        paypal_environment="sandbox",
        paypal_webhook_id="WH-TEST",
    )
    return PayPalPayoutClient(configured, session=http, clock=clock)


def _submit(paypal, key="rebate-7-1"):
    return paypal.submit_payout(7, "jane@example.com", Decimal("5"), "USD", key)


def test_submit_payout_request(paypal, http) -> None:
    http.queue(TOKEN_URL, _token())
    http.queue(PAYOUTS_URL, _accepted())

    assert _submit(paypal) == "ITEM-1"

    token_call = http.posts_to(TOKEN_URL)[0]
    assert token_call["auth"] == ("client-id", "client-secret")
    assert token_call["data"] == {"grant_type": "client_credentials"}

    payout_call = http.posts_to(PAYOUTS_URL)[0]
    assert payout_call["headers"]["Authorization"] == "Bearer A21AA-token"
    assert payout_call["headers"]["PayPal-Request-Id"] == "rebate-7-1"
    assert payout_call["timeout"] == 30.0
    payload = payout_call["json"]
    assert payload["sender_batch_header"]["sender_batch_id"] == "rebate-7-1"
    item = payload["items"][0]
    assert item["amount"] == {"value": "5.00", "currency": "USD"}
    assert item["receiver"] == "jane@example.com"
    assert item["sender_item_id"] == "rebate-7-1"


def test_token_is_cached_until_refresh_margin(paypal, http, clock) -> None:
    http.queue(TOKEN_URL, _token("first", expires_in=3600), _token("second", expires_in=3600))
    http.queue(PAYOUTS_URL, _accepted(), _accepted(), _accepted())

    _submit(paypal, "rebate-7-1")
    clock.advance(minutes=58)
    _submit(paypal, "rebate-7-2")
    assert len(http.posts_to(TOKEN_URL)) == 1

    clock.advance(minutes=1, seconds=1)
    _submit(paypal, "rebate-7-3")
    assert len(http.posts_to(TOKEN_URL)) == 2
    assert http.posts_to(PAYOUTS_URL)[-1]["headers"]["Authorization"] == "Bearer second"


def test_reference_falls_back_to_batch_id(paypal, http) -> None:
    http.queue(TOKEN_URL, _token())
    http.queue(PAYOUTS_URL, _accepted(item_id=None, batch_id="BATCH-9"))
    assert _submit(paypal) == "BATCH-9"


def test_denied_batch_is_permanent(paypal, http) -> None:
    http.queue(TOKEN_URL, _token())
    http.queue(PAYOUTS_URL, _accepted(batch_status="DENIED"))
    with pytest.raises(PayoutRejected) as exc:
        _submit(paypal)
    assert not exc.value.retryable


def test_validation_error_is_permanent(paypal, http) -> None:
    http.queue(TOKEN_URL, _token())
    http.queue(PAYOUTS_URL, _response(422, {"name": "VALIDATION_ERROR", "message": "Invalid request"}))
    with pytest.raises(PayoutRejected) as exc:
        _submit(paypal)
    assert exc.value.reason == "VALIDATION_ERROR"
    assert not exc.value.retryable


def test_insufficient_funds_is_retryable(paypal, http) -> None:
    http.queue(TOKEN_URL, _token())
    http.queue(PAYOUTS_URL, _response(422, {"name": "INSUFFICIENT_FUNDS"}))
    with pytest.raises(PayoutRejected) as exc:
        _submit(paypal)
    assert exc.value.retryable


def test_duplicate_request_outcome_is_unknown(paypal, http) -> None:
    http.queue(TOKEN_URL, _token())
    http.queue(PAYOUTS_URL, _response(400, {
        "name": "VALIDATION_ERROR",
        "details": [{"issue": "SENDER_BATCH_ID_ALREADY_USED"}],
    }))
    with pytest.raises(PayoutOutcomeUnknown):
        _submit(paypal)


@pytest.mark.parametrize("answer", [_response(503, {"name": "SERVICE_UNAVAILABLE"}), requests.ReadTimeout("read timed out")])
def test_server_error_or_read_timeout_is_unknown(paypal, http, answer) -> None:
    http.queue(TOKEN_URL, _token())
    http.queue(PAYOUTS_URL, answer)
    with pytest.raises(PayoutOutcomeUnknown):
        _submit(paypal)


def test_connect_timeout_is_retryable(paypal, http) -> None:
    http.queue(TOKEN_URL, _token())
    http.queue(PAYOUTS_URL, requests.ConnectTimeout("connect timed out"))
    with pytest.raises(PayoutRejected) as exc:
        _submit(paypal)
    assert exc.value.retryable


def test_expired_token_is_dropped(paypal, http) -> None:
    http.queue(TOKEN_URL, _token("stale"), _token("fresh"))
    http.queue(PAYOUTS_URL, _response(401, {"error": "invalid_token"}), _accepted())

    with pytest.raises(PayoutRejected) as exc:
        _submit(paypal)
    assert exc.value.retryable

    _submit(paypal)
    assert http.posts_to(PAYOUTS_URL)[-1]["headers"]["Authorization"] == "Bearer fresh"


def test_token_failure(paypal, http) -> None:
    http.queue(TOKEN_URL, _response(401, {"error": "invalid_client"}))
    with pytest.raises(PayoutAuthError):
        _submit(paypal)
    assert http.posts_to(PAYOUTS_URL) == []


def test_missing_credentials(settings, http) -> None:
    client = PayPalPayoutClient(replace(settings, paypal_client_id=None, paypal_client_secret=None), session=http)
    with pytest.raises(PayoutConfigurationError):
        _submit(client)


def test_verify_webhook_signature(paypal, http) -> None:
    event = {"id": "WH-EVT-1", "event_type": "PAYMENT.PAYOUTS-ITEM.SUCCEEDED"}
    http.queue(TOKEN_URL, _token())
    http.queue(VERIFY_URL, _response(200, {"verification_status": "SUCCESS"}))

    assert paypal.verify_webhook_signature(SIGNATURE_HEADERS, event)

    body = http.posts_to(VERIFY_URL)[0]["json"]
    assert body["webhook_id"] == "WH-TEST"
    assert body["transmission_id"] == "tx-1"
    assert body["webhook_event"] == event


def test_verify_webhook_signature_failure(paypal, http) -> None:
    http.queue(TOKEN_URL, _token())
    http.queue(VERIFY_URL, _response(200, {"verification_status": "FAILURE"}))
    assert not paypal.verify_webhook_signature(SIGNATURE_HEADERS, {"id": "WH-EVT-1"})


def test_verify_webhook_signature_missing_headers(paypal, http) -> None:
    headers = dict(SIGNATURE_HEADERS)
    del headers["PAYPAL-TRANSMISSION-SIG"]
    assert not paypal.verify_webhook_signature(headers, {"id": "WH-EVT-1"})
    assert http.posts == []

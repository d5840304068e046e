import os
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal

from passlib.context import CryptContext

ADMIN_PASSWORD = "letmein"

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_rebates.db")
os.environ.setdefault("CLASSIFIER_MODE", "stub")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("PAYPAL_WEBHOOK_ID", "WH-TEST")
os.environ["ADMIN_PASSWORD_HASH"] = CryptContext(schemes=["bcrypt"]).hash(ADMIN_PASSWORD)

from fastapi.testclient import TestClient  # noqa: E402
import pytest  # noqa: E402

import config  # noqa: E402
from config import RateLimitPolicy  # noqa: E402
from database import build_engine, build_session_factory, get_session, init_db  # noqa: E402
from dependencies import build_services, get_services  # noqa: E402
from main import app  # noqa: E402
from services.classifier import ClassifierOutput, StubClassifier, StubReceiptValidator  # noqa: E402
from services.submission_gate import Upload  # noqa: E402

IMAGE_BYTES = 120 * 1024


class FakeClock:
    """Settable naive-UTC clock shared by every engine component in a test."""

    def __init__(self, start: datetime = datetime(2026, 10, 19, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@dataclass
class PayoutCall:
    receipt_id: int
    recipient: str
    amount: Decimal
    currency: str
    idempotency_key: str


class FakePayoutClient:
    """
    Stands in for PayPalPayoutClient. Queued responses are either a reference
    string or an exception to raise; with nothing queued every call succeeds.
    """

    def __init__(self):
        self.calls = []
        self.responses = []
        self.signature_valid = True
        self.on_submit = None

    def submit_payout(self, receipt_id, recipient, amount, currency, idempotency_key):
        self.calls.append(PayoutCall(receipt_id, recipient, amount, currency, idempotency_key))
        if self.on_submit is not None:
            self.on_submit()
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return f"ITEM-{receipt_id}-{len(self.calls)}"

    def verify_webhook_signature(self, headers, event):
        return self.signature_valid


def make_image(seed: str, size: int = IMAGE_BYTES) -> bytes:
    """Distinct seeds give distinct content; the same seed gives identical bytes."""
    header = b"\xff\xd8\xff\xe0" + seed.encode()
    return header + b"\x00" * (size - len(header))


def make_upload(seed: str, content_type: str = "image/jpeg", size: int = IMAGE_BYTES) -> Upload:
    return Upload(data=make_image(seed, size), content_type=content_type, filename=f"{seed}.jpg")


def file_receipt(services, db, seed: str = "1", recipient: str = "jane@example.com", address: str = "10.0.0.1"):
    """Scan, then submit a receipt against the new session. Returns the submitted receipt."""
    scan = services.gate.submit_scan(db, make_upload(f"scan-{seed}"), address, ClassifierOutput("Bottle", 0.9))
    return services.gate.submit_receipt(
        db, scan.session_id, make_upload(f"receipt-{seed}"), recipient, services.settings.effective_rebate_amount
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def engine(tmp_path):
    test_engine = build_engine(f"sqlite:///{tmp_path / 'rebates.db'}")
    init_db(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def settings(tmp_path):
    return replace(
        config.settings,
        database_url=f"sqlite:///{tmp_path / 'rebates.db'}",
        scan_rate_limit=RateLimitPolicy("scan", 3, timedelta(hours=24)),
        payout_rate_limit=RateLimitPolicy("payout", 1, timedelta(days=30)),
        session_validity=timedelta(hours=24),
        auto_approval_enabled=True,
        auto_approval_threshold=0.80,
        auto_approval_daily_limit=RateLimitPolicy("auto_approval", 1000, timedelta(days=1)),
        rebate_amount=Decimal("5.00"),
        test_payout_amount=None,
        payout_currency="USD",
        classifier_mode="stub",
    )


@pytest.fixture()
def payout_client() -> FakePayoutClient:
    return FakePayoutClient()


@pytest.fixture()
def classifier() -> StubClassifier:
    return StubClassifier(label="Bottle", confidence=0.90)


@pytest.fixture()
def receipt_validator() -> StubReceiptValidator:
    return StubReceiptValidator(score=0.95)


@pytest.fixture()
def services(settings, classifier, receipt_validator, payout_client, clock):
    return build_services(
        settings,
        classifier=classifier,
        receipt_validator=receipt_validator,
        payout_client=payout_client,
        clock=clock,
    )


@pytest.fixture()
def client(services, session_factory) -> TestClient:
    def override_session():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_services] = lambda: services
    app.dependency_overrides[get_session] = override_session
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def admin_headers(client) -> dict:
    response = client.post("/api/admin/login", json={"password": ADMIN_PASSWORD})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['token']}"}

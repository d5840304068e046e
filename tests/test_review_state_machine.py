import pytest

from conftest import file_receipt
from models import ReceiptRecord, ReceiptStatus
from services.errors import IllegalTransition, ReceiptNotFound, TransitionConflict
from services.review_state_machine import append_line, can_transition


def test_transition_table() -> None:
    assert can_transition(ReceiptStatus.SUBMITTED, ReceiptStatus.APPROVED)
    assert can_transition(ReceiptStatus.APPROVED, ReceiptStatus.PAID)
    assert can_transition(ReceiptStatus.PAID, ReceiptStatus.APPROVED)
    assert not can_transition(ReceiptStatus.SUBMITTED, ReceiptStatus.PAID)
    assert not can_transition(ReceiptStatus.PAID, ReceiptStatus.REJECTED)
    for target in ReceiptStatus:
        assert not can_transition(ReceiptStatus.REJECTED, target)


def test_append_line() -> None:
    assert append_line(None, "first") == "first"
    assert append_line("first", "second") == "first\nsecond"


def test_get_unknown_receipt(services, db) -> None:
    with pytest.raises(ReceiptNotFound):
        services.state_machine.get(db, 999)


def test_approve_records_who_and_how(services, db) -> None:
    receipt = file_receipt(services, db)
    approved = services.state_machine.approve(db, receipt.id, auto=True, confidence=0.93)

    assert approved.status == ReceiptStatus.APPROVED
    assert approved.auto_approved
    assert approved.auto_approved_at is not None
    assert approved.confidence_score == pytest.approx(0.93)
    assert "Auto-approved with 0.93 confidence" in approved.admin_notes


def test_approve_twice_is_illegal(services, db) -> None:
    receipt = file_receipt(services, db)
    services.state_machine.approve(db, receipt.id)
    with pytest.raises(IllegalTransition):
        services.state_machine.approve(db, receipt.id)


def test_flag_keeps_receipt_submitted(services, db) -> None:
    receipt = file_receipt(services, db)
    flagged = services.state_machine.flag_for_review(db, receipt.id, "confidence 0.60 below threshold", 0.6)
    assert flagged.status == ReceiptStatus.SUBMITTED
    assert flagged.review_reason == "confidence 0.60 below threshold"
    assert not flagged.auto_approved


def test_reject_submitted_receipt(services, db) -> None:
    receipt = file_receipt(services, db)
    rejected = services.state_machine.reject(db, receipt.id, "receipt is for a different store", actor="alice")

    assert rejected.status == ReceiptStatus.REJECTED
    assert rejected.review_reason == "receipt is for a different store"
    assert rejected.payout_reference is None
    assert "Rejected by alice" in rejected.admin_notes

    with pytest.raises(IllegalTransition):
        services.state_machine.approve(db, receipt.id)


def test_reject_unreachable_after_payout(services, db) -> None:
    receipt = file_receipt(services, db)
    services.state_machine.approve(db, receipt.id)
    claimed = services.state_machine.claim_payout(db, receipt.id)

    with pytest.raises(IllegalTransition):
        services.state_machine.reject(db, receipt.id, "changed my mind")

    services.state_machine.mark_paid(db, receipt.id, claimed.payout_idempotency_key, "ITEM-1")
    with pytest.raises(IllegalTransition):
        services.state_machine.reject(db, receipt.id, "changed my mind")

    assert services.state_machine.get(db, receipt.id).status == ReceiptStatus.PAID


def test_claim_assigns_attempt_key(services, db) -> None:
    receipt = file_receipt(services, db)
    services.state_machine.approve(db, receipt.id)

    claimed = services.state_machine.claim_payout(db, receipt.id)
    assert claimed.payout_in_flight
    assert claimed.payout_attempts == 1
    assert claimed.payout_idempotency_key == f"rebate-{receipt.id}-1"

    with pytest.raises(TransitionConflict):
        services.state_machine.claim_payout(db, receipt.id)


def test_claim_requires_approval(services, db) -> None:
    receipt = file_receipt(services, db)
    with pytest.raises(IllegalTransition):
        services.state_machine.claim_payout(db, receipt.id)


def test_mark_paid_requires_matching_claim(services, db) -> None:
    receipt = file_receipt(services, db)
    services.state_machine.approve(db, receipt.id)
    services.state_machine.claim_payout(db, receipt.id)

    with pytest.raises(TransitionConflict):
        services.state_machine.mark_paid(db, receipt.id, "rebate-0-9", "ITEM-1")

    paid = services.state_machine.mark_paid(db, receipt.id, f"rebate-{receipt.id}-1", "ITEM-1")
    assert paid.status == ReceiptStatus.PAID
    assert paid.payout_reference == "ITEM-1"
    assert paid.paid_at is not None
    assert not paid.payout_in_flight


def test_release_claim_allows_new_attempt(services, db) -> None:
    receipt = file_receipt(services, db)
    services.state_machine.approve(db, receipt.id)
    services.state_machine.claim_payout(db, receipt.id)

    released = services.state_machine.release_claim(db, receipt.id, f"rebate-{receipt.id}-1", "RECEIVER_UNREGISTERED")
    assert released.status == ReceiptStatus.APPROVED
    assert not released.payout_in_flight
    assert "RECEIVER_UNREGISTERED" in released.review_reason

    second = services.state_machine.claim_payout(db, receipt.id)
    assert second.payout_idempotency_key == f"rebate-{receipt.id}-2"


def test_revert_and_confirm(services, db) -> None:
    receipt = file_receipt(services, db)
    services.state_machine.approve(db, receipt.id)
    services.state_machine.claim_payout(db, receipt.id)
    services.state_machine.mark_paid(db, receipt.id, f"rebate-{receipt.id}-1", "ITEM-1")

    reverted = services.state_machine.revert_payout(db, receipt.id, "ITEM-1", "returned")
    assert reverted.status == ReceiptStatus.APPROVED
    assert reverted.payout_reference is None
    assert reverted.paid_at is None
    assert "Payout ITEM-1 returned" in reverted.review_reason

    services.state_machine.claim_payout(db, receipt.id)
    services.state_machine.mark_paid(db, receipt.id, f"rebate-{receipt.id}-2", "ITEM-2")
    assert services.state_machine.confirm_payout(db, receipt.id, "ITEM-2")
    assert not services.state_machine.confirm_payout(db, receipt.id, "ITEM-2")

    # Confirmed payouts keep their reference
    with pytest.raises(TransitionConflict):
        services.state_machine.revert_payout(db, receipt.id, "ITEM-2", "returned")
    assert services.state_machine.get(db, receipt.id).payout_reference == "ITEM-2"


def test_stale_write_loses(services, db, session_factory) -> None:
    receipt = file_receipt(services, db)

    other = session_factory()
    try:
        stale = services.state_machine.get(other, receipt.id)
        services.state_machine.reject(db, receipt.id, "blurry")

        with pytest.raises(TransitionConflict):
            services.state_machine._apply(other, stale, ReceiptStatus.APPROVED, auto_approved=False)
    finally:
        other.close()

    assert services.state_machine.get(db, receipt.id).status == ReceiptStatus.REJECTED


def test_concurrent_claims_have_one_winner(services, db, session_factory) -> None:
    receipt = file_receipt(services, db)
    services.state_machine.approve(db, receipt.id)

    other = session_factory()
    try:
        services.state_machine.claim_payout(db, receipt.id)
        with pytest.raises(TransitionConflict):
            services.state_machine.claim_payout(other, receipt.id)
    finally:
        other.close()

    assert services.state_machine.get(db, receipt.id).payout_attempts == 1


def test_rejected_receipts_never_carry_a_reference(services, db) -> None:
    for seed in ("a", "b", "c"):
        receipt = file_receipt(services, db, seed=seed, recipient=f"{seed}@example.com")
        services.state_machine.reject(db, receipt.id, "fraud")

    rows = db.query(ReceiptRecord).filter(ReceiptRecord.status == ReceiptStatus.REJECTED).all()
    assert len(rows) == 3
    assert all(row.payout_reference is None for row in rows)

from datetime import date

import pytest

from services.receipt_scoring import (
    assess_receipt,
    brand_variants,
    find_receipt_date,
    has_price,
    mentions_brand,
    screenshot_warnings,
    similarity,
)

BRAND = "keeper's heart"
TODAY = date(2026, 10, 19)

RECEIPT = """KEEPER'S HEART DISTILLERY SHOP
123 Main Street, Springfield
Receipt #4471   Date: {when}
Keeper's Heart Irish + Bourbon 750ml   $34.99
Subtotal                               $34.99
Tax                                     $2.80
Total                                  $37.79
Amount paid VISA                       $37.79
Transaction 88213
Thank you for your purchase
"""

PAPER = ["Receipt", "Paper", "Font"]


def _assess(text, labels=PAPER, colors=8, scan_confidence=0.92):
    return assess_receipt(text, labels, colors, scan_confidence, brand=BRAND, today=TODAY)


def test_clean_receipt_scores_high() -> None:
    assessment = _assess(RECEIPT.format(when="10/12/2026"))
    assert assessment.clean
    assert assessment.score >= 0.95
    assert assessment.hint is None
    assert assessment.components["ocr"] == pytest.approx(1.0)


def test_misread_brand_still_matches() -> None:
    text = RECEIPT.format(when="10/12/2026").replace("KEEPER'S HEART", "KEEPER5 HEART").replace("Keeper's Heart", "Keeper5 Heart")
    assert _assess(text).clean


def test_missing_brand() -> None:
    text = RECEIPT.format(when="10/12/2026").replace("KEEPER'S HEART", "JAMESON").replace("Keeper's Heart", "Jameson")
    assessment = _assess(text)
    assert "Receipt must show a Keeper's Heart purchase" in assessment.errors
    assert assessment.components["ocr"] == 0.0
    assert assessment.hint == "unclear receipt text or missing brand"
    assert assessment.score < 0.8


@pytest.mark.parametrize(
    "when, error",
    [
        ("08/01/2026", "Receipt is too old (must be within last 30 days)"),
        ("11/01/2026", "Receipt date is in the future"),
    ],
)
def test_receipt_date_window(when, error) -> None:
    assessment = _assess(RECEIPT.format(when=when))
    assert assessment.errors == (error,)


def test_receipt_without_date() -> None:
    text = RECEIPT.format(when="").replace("Date:", "")
    assert "No date found on receipt" in _assess(text).errors


def test_oldest_day_in_window_is_accepted() -> None:
    assert _assess(RECEIPT.format(when="09/19/2026")).clean


def test_screenshot_is_flagged() -> None:
    assessment = _assess(RECEIPT.format(when="10/12/2026"), labels=["Screenshot", "Font"], colors=2)
    assert assessment.errors == (
        "Image appears to be a screenshot of a digital screen",
        "Image has suspiciously few colors (may be edited or digital)",
    )
    assert assessment.components["image_quality"] == pytest.approx(0.1)
    assert assessment.hint == "possible screenshot or edited image"


def test_snippet_is_not_a_receipt() -> None:
    assessment = _assess("Keeper's Heart $20")
    assert "Receipt text too short - please upload a complete receipt" in assessment.errors
    assert "Image does not appear to be a valid receipt (missing receipt keywords)" in assessment.errors
    assert "No date found on receipt" in assessment.errors


def test_weak_scan_lowers_score() -> None:
    text = RECEIPT.format(when="10/12/2026")
    assert _assess(text, scan_confidence=0.3).score < _assess(text, scan_confidence=0.95).score


def test_missing_colour_report_is_not_a_warning() -> None:
    assert screenshot_warnings(["Paper"], None) == []


@pytest.mark.parametrize(
    "a, b, expected",
    [
        ("abc", "abc", 1.0),
        ("", "", 1.0),
        ("abc", "xyz", 0.0),
        ("keepers heart", "keeper5 heart", 12 / 13),
    ],
)
def test_similarity(a, b, expected) -> None:
    assert similarity(a, b) == pytest.approx(expected)


def test_brand_variants() -> None:
    variants = brand_variants("Keeper's Heart")
    assert {"keeper's heart", "keepers heart", "keepersheart", "keeper heart"} <= variants


@pytest.mark.parametrize(
    "text",
    ["KEEPER'S HEART", "keepers   heart", "KEEPERSHEART", "keeper heart"],
)
def test_mentions_brand(text) -> None:
    assert mentions_brand(f"thank you {text} shop", BRAND)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Date: 2026-10-12", date(2026, 10, 12)),
        ("Oct 12, 2026", date(2026, 10, 12)),
        ("12 October 2026", date(2026, 10, 12)),
        ("10/12/26 14:02", date(2026, 10, 12)),
    ],
)
def test_find_receipt_date(text, expected) -> None:
    assert find_receipt_date(text) == (True, expected)


def test_date_shaped_text_that_is_not_a_date() -> None:
    assert find_receipt_date("13/45/2026") == (True, None)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("BALANCE DUE", True),
        ("bottle $34.99", True),
        ("gift card $999.99", False),
        ("thank you", False),
    ],
)
def test_has_price(text, expected) -> None:
    assert has_price(text) == expected

# services/receipt_scoring.py
"""
Receipt scoring - turns what the image reader saw on a receipt photo into the
confidence the automated review compares against its threshold.

Inputs are the OCR text, the image labels and the number of dominant colours,
plus the confidence of the scan that opened the session. The score is a
weighted blend of five components:

    ocr            0.35   brand name present, receipt keywords
    image quality  0.25   not a screenshot / not flat digital colours
    session        0.15   how sure the scan classifier was
    text length    0.15   a whole receipt, not a snippet
    keywords       0.10   how many receipt keywords matched

Hard findings (no brand, no date, stale receipt, screenshot...) are returned as
errors; a receipt with errors is never approved automatically.
"""
import re
import string
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Iterable, Optional

import Levenshtein

RECEIPT_KEYWORDS = (
     "total",
     "subtotal",
     "tax",
     "receipt",
     "date",
     "amount",
     "paid",
     "purchase",
     "transaction",
)

SCREENSHOT_LABELS = (
     "screenshot",
     "computer screen",
     "display device",
     "monitor",
     "laptop",
     "desktop",
     "phone screen",
     "mobile phone display",
)

PRICE_WORDS = ("total", "amount", "balance", "subtotal")
PRICE_PATTERN = re.compile(r"\$\s*(\d{1,3}(?:\.\d{2})?)")

MONTHS = ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec")
_MONTH = r"(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\.?"

# (pattern, group order) with order naming which group holds year, month, day
DATE_PATTERNS = (
     (re.compile(r"\b(\d{1,2})[-/.](\d{1,2})[-/.](20\d{2})\b"), ("m", "d", "y")),
     (re.compile(r"\b(20\d{2})[-/.](\d{1,2})[-/.](\d{1,2})\b"), ("y", "m", "d")),
     (re.compile(rf"\b{_MONTH}\s+(\d{{1,2}})[,\s]+(20\d{{2}})\b"), ("m", "d", "y")),
     (re.compile(rf"\b(\d{{1,2}})\s+{_MONTH}\s+(20\d{{2}})\b"), ("d", "m", "y")),
     (re.compile(r"\b(\d{1,2})[-/](\d{1,2})[-/](\d{2})(?!\d)"), ("m", "d", "y")),
)

BRAND_SIMILARITY = 0.85
MIN_KEYWORDS = 3
MIN_TEXT_LENGTH = 100
MIN_DOMINANT_COLORS = 3

WEIGHTS = {
     "ocr": 0.35,
     "image_quality": 0.25,
     "session": 0.15,
     "text_length": 0.15,
     "keywords": 0.10,
}


@dataclass(frozen=True)
class ReceiptAssessment:
     score: float
     errors: tuple = ()
     hint: Optional[str] = None
     components: dict = field(default_factory=dict)

     @property
     def clean(self) -> bool:
          return not self.errors


# ---------------------------------------------------------------------------
# Text matching
# ---------------------------------------------------------------------------

def similarity(a: str, b: str) -> float:
     """1.0 for identical strings, falling with edit distance relative to the longer one."""
     longer = max(len(a), len(b))
     if longer == 0:
          return 1.0
     return (longer - Levenshtein.distance(a, b)) / longer


def brand_variants(brand: str) -> set:
     """Spellings OCR commonly produces for a possessive brand name ("keeper's heart")."""
     brand = brand.lower().strip()
     bare = brand.replace("'", "")
     words = brand.split()
     variants = {brand, bare, bare.replace(" ", ""), brand.replace("'", " '"), brand.replace("'", " ")}
     if words and words[0].endswith("'s"):
          variants.add(" ".join([words[0][:-2]] + words[1:]))
     return {" ".join(v.split()) for v in variants}


def mentions_brand(text: str, brand: str) -> bool:
     normalized = " ".join(text.lower().split())
     if any(variant in normalized for variant in brand_variants(brand)):
          return True
     target = brand.lower().replace("'", "")
     size = len(target.split())
     words = normalized.split()
     for i in range(len(words) - size + 1):
          if similarity(" ".join(words[i:i + size]), target) >= BRAND_SIMILARITY:
               return True
     return False


def matched_keywords(text: str) -> list[str]:
     lowered = text.lower()
     return [keyword for keyword in RECEIPT_KEYWORDS if keyword in lowered]


def has_price(text: str) -> bool:
     lowered = text.lower()
     if any(word in lowered for word in PRICE_WORDS):
          return True
     return any(5 <= float(value) <= 500 for value in PRICE_PATTERN.findall(lowered))


def _date_from_parts(parts: dict) -> Optional[date]:
     month = parts["m"]
     month = MONTHS.index(month[:3]) + 1 if month[:3] in MONTHS else int(month)
     year = int(parts["y"])
     if year < 100:
          year += 2000
     try:
          return date(year, month, int(parts["d"]))
     except ValueError:
          return None


def find_receipt_date(text: str) -> tuple[bool, Optional[date]]:
     """
     Returns (date-like text found, first date that parses). A receipt can show
     something date-shaped that is not a real calendar date.
     """
     lowered = text.lower()
     found = False
     for pattern, order in DATE_PATTERNS:
          for match in pattern.finditer(lowered):
               found = True
               parsed = _date_from_parts(dict(zip(order, match.groups())))
               if parsed is not None:
                    return True, parsed
     return found, None


def screenshot_warnings(labels: Iterable[str], dominant_colors: Optional[int]) -> list[str]:
     warnings = []
     lowered = [label.lower() for label in labels]
     if any(indicator in label for label in lowered for indicator in SCREENSHOT_LABELS):
          warnings.append("Image appears to be a screenshot of a digital screen")
     # None means the reader did not report colours
     if dominant_colors is not None and dominant_colors < MIN_DOMINANT_COLORS:
          warnings.append("Image has suspiciously few colors (may be edited or digital)")
     return warnings


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------

def ocr_score(brand_found: bool, keywords: list[str]) -> float:
     if not brand_found:
          return 0.0
     score = 0.4
     if len(keywords) >= 2:
          score += 0.3
     score += len(keywords) / len(RECEIPT_KEYWORDS) * 0.3
     return min(score, 1.0)


def image_quality_score(warnings: list[str]) -> float:
     score = 1.0
     if warnings:
          score -= 0.5
     score -= len(warnings) * 0.2
     return max(score, 0.0)


def session_score(scan_confidence: Optional[float]) -> float:
     confidence = scan_confidence or 0.0
     if confidence >= 0.9:
          return 1.0
     if confidence >= 0.7:
          return 0.8
     if confidence >= 0.5:
          return 0.6
     return 0.3


def text_length_score(text: str) -> float:
     length = len(text)
     if length >= 200:
          return 1.0
     if length >= 150:
          return 0.8
     if length >= 100:
          return 0.5
     if length >= 50:
          return 0.3
     return 0.1


def keyword_score(keywords: list[str]) -> float:
     if len(keywords) >= 6:
          return 1.0
     if len(keywords) >= 4:
          return 0.8
     if len(keywords) >= 2:
          return 0.5
     return 0.2


def _hint(components: dict) -> Optional[str]:
     if components["ocr"] < 0.7:
          return "unclear receipt text or missing brand"
     if components["image_quality"] < 0.5:
          return "possible screenshot or edited image"
     if components["session"] < 0.5:
          return "unclear product scan"
     if components["text_length"] < 0.5:
          return "receipt text too short"
     return None


def assess_receipt(
     text: str,
     labels: Iterable[str],
     dominant_colors: Optional[int],
     scan_confidence: Optional[float],
     brand: str,
     today: date,
     max_age: timedelta = timedelta(days=30),
) -> ReceiptAssessment:
     text = text or ""
     brand_found = mentions_brand(text, brand)
     keywords = matched_keywords(text)
     warnings = screenshot_warnings(labels, dominant_colors)

     errors = list(warnings)
     if not brand_found:
          errors.append(f"Receipt must show a {string.capwords(brand)} purchase")
     if len(keywords) < MIN_KEYWORDS:
          errors.append("Image does not appear to be a valid receipt (missing receipt keywords)")
     if len(text) < MIN_TEXT_LENGTH:
          errors.append("Receipt text too short - please upload a complete receipt")
     if not has_price(text):
          errors.append("No price or total amount found on receipt")

     date_found, receipt_date = find_receipt_date(text)
     if not date_found:
          errors.append("No date found on receipt")
     elif receipt_date is not None:
          if receipt_date > today:
               errors.append("Receipt date is in the future")
          elif receipt_date < today - max_age:
               errors.append(f"Receipt is too old (must be within last {max_age.days} days)")

     components = {
          "ocr": ocr_score(brand_found, keywords),
          "image_quality": image_quality_score(warnings),
          "session": session_score(scan_confidence),
          "text_length": text_length_score(text),
          "keywords": keyword_score(keywords),
     }
     score = sum(components[name] * weight for name, weight in WEIGHTS.items())
     return ReceiptAssessment(
          score=round(min(max(score, 0.0), 1.0), 4),
          errors=tuple(errors),
          hint=_hint(components),
          components=components,
     )

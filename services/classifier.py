# services/classifier.py
"""
Classifier boundary.

Two collaborators read images for the engine; which implementation backs each
is decided here, at construction time.

Scans: an opaque (label, confidence, bounding box) triple.
- VisionClassifier: Google Cloud Vision object localization over REST
- StubClassifier: fixed high-confidence result, for test deployments

Receipts: a ReceiptAssessment (score + findings, see services/receipt_scoring.py).
- VisionReceiptValidator: Vision OCR, labels and image properties, scored
- StubReceiptValidator: fixed clean, high-confidence assessment
"""
import base64
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Optional

import requests

from config import Settings
from services.errors import ClassifierUnavailable
from services.receipt_scoring import ReceiptAssessment, assess_receipt
from utils.clock import utcnow

logger = logging.getLogger(__name__)

VISION_URL = "https://vision.googleapis.com/v1/images:annotate"


@dataclass(frozen=True)
class ClassifierOutput:
     label: str
     confidence: float
     bounding_box: Optional[dict] = None


class Classifier:
     """Interface: classify(image bytes) -> ClassifierOutput, or raise ClassifierUnavailable."""

     def classify(self, data: bytes, content_type: str) -> ClassifierOutput:
          raise NotImplementedError


class ReceiptValidator:
     """Interface: assess(image bytes, scan confidence) -> ReceiptAssessment, or raise ClassifierUnavailable."""

     def assess(self, data: bytes, content_type: str, scan_confidence: Optional[float] = None) -> ReceiptAssessment:
          raise NotImplementedError


class StubClassifier(Classifier):

     def __init__(self, label: str = "test-mode", confidence: float = 0.99):
          self.label = label
          self.confidence = confidence

     def classify(self, data: bytes, content_type: str) -> ClassifierOutput:
          return ClassifierOutput(
               label=self.label,
               confidence=self.confidence,
               bounding_box={"x": 0.25, "y": 0.1, "width": 0.5, "height": 0.8},
          )


class StubReceiptValidator(ReceiptValidator):

     def __init__(self, score: float = 0.99, errors: tuple = (), hint: Optional[str] = None):
          self.score = score
          self.errors = tuple(errors)
          self.hint = hint

     def assess(self, data: bytes, content_type: str, scan_confidence: Optional[float] = None) -> ReceiptAssessment:
          return ReceiptAssessment(score=self.score, errors=self.errors, hint=self.hint)


def _bounding_box(vertices: list[dict]) -> Optional[dict]:
     if not vertices:
          return None
     xs = [v.get("x", 0.0) for v in vertices]
     ys = [v.get("y", 0.0) for v in vertices]
     return {
          "x": min(xs),
          "y": min(ys),
          "width": max(xs) - min(xs),
          "height": max(ys) - min(ys),
     }


def _clamp(score) -> float:
     return max(0.0, min(1.0, float(score or 0.0)))


class _VisionClient:
     """One images:annotate request; every failure surfaces as ClassifierUnavailable."""

     def __init__(self, api_key: str, timeout: float = 20.0, session: Optional[requests.Session] = None):
          self._api_key = api_key
          self._timeout = timeout
          self._http = session or requests.Session()

     def _annotate(self, data: bytes, features: list[dict]) -> dict:
          payload = {
               "requests": [
                    {
                         "image": {"content": base64.b64encode(data).decode()},
                         "features": features,
                    }
               ]
          }
          try:
               response = self._http.post(
                    VISION_URL,
                    params={"key": self._api_key},
                    json=payload,
                    timeout=self._timeout,
               )
          except requests.RequestException as e:
               logger.warning(f"Vision request failed: {e}")
               raise ClassifierUnavailable("Image classifier unreachable") from e

          if response.status_code != 200:
               logger.warning(f"Vision API error {response.status_code}: {response.text[:200]}")
               raise ClassifierUnavailable(f"Image classifier returned {response.status_code}")

          result = (response.json().get("responses") or [{}])[0]
          if "error" in result:
               raise ClassifierUnavailable(result["error"].get("message", "Image classifier error"))
          return result


class VisionClassifier(_VisionClient, Classifier):

     def classify(self, data: bytes, content_type: str) -> ClassifierOutput:
          result = self._annotate(data, [
               {"type": "OBJECT_LOCALIZATION", "maxResults": 10},
               {"type": "LABEL_DETECTION", "maxResults": 10},
          ])

          objects = result.get("localizedObjectAnnotations") or []
          if objects:
               best = max(objects, key=lambda o: o.get("score", 0.0))
               return ClassifierOutput(
                    label=best.get("name", "unknown"),
                    confidence=_clamp(best.get("score")),
                    bounding_box=_bounding_box((best.get("boundingPoly") or {}).get("normalizedVertices") or []),
               )

          labels = result.get("labelAnnotations") or []
          if labels:
               best = max(labels, key=lambda l: l.get("score", 0.0))
               return ClassifierOutput(label=best.get("description", "unknown"), confidence=_clamp(best.get("score")))

          return ClassifierOutput(label="unknown", confidence=0.0)


class VisionReceiptValidator(_VisionClient, ReceiptValidator):
     """
     Reads the receipt with DOCUMENT_TEXT_DETECTION (dense-text OCR) and checks
     for screenshots through labels and dominant colours, in the same request.
     """

     def __init__(
          self,
          api_key: str,
          brand: str,
          max_age: timedelta = timedelta(days=30),
          timeout: float = 20.0,
          session: Optional[requests.Session] = None,
          clock: Callable[[], datetime] = utcnow,
     ):
          super().__init__(api_key, timeout=timeout, session=session)
          self._brand = brand
          self._max_age = max_age
          self._clock = clock

     def _today(self) -> date:
          return self._clock().date()

     def assess(self, data: bytes, content_type: str, scan_confidence: Optional[float] = None) -> ReceiptAssessment:
          result = self._annotate(data, [
               {"type": "DOCUMENT_TEXT_DETECTION"},
               {"type": "IMAGE_PROPERTIES"},
               {"type": "LABEL_DETECTION", "maxResults": 20},
          ])

          text = (result.get("fullTextAnnotation") or {}).get("text") or ""
          labels = [l.get("description", "") for l in result.get("labelAnnotations") or []]
          properties = result.get("imagePropertiesAnnotation")
          dominant_colors = None
          if properties is not None:
               dominant_colors = len((properties.get("dominantColors") or {}).get("colors") or [])

          assessment = assess_receipt(
               text,
               labels,
               dominant_colors,
               scan_confidence,
               brand=self._brand,
               today=self._today(),
               max_age=self._max_age,
          )
          logger.info(
               f"Receipt read: {len(text)} chars, score {assessment.score:.2f}, "
               f"{len(assessment.errors)} finding(s)"
          )
          return assessment


def build_classifier(settings: Settings) -> Classifier:
     if settings.classifier_mode == "stub":
          logger.warning("Using stub classifier: every image is classified with high confidence")
          return StubClassifier()
     if not settings.google_vision_api_key:
          raise ValueError("GOOGLE_VISION_API_KEY is not set (set CLASSIFIER_MODE=stub for test deployments)")
     return VisionClassifier(settings.google_vision_api_key, timeout=settings.classifier_timeout)


def build_receipt_validator(settings: Settings, clock: Callable[[], datetime] = utcnow) -> ReceiptValidator:
     if settings.classifier_mode == "stub":
          logger.warning("Using stub receipt validator: every receipt scores high")
          return StubReceiptValidator()
     if not settings.google_vision_api_key:
          raise ValueError("GOOGLE_VISION_API_KEY is not set (set CLASSIFIER_MODE=stub for test deployments)")
     return VisionReceiptValidator(
          settings.google_vision_api_key,
          brand=settings.receipt_brand,
          max_age=settings.receipt_max_age,
          timeout=settings.classifier_timeout,
          clock=clock,
     )

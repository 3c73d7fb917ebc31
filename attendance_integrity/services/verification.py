from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Protocol
from urllib import error as urllib_error
from urllib import request as urllib_request

from sqlalchemy.orm import Session

from attendance_integrity.audit import (
    ENTITY_ATTENDANCE_EVENT,
    FACE_VERIFICATION_ATTEMPT,
    FACE_VERIFICATION_ERROR,
    AuditTrail,
)
from attendance_integrity.errors import InvalidPhotoError
from attendance_integrity.models import AuditSeverity, UserAccount

logger = logging.getLogger("attendance_integrity.verification")

MATCH_THRESHOLD = 75
LOW_CONFIDENCE_THRESHOLD = 60
MIN_PHOTO_BYTES = 10 * 1024
MAX_PHOTO_BYTES = 10 * 1024 * 1024
IMAGE_DATA_URL_PREFIX = "data:image/"

REASON_MATCHED = "face matched"
REASON_LOW_CONFIDENCE = "low confidence - requires review"
REASON_NO_MATCH = "face does not match"
REASON_NO_REFERENCE = "no reference photo"
REASON_SERVICE_ERROR = "verification service error"
REASON_NOT_PROVIDED = "no photo provided"


class FaceMatcherError(Exception):
    pass


class FaceMatcher(Protocol):
    def compare(self, reference_photo: str, captured_photo: str) -> float: ...


@dataclass(frozen=True)
class VerificationResult:
    matched: bool
    confidence: int
    reason: str

    def below(self, threshold: int) -> bool:
        return self.confidence < threshold


class HttpFaceMatcher:
    def __init__(self, url: str, *, timeout_seconds: int = 10):
        self._url = url
        self._timeout_seconds = max(1, timeout_seconds)

    def compare(self, reference_photo: str, captured_photo: str) -> float:
        body = json.dumps({"reference": reference_photo, "candidate": captured_photo}).encode("utf-8")
        http_request = urllib_request.Request(
            url=self._url,
            data=body,
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib_request.urlopen(http_request, timeout=self._timeout_seconds) as response:
                payload = json.loads(response.read().decode("utf-8"))
        except urllib_error.HTTPError as exc:
            raise FaceMatcherError(f"face matcher returned HTTP {exc.code}") from exc
        except (urllib_error.URLError, TimeoutError, ValueError) as exc:
            raise FaceMatcherError(f"face matcher unreachable: {exc}") from exc

        confidence = payload.get("confidence") if isinstance(payload, dict) else None
        if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
            raise FaceMatcherError("face matcher response has no numeric confidence")
        if not math.isfinite(confidence):
            raise FaceMatcherError(f"face matcher returned a non-finite confidence: {confidence}")
        return float(confidence)


class UnconfiguredFaceMatcher:
    def compare(self, reference_photo: str, captured_photo: str) -> float:
        raise FaceMatcherError("face matcher is not configured")


def estimate_photo_bytes(photo: str) -> int:
    _, _, encoded = photo.partition(",")
    return (len(encoded or photo) * 3) // 4


def validate_photo(
    photo: str | None,
    *,
    min_bytes: int = MIN_PHOTO_BYTES,
    max_bytes: int = MAX_PHOTO_BYTES,
) -> list[str]:
    if photo is None or not photo.strip():
        return ["Photo is empty"]

    issues: list[str] = []
    header, separator, _ = photo.partition(",")
    if not photo.startswith(IMAGE_DATA_URL_PREFIX) or not separator or ";base64" not in header:
        issues.append("Invalid image format")

    size_bytes = estimate_photo_bytes(photo)
    if size_bytes < min_bytes:
        issues.append(f"Image too small (< {min_bytes // 1024}KB)")
    if size_bytes > max_bytes:
        issues.append(f"Image too large (> {max_bytes // (1024 * 1024)}MB)")
    return issues


def load_reference_photo(session_factory: Callable[[], Session]) -> Callable[[str], str | None]:
    def _load(user_id: str) -> str | None:
        with session_factory() as db:
            account = db.get(UserAccount, user_id)
            if account is None:
                return None
            return account.reference_photo or None

    return _load


class FaceVerificationAdapter:
    """Turns a pluggable face matcher into a thresholded, fail-closed verdict."""

    def __init__(
        self,
        matcher: FaceMatcher,
        reference_loader: Callable[[str], str | None],
        audit: AuditTrail,
        *,
        match_threshold: int = MATCH_THRESHOLD,
        low_confidence_threshold: int = LOW_CONFIDENCE_THRESHOLD,
        min_photo_bytes: int = MIN_PHOTO_BYTES,
        max_photo_bytes: int = MAX_PHOTO_BYTES,
    ):
        if low_confidence_threshold > match_threshold:
            raise ValueError("low_confidence_threshold must not exceed match_threshold")
        self._matcher = matcher
        self._reference_loader = reference_loader
        self._audit = audit
        self.match_threshold = match_threshold
        self.low_confidence_threshold = low_confidence_threshold
        self._min_photo_bytes = min_photo_bytes
        self._max_photo_bytes = max_photo_bytes

    def validate(self, photo: str | None) -> None:
        issues = validate_photo(photo, min_bytes=self._min_photo_bytes, max_bytes=self._max_photo_bytes)
        if issues:
            raise InvalidPhotoError(issues)

    def score(self, owner_user_id: str, captured_photo: str) -> VerificationResult:
        issues = validate_photo(captured_photo, min_bytes=self._min_photo_bytes, max_bytes=self._max_photo_bytes)
        if issues:
            self._audit_error(owner_user_id, {"stage": "validation", "issues": issues})
            raise InvalidPhotoError(issues)

        try:
            reference_photo = self._reference_loader(owner_user_id)
        except Exception as exc:
            logger.exception("reference_photo_load_failed", extra={"user_id": owner_user_id})
            self._audit_error(owner_user_id, {"stage": "reference", "error": str(exc)})
            return VerificationResult(matched=False, confidence=0, reason=REASON_SERVICE_ERROR)

        if not reference_photo:
            result = VerificationResult(matched=False, confidence=0, reason=REASON_NO_REFERENCE)
            self._audit_attempt(owner_user_id, result)
            return result

        try:
            raw_confidence = self._matcher.compare(reference_photo, captured_photo)
        except Exception as exc:
            logger.warning(
                "face_matcher_failed",
                extra={"user_id": owner_user_id, "error": str(exc) or exc.__class__.__name__},
            )
            self._audit_error(owner_user_id, {"stage": "matcher", "error": str(exc) or exc.__class__.__name__})
            return VerificationResult(matched=False, confidence=0, reason=REASON_SERVICE_ERROR)

        try:
            confidence = float(raw_confidence)
        except (TypeError, ValueError):
            confidence = math.nan
        if not math.isfinite(confidence):
            logger.warning(
                "face_matcher_invalid_confidence",
                extra={"user_id": owner_user_id, "confidence": repr(raw_confidence)},
            )
            self._audit_error(owner_user_id, {"stage": "matcher", "error": f"non-finite confidence {raw_confidence!r}"})
            return VerificationResult(matched=False, confidence=0, reason=REASON_SERVICE_ERROR)

        result = self._apply_thresholds(confidence)
        self._audit_attempt(owner_user_id, result)
        return result

    def _apply_thresholds(self, raw_confidence: float) -> VerificationResult:
        confidence = int(round(max(0.0, min(100.0, raw_confidence))))
        if confidence >= self.match_threshold:
            return VerificationResult(matched=True, confidence=confidence, reason=REASON_MATCHED)
        if confidence >= self.low_confidence_threshold:
            return VerificationResult(matched=False, confidence=confidence, reason=REASON_LOW_CONFIDENCE)
        return VerificationResult(matched=False, confidence=confidence, reason=REASON_NO_MATCH)

    def _audit_attempt(self, owner_user_id: str, result: VerificationResult) -> None:
        self._audit.record(
            actor_user_id=owner_user_id,
            action=FACE_VERIFICATION_ATTEMPT,
            entity_type=ENTITY_ATTENDANCE_EVENT,
            severity=AuditSeverity.INFO if result.matched else AuditSeverity.WARNING,
            metadata={
                "confidence": result.confidence,
                "matched": result.matched,
                "reason": result.reason,
            },
        )

    def _audit_error(self, owner_user_id: str, details: dict[str, Any]) -> None:
        self._audit.record(
            actor_user_id=owner_user_id,
            action=FACE_VERIFICATION_ERROR,
            entity_type=ENTITY_ATTENDANCE_EVENT,
            severity=AuditSeverity.ERROR,
            metadata={"confidence": 0, "matched": False, **details},
        )

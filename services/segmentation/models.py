# services/segmentation/models.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

logger = logging.getLogger(__name__)


class OutputMode(str, Enum):
    FLATTEN = "flatten"
    BY_ORIGINAL = "by_original"
    BY_DATE = "by_date"


class ModelType(str, Enum):
    FLASH = "flash"
    PRO = "pro"


class VerificationStatus(str, Enum):
    VERIFIED = "verified"
    MISMATCH = "mismatch"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


class FileStatus(str, Enum):
    IDLE = "idle"
    CONVERTING = "converting"
    ANALYZING = "analyzing"
    SPLITTING = "splitting"
    WAITING_REVIEW = "waiting_review"
    DONE = "done"
    ERROR = "error"


class IllegalTransition(RuntimeError):
    """Raised when a file is moved to a status its current status cannot reach."""


TRANSITIONS: Dict[FileStatus, FrozenSet[FileStatus]] = {
    FileStatus.IDLE: frozenset({FileStatus.CONVERTING}),
    FileStatus.CONVERTING: frozenset({FileStatus.ANALYZING, FileStatus.ERROR}),
    FileStatus.ANALYZING: frozenset({FileStatus.SPLITTING, FileStatus.DONE, FileStatus.ERROR}),
    FileStatus.SPLITTING: frozenset({FileStatus.WAITING_REVIEW, FileStatus.DONE, FileStatus.ERROR}),
    FileStatus.WAITING_REVIEW: frozenset({FileStatus.DONE}),
    FileStatus.DONE: frozenset(),
    FileStatus.ERROR: frozenset(),
}


def check_transition(current: FileStatus, target: FileStatus) -> None:
    allowed = TRANSITIONS[current]
    if target not in allowed:
        raise IllegalTransition(f"{current.value} -> {target.value}")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ReferenceRecord:
    id: str
    order_id: str
    customers: str
    date_created: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ReferenceRecord":
        date_created = d.get("dateCreated")
        return cls(
            id=str(d["id"]),
            order_id=str(d["orderId"]),
            customers=str(d["customers"]),
            date_created=str(date_created) if date_created is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"id": self.id, "orderId": self.order_id, "customers": self.customers}
        if self.date_created is not None:
            out["dateCreated"] = self.date_created
        return out


@dataclass(frozen=True)
class Segment:
    """
    One logical document inside a source file.

    Pages are 1-based and inclusive. Instances are never mutated; verification
    and review produce annotated copies via `annotate`.
    """

    start_page: int
    end_page: int
    delivery_id: str
    customer_name: str
    delivery_date: str
    confidence: float
    customer_id: Optional[str] = None
    needs_review: bool = False
    review_reason: Optional[str] = None
    verification_status: Optional[VerificationStatus] = None
    db_match: Optional[ReferenceRecord] = None
    final_filename: Optional[str] = None

    @property
    def page_range(self) -> str:
        return f"{self.start_page}-{self.end_page}"

    def annotate(self, **changes: Any) -> "Segment":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startPage": self.start_page,
            "endPage": self.end_page,
            "deliveryId": self.delivery_id,
            "customerName": self.customer_name,
            "customerId": self.customer_id,
            "deliveryDate": self.delivery_date,
            "confidence": self.confidence,
            "needsReview": self.needs_review,
            "reviewReason": self.review_reason,
            "verificationStatus": self.verification_status.value if self.verification_status else None,
            "dbMatch": self.db_match.to_dict() if self.db_match else None,
            "finalFilename": self.final_filename,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Segment":
        status = d.get("verificationStatus")
        match = d.get("dbMatch")
        return cls(
            start_page=int(d["startPage"]),
            end_page=int(d["endPage"]),
            delivery_id=str(d.get("deliveryId") or ""),
            customer_name=str(d.get("customerName") or ""),
            customer_id=d.get("customerId"),
            delivery_date=str(d.get("deliveryDate") or ""),
            confidence=float(d.get("confidence") or 0.0),
            needs_review=bool(d.get("needsReview", False)),
            review_reason=d.get("reviewReason"),
            verification_status=VerificationStatus(status) if status else None,
            db_match=ReferenceRecord.from_dict(match) if match else None,
            final_filename=d.get("finalFilename"),
        )


@dataclass(frozen=True)
class RenderedPages:
    images: Tuple[bytes, ...]  # PNG, page order
    texts: Tuple[str, ...]

    @property
    def page_count(self) -> int:
        return len(self.images)


@dataclass(frozen=True)
class SplitPiece:
    filename: str
    data: bytes
    segment: Optional[Segment] = None  # the segment this piece was cut from


@dataclass
class SourceFile:
    id: str
    name: str
    payload_uri: str
    arrived_at: datetime = field(default_factory=utc_now)
    duplicate: bool = False
    status: FileStatus = FileStatus.IDLE
    segments: List[Segment] = field(default_factory=list)
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def advance(self, target: FileStatus, error: Optional[str] = None) -> None:
        check_transition(self.status, target)
        logger.debug("%s: %s -> %s", self.name, self.status.value, target.value)
        self.status = target
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "arrived_at": self.arrived_at.isoformat(),
            "duplicate": self.duplicate,
            "status": self.status.value,
            "error": self.error,
            "warnings": list(self.warnings),
            "segments": [s.to_dict() for s in self.segments],
        }


@dataclass
class ReviewItem:
    id: str
    file_id: str
    file_name: str
    data: bytes
    filename: str  # editable stem, no ".pdf"
    segment: Segment
    queued_at: datetime
    # export context frozen when the item was queued
    output_mode: OutputMode
    include_original: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "file_id": self.file_id,
            "file_name": self.file_name,
            "filename": self.filename,
            "segment": self.segment.to_dict(),
            "queued_at": self.queued_at.isoformat(),
            "output_mode": self.output_mode.value,
            "include_original": self.include_original,
            "size_bytes": len(self.data),
        }


@dataclass(frozen=True)
class HistoryRecord:
    filename: str
    processed_at: datetime
    segments: Tuple[Segment, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "processedAt": self.processed_at.isoformat(),
            "segments": [s.to_dict() for s in self.segments],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "HistoryRecord":
        return cls(
            filename=str(d["filename"]),
            processed_at=datetime.fromisoformat(str(d["processedAt"])),
            segments=tuple(Segment.from_dict(s) for s in d.get("segments") or []),
        )

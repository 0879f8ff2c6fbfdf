# services/verification/verifier.py
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Pattern, Union

from services.segmentation.models import Segment, VerificationStatus
from services.verification.reference_table import ReferenceTable

DEFAULT_CUSTOMER_ID_STRIP = r"^#"

_PatternLike = Union[str, Pattern[str], None]


def _compile(pattern: _PatternLike) -> Optional[Pattern[str]]:
    if pattern is None or pattern == "":
        return None
    if isinstance(pattern, str):
        return re.compile(pattern)
    return pattern


def normalize_customer_id(value: str, strip_pattern: _PatternLike = DEFAULT_CUSTOMER_ID_STRIP) -> str:
    rx = _compile(strip_pattern)
    return rx.sub("", value, count=1) if rx is not None else value


def _join_reason(previous: Optional[str], reason: str) -> str:
    return f"{previous} | {reason}" if previous else reason


def verify_segment(
    segment: Segment,
    table: ReferenceTable,
    *,
    strip_pattern: _PatternLike = DEFAULT_CUSTOMER_ID_STRIP,
) -> Segment:
    """
    Reconcile one extracted segment with the reference table.

    - empty table  -> UNKNOWN, nothing else touched
    - no id match  -> NOT_FOUND, flagged for review
    - id match but customer id differs -> MISMATCH, flagged, record attached
    - otherwise    -> VERIFIED, customer name taken from the record

    An AI-raised review flag is never cleared here.
    """
    if not table:
        return segment.annotate(verification_status=VerificationStatus.UNKNOWN)

    record = table.lookup(segment.delivery_id)
    if record is None:
        return segment.annotate(
            verification_status=VerificationStatus.NOT_FOUND,
            needs_review=True,
            review_reason=_join_reason(
                segment.review_reason,
                f'Delivery ID "{segment.delivery_id}" not found in database',
            ),
        )

    if segment.customer_id and normalize_customer_id(segment.customer_id, strip_pattern) != record.order_id:
        return segment.annotate(
            verification_status=VerificationStatus.MISMATCH,
            db_match=record,
            needs_review=True,
            review_reason=(
                f'CRITICAL: Customer ID mismatch! AI extracted "{segment.customer_id}" '
                f'but database shows "{record.order_id}" for this delivery. Please verify the document.'
            ),
        )

    return segment.annotate(
        verification_status=VerificationStatus.VERIFIED,
        db_match=record,
        customer_name=record.customers,
    )


def verify_segments(
    segments: List[Segment],
    table: ReferenceTable,
    *,
    strip_pattern: _PatternLike = DEFAULT_CUSTOMER_ID_STRIP,
) -> List[Segment]:
    return [verify_segment(s, table, strip_pattern=strip_pattern) for s in segments]


def verification_stats(segments: List[Segment]) -> Dict[str, Any]:
    total = len(segments)
    verified = sum(1 for s in segments if s.verification_status == VerificationStatus.VERIFIED)
    mismatched = sum(1 for s in segments if s.verification_status == VerificationStatus.MISMATCH)
    not_found = sum(1 for s in segments if s.verification_status == VerificationStatus.NOT_FOUND)
    needs_review = sum(1 for s in segments if s.needs_review)
    return {
        "total": total,
        "verified": verified,
        "mismatched": mismatched,
        "not_found": not_found,
        "needs_review": needs_review,
        "verification_rate": f"{(verified / total * 100):.1f}" if total > 0 else "0.0",
    }

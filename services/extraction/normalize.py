# services/extraction/normalize.py
from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from services.segmentation.models import Segment
from services.validation.schema_validation import validate_with_schema

logger = logging.getLogger(__name__)

SEGMENT_SCHEMA = "segment"

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")


def _safe_str(x: Any) -> str:
    if x is None:
        return ""
    if isinstance(x, str):
        return x.strip()
    return str(x).strip()


def _optional_str(x: Any) -> Optional[str]:
    s = _safe_str(x)
    return s or None


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """
    Pull the outermost JSON object out of a model reply.

    Tolerates markdown fences and chatter around the object; returns None
    when no object can be decoded.
    """
    s = _FENCE_RE.sub("", _safe_str(text))
    start = s.find("{")
    end = s.rfind("}")
    if start == -1 or end == -1 or end < start:
        return None
    try:
        parsed = json.loads(s[start : end + 1])
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _coerce(raw: Dict[str, Any]) -> Dict[str, Any]:
    # models often emit page numbers as strings or floats like 2.0
    out = dict(raw)
    for k in ("startPage", "endPage"):
        v = out.get(k)
        if isinstance(v, str) and v.strip().isdigit():
            out[k] = int(v.strip())
        elif isinstance(v, float) and v.is_integer():
            out[k] = int(v)
    for k in ("deliveryId", "customerId"):
        v = out.get(k)
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            out[k] = str(v)
    c = out.get("confidence")
    if isinstance(c, str):
        try:
            out["confidence"] = float(c)
        except ValueError:
            pass
    return out


def normalize_segments(raw: Any) -> List[Segment]:
    """
    Turn raw recognizer output into Segments.

    A non-list is zero segments. Items that fail the segment schema are
    dropped with a warning; they never abort the file.
    """
    if not isinstance(raw, list):
        if raw is not None:
            logger.warning("recognizer returned %s instead of a list; treating as no segments", type(raw).__name__)
        return []

    segments: List[Segment] = []
    for idx, item in enumerate(raw):
        if not isinstance(item, dict):
            logger.warning("dropping segment #%d: not an object", idx)
            continue
        item = _coerce(item)
        ok, msg = validate_with_schema(item, SEGMENT_SCHEMA)
        if not ok:
            logger.warning("dropping segment #%d: %s", idx, msg)
            continue
        segments.append(
            Segment(
                start_page=int(item["startPage"]),
                end_page=int(item["endPage"]),
                delivery_id=_safe_str(item["deliveryId"]),
                customer_name=_safe_str(item["customerName"]),
                customer_id=_optional_str(item.get("customerId")),
                delivery_date=_safe_str(item["deliveryDate"]),
                confidence=float(item["confidence"]),
                needs_review=bool(item.get("needsReview") or False),
                review_reason=_optional_str(item.get("reviewReason")),
            )
        )
    return segments


def coverage_gaps(segments: List[Segment], total_pages: int) -> Tuple[List[int], List[int]]:
    """
    Returns (uncovered pages, pages claimed by more than one segment) for
    the range 1..total_pages.
    """
    counts = [0] * (total_pages + 1)
    for s in segments:
        lo = max(1, s.start_page)
        hi = min(total_pages, s.end_page)
        for p in range(lo, hi + 1):
            counts[p] += 1
    missing = [p for p in range(1, total_pages + 1) if counts[p] == 0]
    overlapping = [p for p in range(1, total_pages + 1) if counts[p] > 1]
    return missing, overlapping

from __future__ import annotations

from typing import Any, Dict, List, Optional

from services.export.naming import NameScope, build_segment_filename
from services.segmentation.models import RenderedPages, SplitPiece


def seg(
    start: int,
    end: int,
    delivery_id: str,
    *,
    date: str = "2024-01-05",
    name: str = "Acme",
    customer_id: Optional[str] = None,
    confidence: float = 0.95,
    needs_review: bool = False,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    d: Dict[str, Any] = {
        "startPage": start,
        "endPage": end,
        "deliveryId": delivery_id,
        "customerName": name,
        "deliveryDate": date,
        "confidence": confidence,
        "needsReview": needs_review,
    }
    if customer_id is not None:
        d["customerId"] = customer_id
    if reason is not None:
        d["reviewReason"] = reason
    return d


class FakeRenderer:
    """Payload is `<key>:<pages>`; every page carries the key as its text layer."""

    def __init__(self):
        self.calls = 0

    def render(self, payload: bytes) -> RenderedPages:
        self.calls += 1
        key, _, pages = payload.decode().partition(":")
        if key == "broken":
            raise RuntimeError("cannot open broken document")
        n = int(pages or 1)
        return RenderedPages(images=(b"png",) * n, texts=(key,) * n)


class FakeRecognizer:
    def __init__(self, script: Dict[str, Any]):
        self.script = script
        self.calls: List[Dict[str, Any]] = []

    def analyze(self, pages, *, min_confidence, model_type):
        key = pages.texts[0]
        self.calls.append({"key": key, "min_confidence": min_confidence, "model_type": model_type})
        result = self.script.get(key, [])
        if isinstance(result, Exception):
            raise result
        return result


class FakeSplitter:
    def __init__(self, empty: bool = False):
        self.empty = empty

    def split(self, payload, segments):
        if self.empty:
            return []
        scope = NameScope()
        return [
            SplitPiece(
                filename=scope.resolve("", build_segment_filename(s)),
                data=f"%PDF-{s.delivery_id}-{s.page_range}".encode(),
                segment=s,
            )
            for s in segments
            if s.end_page >= s.start_page
        ]


REFERENCE = [
    {"id": "DN-1", "orderId": "8971", "customers": "Acme Corp"},
    {"id": "DN-2", "orderId": "5500", "customers": "Globex"},
]

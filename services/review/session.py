# services/review/session.py
from __future__ import annotations

from dataclasses import replace
from enum import Enum
from typing import Dict, Iterable, List, Set

from services.export.naming import sanitize_filename
from services.segmentation.models import ReviewItem, VerificationStatus


class ReviewFilter(str, Enum):
    ALL = "all"
    FLAGGED = "flagged"


class UnknownReviewItem(KeyError):
    pass


class InvalidReviewName(ValueError):
    pass


def is_flagged(item: ReviewItem, min_confidence: float) -> bool:
    seg = item.segment
    return (
        seg.needs_review
        or seg.confidence < min_confidence
        or seg.verification_status in (VerificationStatus.MISMATCH, VerificationStatus.NOT_FOUND)
    )


class ReviewQueue:
    """Authoritative set of items awaiting confirmation, in queue order."""

    def __init__(self) -> None:
        self._items: List[ReviewItem] = []

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(list(self._items))

    def extend(self, items: Iterable[ReviewItem]) -> None:
        self._items.extend(items)

    def remove_file(self, file_id: str) -> int:
        before = len(self._items)
        self._items = [i for i in self._items if i.file_id != file_id]
        return before - len(self._items)

    def remove_ids(self, ids: Set[str]) -> int:
        before = len(self._items)
        self._items = [i for i in self._items if i.id not in ids]
        return before - len(self._items)

    def snapshot(self) -> List[ReviewItem]:
        return [replace(i) for i in self._items]


class ReviewSession:
    """
    Short-lived working copy of the review queue.

    Renames and deletions only touch the copy; the coordinator reconciles the
    copy against the queue when the session is saved. A deleted item is
    simply gone: it is neither exported nor recorded in the ledger.
    """

    def __init__(
        self,
        items: Iterable[ReviewItem],
        *,
        min_confidence: float,
        filter_mode: ReviewFilter = ReviewFilter.ALL,
    ) -> None:
        self._items: Dict[str, ReviewItem] = {i.id: i for i in items}
        self.initial_ids: Set[str] = set(self._items)
        self.min_confidence = min_confidence
        self.filter_mode = filter_mode

    @property
    def items(self) -> List[ReviewItem]:
        return list(self._items.values())

    def get(self, item_id: str) -> ReviewItem:
        try:
            return self._items[item_id]
        except KeyError:
            raise UnknownReviewItem(item_id) from None

    def is_flagged(self, item: ReviewItem) -> bool:
        return is_flagged(item, self.min_confidence)

    def visible_items(self) -> List[ReviewItem]:
        if self.filter_mode == ReviewFilter.FLAGGED:
            return [i for i in self._items.values() if self.is_flagged(i)]
        return self.items

    def set_filter(self, mode: ReviewFilter) -> None:
        self.filter_mode = ReviewFilter(mode)

    def rename(self, item_id: str, value: str) -> ReviewItem:
        item = self.get(item_id)
        name = sanitize_filename(value).strip()
        if not name:
            raise InvalidReviewName(item_id)
        item.filename = name
        return item

    def delete(self, item_id: str) -> None:
        self.get(item_id)
        del self._items[item_id]

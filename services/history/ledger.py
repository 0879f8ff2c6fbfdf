# services/history/ledger.py
from __future__ import annotations

import csv
import logging
from typing import Any, Dict, List, Optional

import pandas as pd

from services.export.naming import build_segment_filename
from services.ingestion.storage import Storage
from services.segmentation.models import HistoryRecord

logger = logging.getLogger(__name__)

LEDGER_STATE_NAME = "history.json"
LEDGER_CSV_NAME = "master_log.csv"

COLUMNS = [
    "Original Filename",
    "Processed Date",
    "Generated Filename",
    "Delivery ID",
    "Customer Name",
    "Customer ID",
    "Date Found",
    "Confidence",
    "Verification Status",
    "DB Name",
    "Review Flag",
    "Review Reason",
    "Pages",
]


def _no_commas(v: Optional[str]) -> str:
    return (v or "").replace(",", " ")


class HistoryLedger:
    """
    Append-only log of terminal outcomes, one record per source file.

    When a storage backend is given, the ledger is reloaded from it at
    construction and rewritten atomically after every append.
    """

    def __init__(self, storage: Optional[Storage] = None) -> None:
        self._storage = storage
        self._records: List[HistoryRecord] = []
        if storage is not None:
            self._records = self._load(storage)

    @staticmethod
    def _load(storage: Storage) -> List[HistoryRecord]:
        try:
            raw = storage.get_json_if_exists(name=LEDGER_STATE_NAME)
            if raw is None:
                return []
            return [HistoryRecord.from_dict(r) for r in raw]
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("ignoring unreadable ledger state %s: %s", LEDGER_STATE_NAME, e)
            return []

    def __len__(self) -> int:
        return len(self._records)

    @property
    def records(self) -> List[HistoryRecord]:
        return list(self._records)

    def append(self, record: HistoryRecord) -> None:
        self._records.append(record)
        logger.info("ledger: %s recorded with %d segment(s)", record.filename, len(record.segments))
        if self._storage is not None:
            self._storage.put_json_atomic(
                name=LEDGER_STATE_NAME,
                obj=[r.to_dict() for r in self._records],
            )

    def has_filename(self, filename: str) -> bool:
        return any(r.filename == filename for r in self._records)

    def rows(self) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        for rec in self._records:
            processed = rec.processed_at.isoformat()
            if not rec.segments:
                rows.append({**{c: "" for c in COLUMNS},
                             "Original Filename": rec.filename,
                             "Processed Date": processed,
                             "Generated Filename": "(No segments)"})
                continue

            for seg in rec.segments:
                rows.append({
                    "Original Filename": rec.filename,
                    "Processed Date": processed,
                    "Generated Filename": seg.final_filename or build_segment_filename(seg),
                    "Delivery ID": _no_commas(seg.delivery_id),
                    "Customer Name": _no_commas(seg.customer_name),
                    "Customer ID": _no_commas(seg.customer_id),
                    "Date Found": _no_commas(seg.delivery_date),
                    "Confidence": seg.confidence,
                    "Verification Status": seg.verification_status.value if seg.verification_status else "unknown",
                    "DB Name": seg.db_match.customers if seg.db_match else "",
                    "Review Flag": "Yes" if seg.needs_review else "No",
                    "Review Reason": _no_commas(seg.review_reason),
                    "Pages": seg.page_range,
                })
        return rows

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.rows(), columns=COLUMNS)

    def to_csv(self) -> str:
        return self.to_frame().to_csv(index=False, quoting=csv.QUOTE_ALL, lineterminator="\n")

# services/verification/reference_table.py
from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional

from services.segmentation.models import ReferenceRecord
from services.validation.schema_validation import validate_with_schema

SCHEMA_NAME = "reference_table"


class MalformedReferenceLoad(ValueError):
    """The incoming reference table was rejected; the active table is unchanged."""


class ReferenceTable:
    """
    Authoritative delivery records keyed by primary identifier.

    Immutable; the coordinator swaps in a new table on every load. When the
    same primary id appears more than once the first record wins.
    """

    def __init__(self, records: Optional[Iterable[ReferenceRecord]] = None) -> None:
        self._records: List[ReferenceRecord] = list(records or [])
        self._by_id: Dict[str, ReferenceRecord] = {}
        for r in self._records:
            self._by_id.setdefault(r.id, r)

    def __len__(self) -> int:
        return len(self._records)

    def __bool__(self) -> bool:
        return bool(self._records)

    def lookup(self, primary_id: str) -> Optional[ReferenceRecord]:
        return self._by_id.get(primary_id)

    def to_list(self) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in self._records]


def parse_reference_records(raw: Any) -> List[ReferenceRecord]:
    """
    Validate a decoded JSON payload (or JSON text/bytes) as a reference table.

    Raises MalformedReferenceLoad for anything that is not an array of records
    carrying non-empty `id`, `orderId` and `customers`.
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedReferenceLoad(f"Error parsing JSON: {e}") from e

    if not isinstance(raw, list):
        raise MalformedReferenceLoad("Invalid JSON format. Expected an array of records.")

    is_valid, msg = validate_with_schema(raw, SCHEMA_NAME)
    if not is_valid:
        raise MalformedReferenceLoad(
            f"Invalid data structure. Each record must have: id, orderId, and customers fields. ({msg})"
        )

    # jsonschema accepts numbers for the ids, so blank strings are the last gap
    for rec in raw:
        if any(str(rec.get(k, "")).strip() == "" for k in ("id", "orderId", "customers")):
            raise MalformedReferenceLoad(
                "Invalid data structure. Each record must have: id, orderId, and customers fields."
            )

    return [ReferenceRecord.from_dict(rec) for rec in raw]

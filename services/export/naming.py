# services/export/naming.py
from __future__ import annotations

import re
from typing import Dict, Optional, Set

from services.segmentation.models import OutputMode, Segment, VerificationStatus

UNDATED_FOLDER = "Undated"
ORIGINAL_PREFIX = "original_"

_PDF_SUFFIX_RE = re.compile(r"\.pdf$", re.IGNORECASE)
_UNSAFE_RUN_RE = re.compile(r"[^a-z0-9]+", re.IGNORECASE)
_FORBIDDEN_CHARS_RE = re.compile(r'[\\/:*?"<>|]')


def strip_pdf_suffix(name: str) -> str:
    return _PDF_SUFFIX_RE.sub("", name)


def sanitize_filename(value: str) -> str:
    return _FORBIDDEN_CHARS_RE.sub("_", value)


def folder_key(mode: OutputMode, source_name: str, delivery_date: Optional[str] = None) -> str:
    if mode == OutputMode.BY_ORIGINAL:
        return strip_pdf_suffix(source_name)
    if mode == OutputMode.BY_DATE:
        return delivery_date or UNDATED_FOLDER
    return ""


def original_folder_key(mode: OutputMode, source_name: str) -> str:
    # a packet spans several dates, so only by_original gets a folder
    return strip_pdf_suffix(source_name) if mode == OutputMode.BY_ORIGINAL else ""


def original_copy_name(source_name: str) -> str:
    return f"{ORIGINAL_PREFIX}{source_name}"


def build_segment_filename(segment: Segment) -> str:
    """
    `<DeliveryID>_<Date>_<Customer>[_<CustomerID>].pdf`, with the reference
    record's name preferred once the segment is verified.
    """
    safe_id = _UNSAFE_RUN_RE.sub("_", segment.delivery_id or "Unknown")
    safe_date = _UNSAFE_RUN_RE.sub("-", segment.delivery_date or "Date")

    customer = segment.customer_name
    if segment.verification_status == VerificationStatus.VERIFIED and segment.db_match:
        customer = segment.db_match.customers
    safe_customer = _UNSAFE_RUN_RE.sub("_", customer or "Customer")
    safe_cust_id = _UNSAFE_RUN_RE.sub("", segment.customer_id) if segment.customer_id else ""

    suffix = f"_{safe_cust_id}" if safe_cust_id else ""
    return f"{safe_id}_{safe_date}_{safe_customer}{suffix}.pdf"


class NameScope:
    """Names already handed out, per folder, for one export operation."""

    def __init__(self) -> None:
        self._used: Dict[str, Set[str]] = {}

    def resolve(self, folder: str, candidate: str) -> str:
        used = self._used.setdefault(folder, set())
        unique = candidate
        base = strip_pdf_suffix(candidate)
        counter = 1
        while unique in used:
            unique = f"{base}_({counter}).pdf"
            counter += 1
        used.add(unique)
        return unique

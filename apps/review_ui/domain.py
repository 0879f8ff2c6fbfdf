# apps/review_ui/domain.py
from dataclasses import dataclass
from typing import Dict, Any, Optional


@dataclass
class ReviewCard:
    id: str
    file_id: str
    file_name: str
    filename: str              # editable stem, ".pdf" is added on export
    flagged: bool
    verification_status: str   # "verified" | "mismatch" | "not_found" | "unknown"
    confidence: float
    pages: str
    segment: Dict[str, Any]
    review_reason: Optional[str]


@dataclass
class SaveOutcome:
    saved_items: int
    completed_files: int
    archive_name: Optional[str]
    download_path: Optional[str]

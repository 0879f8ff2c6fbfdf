# services/export/assembler.py
from __future__ import annotations

import io
import logging
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional

from services.export.naming import (
    NameScope,
    folder_key,
    original_copy_name,
    original_folder_key,
)
from services.segmentation.models import OutputMode, ReviewItem, SplitPiece

logger = logging.getLogger(__name__)

BATCH_ARCHIVE_PREFIX = "smart_split_batch_"
REVIEW_ARCHIVE_PREFIX = "smart_split_reviewed_"


def archive_name(prefix: str, now: Optional[datetime] = None) -> str:
    ts = (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%S%fZ")
    return f"{prefix}{ts}.zip"


@dataclass
class ArchiveContext:
    """
    Mutable accumulator for one archive: entry path -> bytes, plus the name
    scope the entries were resolved against.
    """

    entries: Dict[str, bytes] = field(default_factory=dict)
    scope: NameScope = field(default_factory=NameScope)
    processed_count: int = 0

    def __len__(self) -> int:
        return len(self.entries)

    def reset(self) -> None:
        self.entries = {}
        self.scope = NameScope()
        self.processed_count = 0


@dataclass(frozen=True)
class DeliveredArchive:
    name: str
    uri: str
    entry_count: int
    paths: List[str]


def _entry_path(folder: str, name: str) -> str:
    return f"{folder}/{name}" if folder else name


class ExportAssembler:
    def place(self, ctx: ArchiveContext, folder: str, candidate: str, data: bytes) -> str:
        name = ctx.scope.resolve(folder, candidate)
        path = _entry_path(folder, name)
        ctx.entries[path] = data
        return path

    def add_pieces(
        self,
        ctx: ArchiveContext,
        *,
        source_name: str,
        pieces: Iterable[SplitPiece],
        output_mode: OutputMode,
    ) -> List[str]:
        paths = []
        for piece in pieces:
            date = piece.segment.delivery_date if piece.segment else None
            folder = folder_key(output_mode, source_name, date)
            paths.append(self.place(ctx, folder, piece.filename, piece.data))
        return paths

    def add_original(
        self,
        ctx: ArchiveContext,
        *,
        source_name: str,
        payload: bytes,
        output_mode: OutputMode,
    ) -> str:
        folder = original_folder_key(output_mode, source_name)
        return self.place(ctx, folder, original_copy_name(source_name), payload)

    def build_review_archive(
        self,
        items: Iterable[ReviewItem],
        originals: Mapping[str, bytes],
    ) -> ArchiveContext:
        """
        Fresh archive for one review save. Folder keys come from the context
        frozen on each item when it was queued, not from live settings.
        """
        ctx = ArchiveContext()
        items = list(items)
        for item in items:
            folder = folder_key(item.output_mode, item.file_name, item.segment.delivery_date)
            self.place(ctx, folder, f"{item.filename}.pdf", item.data)

        seen = set()
        for item in items:
            if item.file_id in seen or not item.include_original:
                continue
            seen.add(item.file_id)
            payload = originals.get(item.file_id)
            if payload is None:
                logger.warning("original bytes for %s are no longer buffered; skipping copy", item.file_name)
                continue
            self.add_original(ctx, source_name=item.file_name, payload=payload, output_mode=item.output_mode)

        return ctx


def to_zip_bytes(ctx: ArchiveContext) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path, data in ctx.entries.items():
            zf.writestr(path, data)
    return buf.getvalue()


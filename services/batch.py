from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from services.export.assembler import (
    BATCH_ARCHIVE_PREFIX,
    REVIEW_ARCHIVE_PREFIX,
    ArchiveContext,
    DeliveredArchive,
    ExportAssembler,
    archive_name,
    to_zip_bytes,
)
from services.export.naming import strip_pdf_suffix
from services.history.ledger import HistoryLedger
from services.ingestion.storage import Storage
from services.pipeline import FileOutcome, PipelineConfig, SplitPipeline
from services.review.session import ReviewFilter, ReviewQueue, ReviewSession
from services.segmentation.models import (
    FileStatus,
    HistoryRecord,
    ModelType,
    OutputMode,
    ReviewItem,
    SourceFile,
    utc_now,
)
from services.verification.reference_table import ReferenceTable, parse_reference_records

logger = logging.getLogger(__name__)

REFERENCE_STATE_NAME = "reference_table.json"


class CoordinatorBusy(RuntimeError):
    """A run is already in progress."""


class UnknownFile(KeyError):
    pass


@dataclass(frozen=True)
class CoordinatorSettings:
    output_mode: OutputMode = OutputMode.BY_DATE
    include_original: bool = False
    manual_review_mode: bool = True
    min_confidence: float = 0.8
    model_type: ModelType = ModelType.FLASH
    batch_limit: int = 50
    customer_id_strip_pattern: Optional[str] = r"^#"

    def pipeline_config(self) -> PipelineConfig:
        return PipelineConfig(
            min_confidence=self.min_confidence,
            model_type=self.model_type,
            manual_review_mode=self.manual_review_mode,
            customer_id_strip_pattern=self.customer_id_strip_pattern,
        )


@dataclass
class RunSummary:
    processed: int = 0
    done: int = 0
    waiting_review: int = 0
    errors: int = 0
    skipped: int = 0
    stopped_at_cap: bool = False
    archive: Optional[DeliveredArchive] = None
    review_filter: Optional[ReviewFilter] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "done": self.done,
            "waiting_review": self.waiting_review,
            "errors": self.errors,
            "skipped": self.skipped,
            "stopped_at_cap": self.stopped_at_cap,
            "archive": self.archive.name if self.archive else None,
            "review_filter": self.review_filter.value if self.review_filter else None,
        }


@dataclass
class ReviewSaveResult:
    archive: Optional[DeliveredArchive]
    completed_file_ids: List[str] = field(default_factory=list)
    saved_items: int = 0


class BatchCoordinator:
    """
    Single-actor owner of every piece of mutable processing state: the file
    queue, the review queue, the running batch archive and the buffered
    original payloads.

    Files are processed strictly in queue order by `run`. Collaborator calls
    happen outside the state lock so files can be removed mid-run; a file
    removed before its turn is skipped.
    """

    def __init__(
        self,
        *,
        pipeline: SplitPipeline,
        storage: Storage,
        settings: Optional[CoordinatorSettings] = None,
        ledger: Optional[HistoryLedger] = None,
        reference_table: Optional[ReferenceTable] = None,
        assembler: Optional[ExportAssembler] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.pipeline = pipeline
        self.storage = storage
        self.settings = settings or CoordinatorSettings()
        self.ledger = ledger if ledger is not None else HistoryLedger(storage)
        self.reference_table = reference_table if reference_table is not None else self._load_reference_state()
        self.assembler = assembler or ExportAssembler()
        self.clock = clock

        self.review_queue = ReviewQueue()
        self.review_filter_default = ReviewFilter.ALL
        self._files: Dict[str, SourceFile] = {}
        self._batch = ArchiveContext()
        self._originals: Dict[str, bytes] = {}
        self._lock = threading.RLock()
        self._run_lock = threading.Lock()

    # --- Reference table ---
    def _load_reference_state(self) -> ReferenceTable:
        try:
            raw = self.storage.get_json_if_exists(name=REFERENCE_STATE_NAME)
            if raw is None:
                return ReferenceTable()
            return ReferenceTable(parse_reference_records(raw))
        except ValueError as e:
            # MalformedReferenceLoad and JSONDecodeError alike
            logger.warning("ignoring persisted reference table: %s", e)
            return ReferenceTable()

    def load_reference_table(self, raw: Any) -> int:
        # parse first: a rejected load must leave the active table untouched
        records = parse_reference_records(raw)
        with self._lock:
            self.reference_table = ReferenceTable(records)
            self.storage.put_json_atomic(name=REFERENCE_STATE_NAME, obj=self.reference_table.to_list())
        logger.info("reference table replaced: %d records", len(records))
        return len(records)

    def clear_reference_table(self) -> None:
        with self._lock:
            self.reference_table = ReferenceTable()
            self.storage.put_json_atomic(name=REFERENCE_STATE_NAME, obj=[])
        logger.info("reference table cleared")

    # --- Settings ---
    def update_settings(self, **changes: Any) -> CoordinatorSettings:
        if self.is_running:
            raise CoordinatorBusy("settings cannot change while a run is in progress")
        with self._lock:
            self.settings = replace(self.settings, **changes)
        return self.settings

    # --- File queue ---
    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def files(self) -> List[SourceFile]:
        with self._lock:
            return list(self._files.values())

    def get_file(self, file_id: str) -> SourceFile:
        with self._lock:
            try:
                return self._files[file_id]
            except KeyError:
                raise UnknownFile(file_id) from None

    def add_file(self, name: str, payload: bytes) -> SourceFile:
        file_id = uuid4().hex[:12]
        stored = self.storage.put_upload(file_id=file_id, blob=payload)
        with self._lock:
            source = SourceFile(
                id=file_id,
                name=name,
                payload_uri=stored.uri,
                arrived_at=self.clock(),
                duplicate=self.ledger.has_filename(name),
            )
            self._files[file_id] = source
        logger.info("queued %s as %s%s", name, file_id, " (duplicate name)" if source.duplicate else "")
        return source

    def add_files(self, uploads: Iterable[Tuple[str, bytes]]) -> List[SourceFile]:
        return [self.add_file(name, payload) for name, payload in uploads]

    def remove_file(self, file_id: str) -> SourceFile:
        with self._lock:
            source = self._files.pop(file_id, None)
            if source is None:
                raise UnknownFile(file_id)
            if source.status == FileStatus.WAITING_REVIEW:
                dropped = self.review_queue.remove_file(file_id)
                self._originals.pop(file_id, None)
                logger.info("removed %s with %d pending review item(s)", source.name, dropped)
        self.storage.delete_upload(file_id=file_id)
        return source

    def status_counts(self) -> Dict[str, int]:
        with self._lock:
            counts = {s.value: 0 for s in FileStatus}
            for f in self._files.values():
                counts[f.status.value] += 1
            return counts

    # --- Processing ---
    def run(self) -> RunSummary:
        if not self._run_lock.acquire(blocking=False):
            raise CoordinatorBusy("a run is already in progress")
        try:
            return self._run()
        finally:
            self._run_lock.release()

    def _run(self) -> RunSummary:
        summary = RunSummary()
        with self._lock:
            settings = self.settings
            queue = [f.id for f in self._files.values() if f.status == FileStatus.IDLE]
            if self._batch.processed_count == 0 and not settings.manual_review_mode:
                self._batch.reset()
            table = self.reference_table
        flagged_this_run = False
        cfg = settings.pipeline_config()

        for file_id in queue:
            with self._lock:
                source = self._files.get(file_id)
            if source is None or source.status != FileStatus.IDLE:
                summary.skipped += 1
                continue

            try:
                outcome = self.pipeline.process(
                    source,
                    lambda uri=source.payload_uri: self.storage.get_bytes(uri=uri),
                    table,
                    cfg,
                )
            except Exception as e:
                logger.exception("unexpected failure while processing %s", source.name)
                if source.status in (FileStatus.CONVERTING, FileStatus.ANALYZING, FileStatus.SPLITTING):
                    source.advance(FileStatus.ERROR, str(e) or "Processing failed")
                outcome = FileOutcome(status=FileStatus.ERROR, error=source.error)

            with self._lock:
                if file_id not in self._files:
                    logger.info("%s was removed while processing; discarding its outcome", source.name)
                    summary.skipped += 1
                    continue
                flagged_this_run = self._route(source, outcome, settings, summary, flagged_this_run)
                summary.processed += 1
                self._batch.processed_count += 1

            if summary.processed >= settings.batch_limit:
                summary.stopped_at_cap = True
                logger.info("batch limit of %d reached; leaving the rest queued", settings.batch_limit)
                break

        with self._lock:
            pending_reviews = any(f.status == FileStatus.WAITING_REVIEW for f in self._files.values())
            if not settings.manual_review_mode and not pending_reviews and self._batch.processed_count > 0:
                summary.archive = self._flush_batch()

        summary.review_filter = self.review_filter_default if summary.waiting_review else None
        logger.info("run finished: %s", summary.to_dict())
        return summary

    def _route(
        self,
        source: SourceFile,
        outcome: FileOutcome,
        settings: CoordinatorSettings,
        summary: RunSummary,
        flagged_this_run: bool,
    ) -> bool:
        if outcome.status == FileStatus.ERROR:
            summary.errors += 1
            return flagged_this_run

        if outcome.status == FileStatus.WAITING_REVIEW:
            summary.waiting_review += 1
            queued_at = self.clock()
            self.review_queue.extend(
                ReviewItem(
                    id=f"{source.id}_{idx}",
                    file_id=source.id,
                    file_name=source.name,
                    data=piece.data,
                    filename=strip_pdf_suffix(piece.filename),
                    segment=piece.segment or outcome.segments[idx],
                    queued_at=queued_at,
                    output_mode=settings.output_mode,
                    include_original=settings.include_original,
                )
                for idx, piece in enumerate(outcome.pieces)
            )
            if settings.include_original and outcome.payload is not None:
                self._originals[source.id] = outcome.payload

            if not settings.manual_review_mode and outcome.forced_review:
                if not flagged_this_run:
                    self.review_filter_default = ReviewFilter.FLAGGED
                return True
            if settings.manual_review_mode:
                self.review_filter_default = ReviewFilter.ALL
            return flagged_this_run

        # done: either nothing was found, or automatic mode with no forced review
        summary.done += 1
        if outcome.pieces:
            self.assembler.add_pieces(
                self._batch,
                source_name=source.name,
                pieces=outcome.pieces,
                output_mode=settings.output_mode,
            )
            if settings.include_original and outcome.payload is not None:
                self.assembler.add_original(
                    self._batch,
                    source_name=source.name,
                    payload=outcome.payload,
                    output_mode=settings.output_mode,
                )
        self.ledger.append(
            HistoryRecord(filename=source.name, processed_at=self.clock(), segments=tuple(outcome.segments))
        )
        return flagged_this_run

    # --- Archives ---
    def _deliver(self, ctx: ArchiveContext, prefix: str) -> DeliveredArchive:
        name = archive_name(prefix, self.clock())
        stored = self.storage.put_archive(name=name, blob=to_zip_bytes(ctx))
        logger.info("delivered %s with %d entries", name, len(ctx))
        return DeliveredArchive(name=name, uri=stored.uri, entry_count=len(ctx), paths=list(ctx.entries))

    def _flush_batch(self) -> Optional[DeliveredArchive]:
        archive = self._deliver(self._batch, BATCH_ARCHIVE_PREFIX) if len(self._batch) else None
        self._batch.reset()
        return archive

    def flush_batch_archive(self) -> Optional[DeliveredArchive]:
        if self.is_running:
            raise CoordinatorBusy("cannot flush the batch archive while a run is in progress")
        with self._lock:
            return self._flush_batch()

    @property
    def pending_batch_entries(self) -> int:
        with self._lock:
            return len(self._batch)

    # --- Review ---
    def open_review_session(self, filter_mode: Optional[ReviewFilter] = None) -> ReviewSession:
        with self._lock:
            return ReviewSession(
                self.review_queue.snapshot(),
                min_confidence=self.settings.min_confidence,
                filter_mode=filter_mode or self.review_filter_default,
            )

    def save_review(self, session: ReviewSession) -> ReviewSaveResult:
        with self._lock:
            queued = {i.id: i for i in self.review_queue}
            # items whose file was removed after the session opened are gone
            kept = [i for i in session.items if i.id in queued]

            ctx = self.assembler.build_review_archive(kept, self._originals)
            archive = self._deliver(ctx, REVIEW_ARCHIVE_PREFIX) if len(ctx) else None

            owners: List[str] = []
            for item_id in session.initial_ids:
                item = queued.get(item_id)
                if item is not None and item.file_id not in owners:
                    owners.append(item.file_id)

            completed: List[str] = []
            for file_id in owners:
                source = self._files.get(file_id)
                if source is None:
                    continue
                if source.status == FileStatus.WAITING_REVIEW:
                    source.advance(FileStatus.DONE)
                completed.append(file_id)
                saved = tuple(
                    i.segment.annotate(final_filename=f"{i.filename}.pdf") for i in kept if i.file_id == file_id
                )
                self.ledger.append(HistoryRecord(filename=source.name, processed_at=self.clock(), segments=saved))

            self.review_queue.remove_ids(session.initial_ids)
            for file_id in owners:
                self._originals.pop(file_id, None)
            self.review_filter_default = ReviewFilter.ALL

        logger.info("review saved: %d item(s) kept across %d file(s)", len(kept), len(completed))
        return ReviewSaveResult(archive=archive, completed_file_ids=completed, saved_items=len(kept))

    @property
    def buffered_originals(self) -> List[str]:
        with self._lock:
            return list(self._originals)

    # --- Ledger ---
    def export_history_csv(self) -> str:
        with self._lock:
            return self.ledger.to_csv()

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Protocol, Sequence

from services.extraction.normalize import coverage_gaps, normalize_segments
from services.segmentation.models import (
    FileStatus,
    ModelType,
    RenderedPages,
    Segment,
    SourceFile,
    SplitPiece,
    VerificationStatus,
)
from services.verification.reference_table import ReferenceTable
from services.verification.verifier import DEFAULT_CUSTOMER_ID_STRIP, verify_segments

logger = logging.getLogger(__name__)

NO_DOCUMENTS_NOTE = "No documents identified"
DEGENERATE_SPLIT_MESSAGE = "Invalid page ranges or empty documents"


class PipelineError(RuntimeError):
    """Per-file failure; the file ends in `error` and siblings carry on."""


class CollaboratorFailure(PipelineError):
    def __init__(self, stage: str, message: str) -> None:
        super().__init__(message)
        self.stage = stage


class DegenerateSplit(PipelineError):
    pass


class Renderer(Protocol):
    def render(self, payload: bytes) -> RenderedPages: ...


class Recognizer(Protocol):
    def analyze(self, pages: RenderedPages, *, min_confidence: float, model_type: ModelType) -> Any: ...


class Splitter(Protocol):
    def split(self, payload: bytes, segments: Sequence[Segment]) -> List[SplitPiece]: ...


@dataclass(frozen=True)
class PipelineConfig:
    min_confidence: float = 0.8
    model_type: ModelType = ModelType.FLASH
    manual_review_mode: bool = True
    customer_id_strip_pattern: Optional[str] = DEFAULT_CUSTOMER_ID_STRIP


@dataclass
class FileOutcome:
    status: FileStatus
    segments: List[Segment] = field(default_factory=list)
    pieces: List[SplitPiece] = field(default_factory=list)
    forced_review: bool = False
    error: Optional[str] = None
    payload: Optional[bytes] = None


def needs_forced_review(segments: Sequence[Segment], min_confidence: float) -> bool:
    return any(
        s.needs_review
        or s.confidence < min_confidence
        or s.verification_status in (VerificationStatus.MISMATCH, VerificationStatus.NOT_FOUND)
        for s in segments
    )


class SplitPipeline:
    """
    Drives one source file from `idle` to a resting status:
    converting -> analyzing -> splitting -> waiting_review | done | error.

    Only the file itself is mutated here. Routing side effects (review queue,
    batch archive, ledger) belong to the coordinator.
    """

    def __init__(
        self,
        *,
        renderer: Renderer,
        recognizer: Recognizer,
        splitter: Splitter,
        config: Optional[PipelineConfig] = None,
    ) -> None:
        self.renderer = renderer
        self.recognizer = recognizer
        self.splitter = splitter
        self.config = config or PipelineConfig()

    def _call(self, stage: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            raise CollaboratorFailure(stage, str(e) or type(e).__name__) from e

    def process(
        self,
        source: SourceFile,
        read_payload: Callable[[], bytes],
        table: ReferenceTable,
        config: Optional[PipelineConfig] = None,
    ) -> FileOutcome:
        cfg = config or self.config
        try:
            return self._process(source, read_payload, table, cfg)
        except PipelineError as e:
            logger.warning("%s failed: %s", source.name, e)
            source.advance(FileStatus.ERROR, str(e) or "Processing failed")
            return FileOutcome(status=FileStatus.ERROR, segments=list(source.segments), error=source.error)

    def _process(self, source: SourceFile, read_payload: Callable[[], bytes], table: ReferenceTable, cfg: PipelineConfig) -> FileOutcome:
        source.advance(FileStatus.CONVERTING)
        payload = self._call("read", read_payload)
        pages = self._call("render", self.renderer.render, payload)

        source.advance(FileStatus.ANALYZING)
        raw = self._call(
            "recognize",
            self.recognizer.analyze,
            pages,
            min_confidence=cfg.min_confidence,
            model_type=cfg.model_type,
        )
        segments = normalize_segments(raw)

        if not segments:
            source.segments = []
            source.advance(FileStatus.DONE, NO_DOCUMENTS_NOTE)
            logger.info("%s: no documents identified", source.name)
            return FileOutcome(status=FileStatus.DONE, error=NO_DOCUMENTS_NOTE)

        verified = verify_segments(segments, table, strip_pattern=cfg.customer_id_strip_pattern)
        source.segments = verified
        source.warnings = self._coverage_warnings(source.name, verified, pages.page_count)

        source.advance(FileStatus.SPLITTING)
        pieces = self._call("split", self.splitter.split, payload, verified)
        if not pieces:
            raise DegenerateSplit(DEGENERATE_SPLIT_MESSAGE)

        forced = needs_forced_review(verified, cfg.min_confidence)
        if cfg.manual_review_mode or forced:
            source.advance(FileStatus.WAITING_REVIEW)
        else:
            source.advance(FileStatus.DONE)

        logger.info(
            "%s: %d segment(s), %d piece(s) -> %s%s",
            source.name, len(verified), len(pieces), source.status.value,
            " (forced review)" if forced else "",
        )
        return FileOutcome(status=source.status, segments=verified, pieces=pieces, forced_review=forced, payload=payload)

    @staticmethod
    def _coverage_warnings(name: str, segments: List[Segment], total_pages: int) -> List[str]:
        missing, overlapping = coverage_gaps(segments, total_pages)
        warnings = []
        if missing:
            warnings.append(f"pages not assigned to any document: {missing}")
        if overlapping:
            warnings.append(f"pages assigned to more than one document: {overlapping}")
        for w in warnings:
            logger.warning("%s: %s", name, w)
        return warnings

# services/rendering/pdf_pages.py
from __future__ import annotations

import logging
from typing import List, Sequence

import pymupdf

from services.export.naming import NameScope, build_segment_filename
from services.segmentation.models import RenderedPages, Segment, SplitPiece

logger = logging.getLogger(__name__)


class PdfRenderer:
    """Renders every page to PNG and pulls the embedded text layer, if any."""

    def __init__(self, dpi: int = 180) -> None:
        self.dpi = dpi

    def render(self, payload: bytes) -> RenderedPages:
        images: List[bytes] = []
        texts: List[str] = []
        with pymupdf.open(stream=payload, filetype="pdf") as doc:
            for i in range(doc.page_count):
                page = doc.load_page(i)
                images.append(page.get_pixmap(dpi=self.dpi).tobytes("png"))
                try:
                    texts.append(" ".join(page.get_text("text").split()))
                except RuntimeError as e:
                    logger.warning("could not extract text from page %d: %s", i + 1, e)
                    texts.append("")
        return RenderedPages(images=tuple(images), texts=tuple(texts))


class PdfSplitter:
    """
    Cuts one PDF per segment. Page ranges are clamped to the document;
    a segment whose clamped range is empty produces no piece.
    """

    def split(self, payload: bytes, segments: Sequence[Segment]) -> List[SplitPiece]:
        pieces: List[SplitPiece] = []
        scope = NameScope()
        with pymupdf.open(stream=payload, filetype="pdf") as src:
            last = src.page_count - 1
            for seg in segments:
                start = max(0, seg.start_page - 1)
                end = min(last, seg.end_page - 1)
                if end < start:
                    logger.warning("segment %s (pages %s) is empty after clamping", seg.delivery_id, seg.page_range)
                    continue

                with pymupdf.open() as sub:
                    sub.insert_pdf(src, from_page=start, to_page=end)
                    data = sub.tobytes(garbage=3, deflate=True)

                # one flat scope per split so siblings never share a name
                name = scope.resolve("", build_segment_filename(seg))
                pieces.append(SplitPiece(filename=name, data=data, segment=seg))
        return pieces

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from apps.common.settings import AppSettings, load_settings
from services.batch import BatchCoordinator
from services.extraction.llm_segmenter import LLMSegmenterConfig, OllamaSegmenter
from services.ingestion.storage import LocalStorage
from services.pipeline import SplitPipeline
from services.rendering.pdf_pages import PdfRenderer, PdfSplitter


def build_coordinator(settings: AppSettings, storage_root: Optional[str] = None) -> BatchCoordinator:
    recognizer = OllamaSegmenter(
        LLMSegmenterConfig(
            base_url=settings.ollama_url,
            model_flash=settings.ollama_model_flash,
            model_pro=settings.ollama_model_pro,
            timeout_s=settings.ollama_timeout_s,
        )
    )
    pipeline = SplitPipeline(
        renderer=PdfRenderer(dpi=settings.render_dpi),
        recognizer=recognizer,
        splitter=PdfSplitter(),
    )
    storage = LocalStorage(root_dir=storage_root or str(settings.storage_root))
    return BatchCoordinator(
        pipeline=pipeline,
        storage=storage,
        settings=settings.coordinator_settings(),
    )


@lru_cache(maxsize=1)
def get_coordinator() -> BatchCoordinator:
    return build_coordinator(load_settings())

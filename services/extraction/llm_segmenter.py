# services/extraction/llm_segmenter.py
from __future__ import annotations

import base64
import json
import logging
import os
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from services.extraction.normalize import extract_json_object
from services.segmentation.models import ModelType, RenderedPages

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_BASE_URL = (os.getenv("SPLITTER_OLLAMA_URL") or "http://host.docker.internal:11434").strip()
DEFAULT_MODEL_FLASH = (os.getenv("SPLITTER_OLLAMA_MODEL_FLASH") or "qwen2.5vl:7b").strip()
DEFAULT_MODEL_PRO = (os.getenv("SPLITTER_OLLAMA_MODEL_PRO") or "qwen2.5vl:32b").strip()
DEFAULT_TIMEOUT_S = float((os.getenv("SPLITTER_OLLAMA_TIMEOUT_S") or "180").strip() or "180")

OLLAMA_GENERATE_PATH = "/api/generate"
OLLAMA_FORMAT_JSON = "json"
TEMPERATURE = 0.0
MIN_TEXT_LAYER_CHARS = 5


class RecognitionError(RuntimeError):
    pass


@dataclass(frozen=True)
class LLMSegmenterConfig:
    base_url: str = DEFAULT_OLLAMA_BASE_URL
    model_flash: str = DEFAULT_MODEL_FLASH
    model_pro: str = DEFAULT_MODEL_PRO
    timeout_s: float = DEFAULT_TIMEOUT_S

    def model_for(self, model_type: ModelType) -> str:
        return self.model_pro if ModelType(model_type) == ModelType.PRO else self.model_flash


class OllamaSegmenter:
    """
    Thin Ollama wrapper that proposes document boundaries in a scanned packet.
    Contract:
      - Input: rendered pages (PNG + text layer), confidence threshold, model selector
      - Output: the raw `segments` value from the model's JSON reply; anything
        that is not a JSON object yields []
      - Raises RecognitionError on transport or Ollama-side errors
    """

    def __init__(self, config: Optional[LLMSegmenterConfig] = None) -> None:
        self.config = config or LLMSegmenterConfig()

    def analyze(
        self,
        pages: RenderedPages,
        *,
        min_confidence: float,
        model_type: ModelType,
    ) -> Any:
        if pages.page_count == 0:
            return []

        payload = {
            "model": self.config.model_for(model_type),
            "system": self._build_system(min_confidence),
            "prompt": self._build_prompt(pages),
            "images": [base64.b64encode(img).decode("ascii") for img in pages.images],
            "stream": False,
            "format": OLLAMA_FORMAT_JSON,
            "options": {"temperature": TEMPERATURE},
        }

        resp = self._post_json(self._build_url(OLLAMA_GENERATE_PATH), payload, timeout_s=self.config.timeout_s)

        if resp.get("done") is not True:
            raise RecognitionError(f"Ollama generation not done: done={resp.get('done')}")

        raw = resp.get("response")
        if not isinstance(raw, str) or not raw.strip():
            raise RecognitionError("Ollama returned empty 'response'")

        parsed = extract_json_object(raw)
        if parsed is None:
            logger.warning("model returned no JSON object; assuming 0 documents found")
            return []

        return parsed.get("segments")

    def _build_url(self, path: str) -> str:
        base = (self.config.base_url or "").strip()
        if not base:
            raise RecognitionError("Missing Ollama base_url (SPLITTER_OLLAMA_URL)")
        return base.rstrip("/") + path

    def _post_json(self, url: str, payload: Dict[str, Any], *, timeout_s: float) -> Dict[str, Any]:
        data = json.dumps(payload).encode("utf-8")
        req = urllib.request.Request(
            url=url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=timeout_s) as r:
                body = r.read().decode("utf-8", errors="replace")
        except (urllib.error.HTTPError, urllib.error.URLError, TimeoutError) as e:
            raise RecognitionError(f"Ollama request failed: {e}") from e

        try:
            parsed = json.loads(body)
        except json.JSONDecodeError as e:
            raise RecognitionError(f"Ollama HTTP 200 but body was not JSON: {e}") from e

        if not isinstance(parsed, dict):
            raise RecognitionError("Ollama HTTP 200 but JSON was not an object")

        err = parsed.get("error")
        if isinstance(err, str) and err.strip():
            raise RecognitionError(f"Ollama error: {err.strip()}")

        if "response" not in parsed and "done" not in parsed:
            raise RecognitionError(f"Ollama unexpected response keys: {list(parsed.keys())}")

        return parsed

    def _build_system(self, min_confidence: float) -> str:
        return (
            "You are an expert document processing function for scanned delivery packets.\n"
            "Each packet contains several distinct deliveries; one delivery may span several pages.\n"
            "Identify the start and end page (1-based) of each distinct document.\n"
            "PAGE ASSIGNMENT:\n"
            "1. Every page from the first to the last MUST belong to exactly one document.\n"
            "2. A page with no delivery header (terms, lists, continuation sheets) belongs to the PREVIOUS document.\n"
            "3. A new document starts only when a new Delivery ID / Invoice # / Order # appears.\n"
            "4. Double-check identifiers against the embedded text layer when one is given; "
            "watch for 6/8, 1/I/l and 0/O confusions.\n"
            "REVIEW PROTOCOL:\n"
            "- Give every segment a confidence between 0.0 and 1.0.\n"
            f"- If confidence is below {min_confidence}, set needsReview to true.\n"
            "- If unsure about the Delivery ID, Customer Name or where a document ends, set needsReview to true.\n"
            "- Give a short reviewReason whenever needsReview is true.\n"
            "EXTRACTION:\n"
            "- Read deliveryId, customerName (Ship To), customerId and deliveryDate (YYYY-MM-DD) from the FIRST page of the segment.\n"
            "- Do not fix spellings; copy exactly what is printed.\n"
            '- If a customer number such as "#8971" is printed, put it in customerId.\n'
            'Return ONLY a JSON object of the form {"segments": [{"startPage": int, "endPage": int, '
            '"deliveryId": str, "customerName": str, "customerId": str, "deliveryDate": str, '
            '"confidence": float, "needsReview": bool, "reviewReason": str}]}. No markdown. No commentary.\n'
        )

    def _build_prompt(self, pages: RenderedPages) -> str:
        parts: List[str] = []
        for i in range(pages.page_count):
            page_no = i + 1
            text = pages.texts[i] if i < len(pages.texts) else ""
            if text and len(text.strip()) > MIN_TEXT_LAYER_CHARS:
                parts.append(f"[Page {page_no} embedded text layer]:\n{text.strip()}")
            parts.append(f"[Page {page_no} is image #{page_no}]")

        total = pages.page_count
        parts.append(
            f"Analyze these {total} pages. Identify the start and end page of each distinct delivery document. "
            f"The result must cover pages 1 to {total} continuously. "
            "If a page has no header, append it to the previous document. "
            "Flag any ambiguous text or IDs for review."
        )
        return "\n\n".join(parts)

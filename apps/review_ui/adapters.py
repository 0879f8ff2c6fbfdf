# apps/review_ui/adapters.py
from typing import Any, Dict, List, Optional

import requests

from apps.review_ui.domain import ReviewCard, SaveOutcome


class GatewayError(RuntimeError):
    pass


def _card(item: Dict[str, Any]) -> ReviewCard:
    seg = item.get("segment", {}) or {}
    return ReviewCard(
        id=item["id"],
        file_id=item.get("file_id", ""),
        file_name=item.get("file_name", ""),
        filename=item.get("filename", ""),
        flagged=bool(item.get("flagged", False)),
        verification_status=seg.get("verificationStatus") or "unknown",
        confidence=float(seg.get("confidence") or 0.0),
        pages=f"{seg.get('startPage')}-{seg.get('endPage')}",
        segment=seg,
        review_reason=seg.get("reviewReason"),
    )


class GatewayAdapter:
    def __init__(self, gateway_url: str, timeout_s: float = 30.0):
        self.base = gateway_url.rstrip("/")
        self.timeout_s = timeout_s

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout_s)
        try:
            r = requests.request(method, self.base + path, **kwargs)
        except requests.RequestException as e:
            raise GatewayError(f"gateway unreachable: {e}") from e
        if r.status_code >= 400:
            try:
                detail = r.json().get("detail", r.text)
            except ValueError:
                detail = r.text
            raise GatewayError(f"{method} {path} -> {r.status_code}: {detail}")
        return r

    # --- queue ---
    def upload(self, files: List[tuple]) -> Dict[str, Any]:
        multipart = [("files", (name, data, "application/pdf")) for name, data in files]
        return self._request("POST", "/files", files=multipart).json()

    def files(self) -> Dict[str, Any]:
        return self._request("GET", "/files").json()

    def remove_file(self, file_id: str) -> None:
        self._request("DELETE", f"/files/{file_id}")

    def process(self) -> Dict[str, Any]:
        # a run blocks until the queue (or the batch limit) is exhausted
        return self._request("POST", "/process", timeout=None).json()

    def settings(self) -> Dict[str, Any]:
        return self._request("GET", "/settings").json()

    def update_settings(self, **changes: Any) -> Dict[str, Any]:
        return self._request("PATCH", "/settings", json=changes).json()

    # --- reference table ---
    def reference_table(self) -> Dict[str, Any]:
        return self._request("GET", "/reference-table").json()

    def load_reference_table(self, raw: bytes) -> int:
        r = self._request("PUT", "/reference-table", data=raw, headers={"Content-Type": "application/json"})
        return int(r.json()["count"])

    def clear_reference_table(self) -> None:
        self._request("DELETE", "/reference-table")

    # --- review session ---
    def open_session(self, filter_mode: Optional[str] = None) -> Dict[str, Any]:
        params = {"filter": filter_mode} if filter_mode else None
        return self._request("POST", "/review/session", params=params).json()

    def session(self) -> Dict[str, Any]:
        return self._request("GET", "/review/session").json()

    def cards(self, session: Dict[str, Any]) -> List[ReviewCard]:
        return [_card(i) for i in session.get("items", [])]

    def set_filter(self, filter_mode: str) -> Dict[str, Any]:
        return self._request("PUT", "/review/session/filter", json={"filter": filter_mode}).json()

    def rename(self, item_id: str, filename: str) -> None:
        self._request("PATCH", f"/review/session/items/{item_id}", json={"filename": filename})

    def delete(self, item_id: str) -> None:
        self._request("DELETE", f"/review/session/items/{item_id}")

    def item_pdf(self, item_id: str) -> bytes:
        return self._request("GET", f"/review/session/items/{item_id}/pdf").content

    def save(self) -> SaveOutcome:
        j = self._request("POST", "/review/session/save").json()
        archive = j.get("archive") or {}
        return SaveOutcome(
            saved_items=int(j.get("saved_items", 0)),
            completed_files=len(j.get("completed_files", [])),
            archive_name=archive.get("name"),
            download_path=archive.get("download"),
        )

    def download(self, path: str) -> bytes:
        return self._request("GET", path, timeout=None).content

    # --- history ---
    def history_csv(self) -> bytes:
        return self._request("GET", "/history.csv").content

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel

from apps.api_gateway.jobs import archive_json
from services.batch import BatchCoordinator
from services.review.session import InvalidReviewName, ReviewFilter, ReviewSession, UnknownReviewItem


class RenameRequest(BaseModel):
    filename: str


class FilterRequest(BaseModel):
    filter: ReviewFilter


class SessionHolder:
    """The one open review session; single reviewer, single session."""

    def __init__(self) -> None:
        self.session: Optional[ReviewSession] = None

    def require(self) -> ReviewSession:
        if self.session is None:
            raise HTTPException(status_code=409, detail="no_open_review_session")
        return self.session


def _session_json(session: ReviewSession) -> dict:
    visible = session.visible_items()
    return {
        "filter": session.filter_mode.value,
        "total": len(session.items),
        "flagged": sum(1 for i in session.items if session.is_flagged(i)),
        "items": [{**i.to_dict(), "flagged": session.is_flagged(i)} for i in visible],
    }


def create_review_router(*, coordinator: BatchCoordinator, holder: Optional[SessionHolder] = None) -> APIRouter:
    router = APIRouter(prefix="/review")
    holder = holder or SessionHolder()

    @router.post("/session")
    def open_session(filter: Optional[ReviewFilter] = None):
        holder.session = coordinator.open_review_session(filter)
        return _session_json(holder.session)

    @router.get("/session")
    def get_session():
        return _session_json(holder.require())

    @router.put("/session/filter")
    def set_filter(req: FilterRequest):
        session = holder.require()
        session.set_filter(req.filter)
        return _session_json(session)

    @router.patch("/session/items/{item_id}")
    def rename_item(item_id: str, req: RenameRequest):
        session = holder.require()
        try:
            item = session.rename(item_id, req.filename)
        except UnknownReviewItem:
            raise HTTPException(status_code=404, detail="review_item_not_found")
        except InvalidReviewName:
            raise HTTPException(status_code=422, detail="blank_filename")
        return item.to_dict()

    @router.delete("/session/items/{item_id}")
    def delete_item(item_id: str):
        session = holder.require()
        try:
            session.delete(item_id)
        except UnknownReviewItem:
            raise HTTPException(status_code=404, detail="review_item_not_found")
        return {"deleted": item_id, "remaining": len(session.items)}

    @router.get("/session/items/{item_id}/pdf")
    def item_pdf(item_id: str):
        session = holder.require()
        try:
            item = session.get(item_id)
        except UnknownReviewItem:
            raise HTTPException(status_code=404, detail="review_item_not_found")
        return Response(content=item.data, media_type="application/pdf")

    @router.post("/session/save")
    def save_session():
        session = holder.require()
        result = coordinator.save_review(session)
        holder.session = None
        return {
            "saved_items": result.saved_items,
            "completed_files": result.completed_file_ids,
            "archive": archive_json(result.archive),
        }

    @router.delete("/session")
    def cancel_session():
        holder.session = None
        return {"cancelled": True}

    return router

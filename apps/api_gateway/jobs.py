from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, File, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool

from services.batch import BatchCoordinator, CoordinatorBusy, UnknownFile
from services.export.assembler import DeliveredArchive
from services.history.ledger import LEDGER_CSV_NAME
from services.verification.reference_table import MalformedReferenceLoad
from services.verification.verifier import verification_stats


def archive_json(archive: DeliveredArchive | None) -> Dict[str, Any] | None:
    if archive is None:
        return None
    return {
        "name": archive.name,
        "entry_count": archive.entry_count,
        "paths": archive.paths,
        "download": f"/archives/{archive.name}",
    }


def create_jobs_router(*, coordinator: BatchCoordinator) -> APIRouter:
    router = APIRouter()

    # --- Files ---
    @router.post("/files")
    async def upload_files(files: List[UploadFile] = File(...)):
        uploads = [(f.filename or "upload.pdf", await f.read()) for f in files]
        added = [s.to_dict() for s in coordinator.add_files(uploads)]
        return JSONResponse(status_code=202, content={"count": len(added), "files": added})

    @router.get("/files")
    def list_files():
        files = coordinator.files()
        return {
            "summary": coordinator.status_counts(),
            "is_running": coordinator.is_running,
            "review_queue": len(coordinator.review_queue),
            "files": [f.to_dict() for f in files],
        }

    @router.get("/files/{file_id}")
    def file_details(file_id: str):
        try:
            source = coordinator.get_file(file_id)
        except UnknownFile:
            raise HTTPException(status_code=404, detail="file_not_found")
        return {**source.to_dict(), "verification": verification_stats(source.segments)}

    @router.delete("/files/{file_id}")
    def remove_file(file_id: str):
        try:
            source = coordinator.remove_file(file_id)
        except UnknownFile:
            raise HTTPException(status_code=404, detail="file_not_found")
        return {"removed": source.id, "status": source.status.value}

    # --- Processing ---
    @router.post("/process")
    async def process_queue():
        try:
            summary = await run_in_threadpool(coordinator.run)
        except CoordinatorBusy as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {**summary.to_dict(), "archive": archive_json(summary.archive)}

    # --- Archives ---
    @router.post("/archives/flush")
    def flush_batch_archive():
        try:
            archive = coordinator.flush_batch_archive()
        except CoordinatorBusy as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"archive": archive_json(archive)}

    @router.get("/archives/{name}")
    def download_archive(name: str):
        try:
            path = coordinator.storage.archive_path(name)
        except ValueError:
            raise HTTPException(status_code=400, detail="invalid_archive_name")
        if not path.exists():
            raise HTTPException(status_code=404, detail="archive_not_found")
        return FileResponse(str(path), media_type="application/zip", filename=name)

    # --- Reference table ---
    @router.get("/reference-table")
    def reference_table():
        table = coordinator.reference_table
        return {"count": len(table), "records": table.to_list()}

    @router.put("/reference-table")
    async def load_reference_table(request: Request):
        body = await request.body()
        try:
            count = coordinator.load_reference_table(body)
        except MalformedReferenceLoad as e:
            raise HTTPException(status_code=422, detail=str(e))
        return {"count": count}

    @router.delete("/reference-table")
    def clear_reference_table():
        coordinator.clear_reference_table()
        return {"count": 0}

    # --- History ---
    @router.get("/history")
    def history():
        records = coordinator.ledger.records
        return {"count": len(records), "records": [r.to_dict() for r in records]}

    @router.get("/history.csv")
    def history_csv():
        return PlainTextResponse(
            coordinator.export_history_csv(),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{LEDGER_CSV_NAME}"'},
        )

    return router

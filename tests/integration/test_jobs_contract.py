# tests/integration/test_jobs_contract.py
from __future__ import annotations

import io
import zipfile

from fastapi import FastAPI
from fastapi.testclient import TestClient

from apps.api_gateway.jobs import create_jobs_router
from tests.fakes import seg


def _client(coordinator):
    app = FastAPI()
    app.include_router(create_jobs_router(coordinator=coordinator))
    return TestClient(app)


def test_auto_run_returns_downloadable_batch_archive(make_coordinator):
    coordinator = make_coordinator({"p": [seg(1, 1, "DN-1"), seg(2, 2, "DN-2")]}, manual_review_mode=False)
    client = _client(coordinator)

    r = client.post("/files", files={"files": ("p.pdf", b"p:2", "application/pdf")})
    assert r.status_code == 202
    assert r.json()["count"] == 1

    run = client.post("/process").json()
    assert run["done"] == 1
    archive = run["archive"]
    assert archive["name"].startswith("smart_split_batch_")
    assert archive["entry_count"] == 2
    assert archive["download"] == f"/archives/{archive['name']}"

    z = client.get(archive["download"])
    assert z.status_code == 200
    assert z.headers["content-type"] == "application/zip"
    with zipfile.ZipFile(io.BytesIO(z.content)) as zf:
        assert sorted(zf.namelist()) == sorted(archive["paths"])


def test_flush_with_nothing_pending(make_coordinator):
    client = _client(make_coordinator({}))
    r = client.post("/archives/flush")
    assert r.status_code == 200
    assert r.json() == {"archive": None}


def test_process_while_busy_is_409(make_coordinator):
    coordinator = make_coordinator({})
    client = _client(coordinator)
    coordinator._run_lock.acquire()
    try:
        assert client.post("/process").status_code == 409
        assert client.post("/archives/flush").status_code == 409
        assert client.get("/files").json()["is_running"] is True
    finally:
        coordinator._run_lock.release()


def test_duplicate_upload_is_flagged(make_coordinator):
    client = _client(make_coordinator({"p": []}, manual_review_mode=False))
    client.post("/files", files={"files": ("p.pdf", b"p:1", "application/pdf")})
    client.post("/process")

    r = client.post("/files", files={"files": ("p.pdf", b"p:1", "application/pdf")})
    assert r.json()["files"][0]["duplicate"] is True


def test_archive_name_traversal_is_rejected(make_coordinator):
    client = _client(make_coordinator({}))
    assert client.get("/archives/..%2Fstate%2Fhistory.json").status_code in (400, 404)

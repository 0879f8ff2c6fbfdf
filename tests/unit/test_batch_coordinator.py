from __future__ import annotations

import io
import zipfile

import pytest

from services.batch import REFERENCE_STATE_NAME, BatchCoordinator, CoordinatorBusy, UnknownFile
from services.review.session import ReviewFilter
from services.segmentation.models import FileStatus, OutputMode, VerificationStatus
from services.verification.reference_table import MalformedReferenceLoad
from tests.fakes import REFERENCE, seg


def _zip_names(coordinator, archive):
    blob = coordinator.storage.archive_path(archive.name).read_bytes()
    with zipfile.ZipFile(io.BytesIO(blob)) as zf:
        return sorted(zf.namelist())


def _add(coordinator, key, pages=1, name=None):
    return coordinator.add_file(name or f"{key}.pdf", f"{key}:{pages}".encode())


SCRIPT = {
    "a": [seg(1, 1, "DN-1"), seg(2, 2, "DN-2", date="2024-01-06")],
    "b": [seg(1, 1, "DN-1")],
    "low": [seg(1, 1, "DN-3", confidence=0.4)],
    "empty": [],
}


def test_auto_mode_flushes_one_batch_archive(make_coordinator):
    c = make_coordinator(SCRIPT, manual_review_mode=False)
    _add(c, "a", 2)
    _add(c, "b")

    summary = c.run()

    assert summary.processed == 2 and summary.done == 2
    assert summary.archive is not None
    assert summary.archive.name.startswith("smart_split_batch_")
    # same generated name across files in one batch gets a suffix
    assert _zip_names(c, summary.archive) == [
        "2024-01-05/DN_1_2024-01-05_Acme.pdf",
        "2024-01-05/DN_1_2024-01-05_Acme_(1).pdf",
        "2024-01-06/DN_2_2024-01-06_Acme.pdf",
    ]
    assert c.pending_batch_entries == 0
    assert [r.filename for r in c.ledger.records] == ["a.pdf", "b.pdf"]
    assert all(f.status == FileStatus.DONE for f in c.files())


def test_auto_mode_includes_original_copy(make_coordinator):
    c = make_coordinator(SCRIPT, manual_review_mode=False, include_original=True, output_mode=OutputMode.BY_ORIGINAL)
    _add(c, "b")
    summary = c.run()
    assert _zip_names(c, summary.archive) == ["b/DN_1_2024-01-05_Acme.pdf", "b/original_b.pdf"]
    assert c.buffered_originals == []


def test_forced_review_blocks_flush_and_defaults_to_flagged(make_coordinator):
    c = make_coordinator(SCRIPT, manual_review_mode=False)
    _add(c, "b")
    low = _add(c, "low")

    summary = c.run()

    assert summary.done == 1 and summary.waiting_review == 1
    assert summary.archive is None
    assert summary.review_filter == ReviewFilter.FLAGGED
    assert c.pending_batch_entries == 1
    assert c.get_file(low.id).status == FileStatus.WAITING_REVIEW
    assert [i.id for i in c.review_queue] == [f"{low.id}_0"]


def test_saving_review_resets_default_filter(make_coordinator):
    c = make_coordinator(SCRIPT, manual_review_mode=False)
    _add(c, "low")
    c.run()
    assert c.open_review_session().filter_mode == ReviewFilter.FLAGGED

    c.save_review(c.open_review_session())
    assert c.open_review_session().filter_mode == ReviewFilter.ALL


def test_manual_mode_queues_everything_with_all_filter(make_coordinator):
    c = make_coordinator(SCRIPT, manual_review_mode=True)
    a = _add(c, "a", 2)

    summary = c.run()

    assert summary.waiting_review == 1
    assert summary.archive is None
    assert summary.review_filter == ReviewFilter.ALL
    items = list(c.review_queue)
    assert [i.id for i in items] == [f"{a.id}_0", f"{a.id}_1"]
    assert items[0].filename == "DN_1_2024-01-05_Acme"
    assert items[0].output_mode == OutputMode.BY_DATE
    assert len(c.ledger) == 0


def test_save_review_exports_kept_items_and_completes_files(make_coordinator):
    c = make_coordinator(SCRIPT, manual_review_mode=True)
    a = _add(c, "a", 2)
    c.run()

    session = c.open_review_session()
    session.rename(f"{a.id}_0", "Renamed: first")
    session.delete(f"{a.id}_1")
    result = c.save_review(session)

    assert result.saved_items == 1
    assert result.completed_file_ids == [a.id]
    assert result.archive.name.startswith("smart_split_reviewed_")
    assert _zip_names(c, result.archive) == ["2024-01-05/Renamed_ first.pdf"]
    assert c.get_file(a.id).status == FileStatus.DONE
    assert len(c.review_queue) == 0

    (record,) = c.ledger.records
    assert record.filename == "a.pdf"
    assert [s.final_filename for s in record.segments] == ["Renamed_ first.pdf"]


def test_review_uses_output_mode_frozen_at_enqueue(make_coordinator):
    c = make_coordinator(SCRIPT, manual_review_mode=True, output_mode=OutputMode.BY_ORIGINAL)
    _add(c, "b")
    c.run()
    c.update_settings(output_mode=OutputMode.FLATTEN)

    result = c.save_review(c.open_review_session())
    assert _zip_names(c, result.archive) == ["b/DN_1_2024-01-05_Acme.pdf"]


def test_saving_an_empty_session_still_completes_owners(make_coordinator):
    c = make_coordinator(SCRIPT, manual_review_mode=True)
    b = _add(c, "b")
    c.run()

    session = c.open_review_session()
    session.delete(f"{b.id}_0")
    result = c.save_review(session)

    assert result.archive is None
    assert c.get_file(b.id).status == FileStatus.DONE
    assert c.ledger.records[0].segments == ()


def test_items_queued_after_session_opened_stay_queued(make_coordinator):
    c = make_coordinator(SCRIPT, manual_review_mode=True)
    first = _add(c, "b")
    c.run()
    session = c.open_review_session()

    second = _add(c, "low")
    c.run()
    c.save_review(session)

    assert c.get_file(first.id).status == FileStatus.DONE
    assert c.get_file(second.id).status == FileStatus.WAITING_REVIEW
    assert [i.file_id for i in c.review_queue] == [second.id]


def test_file_removed_after_session_opened_is_not_exported(make_coordinator):
    c = make_coordinator(SCRIPT, manual_review_mode=True)
    a = _add(c, "a", 2)
    b = _add(c, "b")
    c.run()
    session = c.open_review_session()

    c.remove_file(a.id)
    result = c.save_review(session)

    assert result.completed_file_ids == [b.id]
    assert _zip_names(c, result.archive) == ["2024-01-05/DN_1_2024-01-05_Acme.pdf"]
    assert [r.filename for r in c.ledger.records] == ["b.pdf"]


def test_remove_waiting_file_drops_items_and_buffer(make_coordinator):
    c = make_coordinator(SCRIPT, manual_review_mode=True, include_original=True)
    a = _add(c, "a", 2)
    c.run()
    assert c.buffered_originals == [a.id]

    c.remove_file(a.id)

    assert len(c.review_queue) == 0
    assert c.buffered_originals == []
    with pytest.raises(UnknownFile):
        c.get_file(a.id)
    with pytest.raises(UnknownFile):
        c.remove_file(a.id)


def test_review_archive_carries_buffered_original(make_coordinator):
    c = make_coordinator(SCRIPT, manual_review_mode=True, include_original=True, output_mode=OutputMode.FLATTEN)
    _add(c, "b")
    c.run()
    result = c.save_review(c.open_review_session())
    assert _zip_names(c, result.archive) == ["DN_1_2024-01-05_Acme.pdf", "original_b.pdf"]
    assert c.buffered_originals == []


def test_batch_limit_stops_the_run(make_coordinator):
    c = make_coordinator(SCRIPT, manual_review_mode=False, batch_limit=2)
    files = [_add(c, "b", name=f"b{i}.pdf") for i in range(3)]

    first = c.run()
    assert first.processed == 2
    assert first.stopped_at_cap is True
    assert first.archive is not None
    assert c.get_file(files[2].id).status == FileStatus.IDLE

    second = c.run()
    assert second.processed == 1
    assert second.stopped_at_cap is False
    assert c.get_file(files[2].id).status == FileStatus.DONE


def test_errors_are_isolated_and_not_logged_to_history(make_coordinator):
    c = make_coordinator(SCRIPT, manual_review_mode=False)
    broken = _add(c, "broken")
    good = _add(c, "b")

    summary = c.run()

    assert summary.errors == 1 and summary.done == 1
    assert c.get_file(broken.id).status == FileStatus.ERROR
    assert c.get_file(good.id).status == FileStatus.DONE
    assert [r.filename for r in c.ledger.records] == ["b.pdf"]
    assert summary.archive is not None

    # error is terminal: a second run does not retry it
    assert c.run().processed == 0


def test_empty_recognition_is_recorded_without_segments(make_coordinator):
    c = make_coordinator(SCRIPT, manual_review_mode=False)
    f = _add(c, "empty")
    summary = c.run()

    assert summary.done == 1
    assert summary.archive is None
    assert c.get_file(f.id).error == "No documents identified"
    assert c.ledger.records[0].segments == ()
    assert "(No segments)" in c.export_history_csv()


def test_duplicate_flag_comes_from_history(make_coordinator):
    c = make_coordinator(SCRIPT, manual_review_mode=False)
    assert _add(c, "b").duplicate is False
    c.run()
    assert _add(c, "b").duplicate is True


def test_reference_table_verifies_and_persists(make_coordinator, storage):
    c = make_coordinator({"m": [seg(1, 1, "DN-1", customer_id="#1234")]}, manual_review_mode=False)
    assert c.load_reference_table(REFERENCE) == 2
    f = _add(c, "m")
    c.run()
    assert c.get_file(f.id).segments[0].verification_status == VerificationStatus.MISMATCH

    assert storage.get_json_if_exists(name=REFERENCE_STATE_NAME) == REFERENCE
    reborn = BatchCoordinator(pipeline=c.pipeline, storage=storage)
    assert len(reborn.reference_table) == 2

    c.clear_reference_table()
    assert len(c.reference_table) == 0


def test_rejected_reference_load_keeps_active_table(make_coordinator):
    c = make_coordinator(SCRIPT)
    c.load_reference_table(REFERENCE)
    with pytest.raises(MalformedReferenceLoad):
        c.load_reference_table('[{"id": "only"}]')
    assert len(c.reference_table) == 2


def test_truncated_reference_state_starts_empty(make_coordinator, storage):
    path = storage.root / "state" / REFERENCE_STATE_NAME
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text('[{"id": ', encoding="utf-8")
    assert len(make_coordinator(SCRIPT).reference_table) == 0


def test_concurrent_runs_are_rejected(make_coordinator):
    c = make_coordinator(SCRIPT)
    c._run_lock.acquire()
    try:
        assert c.is_running
        with pytest.raises(CoordinatorBusy):
            c.run()
        with pytest.raises(CoordinatorBusy):
            c.update_settings(min_confidence=0.5)
        with pytest.raises(CoordinatorBusy):
            c.flush_batch_archive()
    finally:
        c._run_lock.release()


def test_explicit_flush_delivers_pending_batch(make_coordinator):
    c = make_coordinator(SCRIPT, manual_review_mode=False)
    _add(c, "b")
    _add(c, "low")
    c.run()
    assert c.pending_batch_entries == 1

    archive = c.flush_batch_archive()
    assert archive.entry_count == 1
    assert c.pending_batch_entries == 0
    assert c.flush_batch_archive() is None

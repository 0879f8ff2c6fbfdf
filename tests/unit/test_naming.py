from __future__ import annotations

from services.export.naming import (
    UNDATED_FOLDER,
    NameScope,
    build_segment_filename,
    folder_key,
    original_copy_name,
    original_folder_key,
    sanitize_filename,
    strip_pdf_suffix,
)
from services.segmentation.models import OutputMode, ReferenceRecord, Segment, VerificationStatus


def _segment(**kw) -> Segment:
    base = dict(
        start_page=1,
        end_page=1,
        delivery_id="DN-001/A",
        customer_name="Acme, Inc.",
        delivery_date="2024-01-05",
        confidence=0.9,
    )
    base.update(kw)
    return Segment(**base)


def test_resolve_returns_candidate_when_unused():
    scope = NameScope()
    assert scope.resolve("", "a.pdf") == "a.pdf"
    assert scope.resolve("", "b.pdf") == "b.pdf"


def test_resolve_suffixes_collisions_in_order():
    scope = NameScope()
    names = [scope.resolve("2024-01-05", "a.pdf") for _ in range(3)]
    assert names == ["a.pdf", "a_(1).pdf", "a_(2).pdf"]


def test_resolve_scopes_are_per_folder():
    scope = NameScope()
    assert scope.resolve("x", "a.pdf") == "a.pdf"
    assert scope.resolve("y", "a.pdf") == "a.pdf"
    assert scope.resolve("x", "a.pdf") == "a_(1).pdf"


def test_resolve_skips_names_reserved_by_earlier_suffixing():
    scope = NameScope()
    scope.resolve("", "a_(1).pdf")
    scope.resolve("", "a.pdf")
    assert scope.resolve("", "a.pdf") == "a_(2).pdf"


def test_folder_key_modes():
    assert folder_key(OutputMode.FLATTEN, "packet.pdf", "2024-01-05") == ""
    assert folder_key(OutputMode.BY_ORIGINAL, "Packet.PDF", "2024-01-05") == "Packet"
    assert folder_key(OutputMode.BY_DATE, "packet.pdf", "2024-01-05") == "2024-01-05"
    assert folder_key(OutputMode.BY_DATE, "packet.pdf", "") == UNDATED_FOLDER


def test_original_copy_placement():
    assert original_copy_name("packet.pdf") == "original_packet.pdf"
    assert original_folder_key(OutputMode.BY_ORIGINAL, "packet.pdf") == "packet"
    assert original_folder_key(OutputMode.BY_DATE, "packet.pdf") == ""
    assert original_folder_key(OutputMode.FLATTEN, "packet.pdf") == ""


def test_strip_pdf_suffix_only_trailing():
    assert strip_pdf_suffix("a.pdf.PDF") == "a.pdf"
    assert strip_pdf_suffix("pdf_notes") == "pdf_notes"


def test_sanitize_filename_replaces_forbidden_characters():
    assert sanitize_filename('a/b\\c:d*e?f"g<h>i|j') == "a_b_c_d_e_f_g_h_i_j"
    assert sanitize_filename("plain name") == "plain name"


def test_build_segment_filename_collapses_unsafe_runs():
    name = build_segment_filename(_segment(customer_id="#89 71"))
    assert name == "DN_001_A_2024-01-05_Acme_Inc__8971.pdf"


def test_build_segment_filename_placeholders():
    name = build_segment_filename(_segment(delivery_id="", delivery_date="", customer_name=""))
    assert name == "Unknown_Date_Customer.pdf"


def test_build_segment_filename_prefers_reference_name_when_verified():
    record = ReferenceRecord(id="DN-001/A", order_id="1", customers="Acme Corp")
    verified = _segment(verification_status=VerificationStatus.VERIFIED, db_match=record)
    assert build_segment_filename(verified) == "DN_001_A_2024-01-05_Acme_Corp.pdf"

    mismatch = _segment(verification_status=VerificationStatus.MISMATCH, db_match=record)
    assert build_segment_filename(mismatch) == "DN_001_A_2024-01-05_Acme_Inc_.pdf"

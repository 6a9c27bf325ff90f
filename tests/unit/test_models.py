from __future__ import annotations

import pytest

from services.import_job.clients import map_remote_status, parse_status
from services.import_job.models import Document, DraftPatch, JobState, Record, coerce_order


def test_from_wire_defaults_order_and_columns():
    r = Record.from_wire({"question": "What?"}, 4)
    assert r.stable_id is None
    assert r.order == 4
    assert r.fields == {"question": "What?", "answer": ""}


def test_from_wire_keeps_backend_id_and_extra_fields():
    r = Record.from_wire({"id": 12, "order": 2, "question": "Q", "answer": None, "topic": "math"}, 1)
    assert r.stable_id == "12"
    assert r.order == 2
    assert r.fields == {"question": "Q", "answer": "", "topic": "math"}


def test_to_wire_puts_order_first_and_omits_id():
    r = Record(stable_id="x", order=3, fields={"question": "Q", "answer": "A"})
    assert r.to_wire() == {"order": 3, "question": "Q", "answer": "A"}


@pytest.mark.parametrize("raw,expected", [(3, 3), (3.0, 3), ("7", 7), (" 8 ", 8), ("2.0", 2)])
def test_coerce_order_accepts_integral_values(raw, expected):
    assert coerce_order(raw) == expected


@pytest.mark.parametrize("raw", [None, True, 1.5, "", "abc", "1.5"])
def test_coerce_order_rejects_everything_else(raw):
    with pytest.raises(ValueError):
        coerce_order(raw)


def test_draft_patch_from_grid_values():
    p = DraftPatch.from_dict({"id": "row_1", "answer": "B"})
    assert p.stable_id == "row_1"
    assert p.fields == {"answer": "B"}


def test_document_extension_is_case_insensitive(tmp_path):
    f = tmp_path / "Scan.PDF"
    f.write_bytes(b"%PDF")
    doc = Document.from_path(f)
    assert doc.name == "Scan.PDF"
    assert doc.extension == ".pdf"
    assert doc.content == b"%PDF"


def test_map_remote_status_vocabularies():
    assert map_remote_status("PENDING") is JobState.QUEUED
    assert map_remote_status("Queued") is JobState.QUEUED
    assert map_remote_status("STARTED") is JobState.PROCESSING
    assert map_remote_status("Processing") is JobState.PROCESSING
    assert map_remote_status("SUCCEEDED") is JobState.COMPLETE
    assert map_remote_status("Complete") is JobState.COMPLETE
    assert map_remote_status("FAILED") is JobState.ERROR
    assert map_remote_status("Error") is JobState.ERROR
    assert map_remote_status("weird") is None
    assert map_remote_status(None) is None


def test_parse_status_error_detail_and_unknown_values():
    err = parse_status({"status": "Error", "message": "Job failed", "detail": "parse failure", "error": "job_failed"})
    assert err.state is JobState.ERROR
    assert err.error_detail == "parse failure"
    assert err.message == "Job failed"

    odd = parse_status({"status": "PAUSED"})
    assert odd.state is JobState.PROCESSING
    assert "PAUSED" in odd.message
    assert not odd.is_terminal

from __future__ import annotations

import asyncio

import pytest
import requests

import services.import_job.clients as clients_mod
from services.import_job.clients import HttpImportClient
from services.import_job.errors import PersistenceError, ResultFetchError, SubmissionError, TransportError
from services.import_job.models import Document, JobState


class FakeResponse:
    def __init__(self, status_code: int, body=None):
        self.status_code = status_code
        self._body = body

    def json(self):
        if self._body is None:
            raise ValueError("no json body")
        return self._body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)


class FakeSession:
    def __init__(self, routes):
        # routes: {(method, path): [response_or_exception, ...]}
        self.routes = {k: list(v) for k, v in routes.items()}
        self.calls = []
        self.closed = False

    def request(self, method, url, timeout=None, **kwargs):
        path = url.replace("http://gw", "", 1)
        self.calls.append((method, path, kwargs))
        queue = self.routes[(method, path)]
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    def close(self):
        self.closed = True


def _client(routes):
    session = FakeSession(routes)
    return HttpImportClient("http://gw/", timeout_s=5, session=session), session


PDF = Document(name="a.pdf", content=b"%PDF")


def test_submit_posts_multipart_and_defaults_to_queued():
    client, session = _client({("POST", "/jobs"): [FakeResponse(202, {"job_id": "j-1"})]})

    accepted = asyncio.run(client.submit(PDF))

    assert accepted.job_handle == "j-1"
    assert accepted.status.state is JobState.QUEUED
    method, path, kwargs = session.calls[0]
    assert (method, path) == ("POST", "/jobs")
    assert kwargs["files"]["file"][0] == "a.pdf"
    assert kwargs["files"]["file"][1] == b"%PDF"


def test_submit_surfaces_gateway_detail():
    client, _ = _client({("POST", "/jobs"): [FakeResponse(400, {"detail": "not a pdf"})]})
    with pytest.raises(SubmissionError, match="not a pdf"):
        asyncio.run(client.submit(PDF))


def test_submit_without_job_id_is_a_submission_error():
    client, _ = _client({("POST", "/jobs"): [FakeResponse(202, {"ok": True})]})
    with pytest.raises(SubmissionError):
        asyncio.run(client.submit(PDF))


def test_status_maps_gateway_vocabulary():
    client, _ = _client({
        ("GET", "/jobs/j-1"): [
            FakeResponse(200, {"job_id": "j-1", "status": "RUNNING"}),
            FakeResponse(200, {"job_id": "j-1", "status": "FAILED", "error": "bad_input", "detail": "parse failure"}),
        ]
    })

    first = asyncio.run(client.status("j-1"))
    second = asyncio.run(client.status("j-1"))

    assert first.state is JobState.PROCESSING
    assert second.state is JobState.ERROR
    assert second.error_detail == "parse failure"


def test_terminal_status_never_regresses():
    client, session = _client({
        ("GET", "/jobs/j-1"): [
            FakeResponse(200, {"status": "SUCCEEDED"}),
            FakeResponse(200, {"status": "QUEUED"}),
        ]
    })

    seen = [asyncio.run(client.status("j-1")).state for _ in range(3)]

    assert seen == [JobState.COMPLETE] * 3
    assert len(session.calls) == 1


def test_terminal_cache_drops_oldest_handles(monkeypatch):
    monkeypatch.setattr(clients_mod, "TERMINAL_CACHE_SIZE", 2)
    done = [FakeResponse(200, {"status": "FAILED", "error": "bad scan"})]
    client, session = _client({("GET", f"/jobs/j-{n}"): done for n in (1, 2, 3)})

    for n in (1, 2, 3):
        asyncio.run(client.status(f"j-{n}"))

    assert list(client._terminal) == ["j-2", "j-3"]
    asyncio.run(client.status("j-3"))
    assert len(session.calls) == 3
    asyncio.run(client.status("j-1"))
    assert len(session.calls) == 4


def test_status_network_failure_is_transport_error():
    client, _ = _client({("GET", "/jobs/j-1"): [requests.ConnectionError("refused")]})
    with pytest.raises(TransportError, match="refused"):
        asyncio.run(client.status("j-1"))


def test_fetch_result_builds_records():
    body = {"records": [
        {"order": 2, "question": "Q2", "answer": "A2"},
        {"id": "r-9", "question": "Q?"},
    ]}
    client, _ = _client({("GET", "/jobs/j-1/result"): [FakeResponse(200, body)]})

    records = asyncio.run(client.fetch_result("j-1"))

    assert [r.order for r in records] == [2, 2]
    assert records[0].stable_id is None
    assert records[1].stable_id == "r-9"
    assert records[1].fields == {"question": "Q?", "answer": ""}


def test_fetch_result_accepts_bare_list():
    client, _ = _client({("GET", "/jobs/j-1/result"): [FakeResponse(200, [{"question": "Q"}])]})
    records = asyncio.run(client.fetch_result("j-1"))
    assert records[0].order == 1


@pytest.mark.parametrize("body", [{"ok": True, "rows": [{"question": "Q"}]}, {"records": None}, {"records": {"question": "Q"}}])
def test_fetch_result_without_records_list_is_an_error(body):
    client, _ = _client({("GET", "/jobs/j-1/result"): [FakeResponse(200, body)]})
    with pytest.raises(ResultFetchError, match="no records list"):
        asyncio.run(client.fetch_result("j-1"))


def test_fetch_result_accepts_empty_records():
    client, _ = _client({("GET", "/jobs/j-1/result"): [FakeResponse(200, {"records": []})]})
    assert asyncio.run(client.fetch_result("j-1")) == []


def test_fetch_result_rejects_payload_outside_schema():
    bad = {"records": [{"order": "first", "question": "Q"}]}
    client, _ = _client({("GET", "/jobs/j-1/result"): [FakeResponse(200, bad)]})
    with pytest.raises(ResultFetchError, match="order"):
        asyncio.run(client.fetch_result("j-1"))


def test_fetch_result_http_error():
    client, _ = _client({("GET", "/jobs/j-1/result"): [FakeResponse(404, {"detail": "job_not_found"})]})
    with pytest.raises(ResultFetchError, match="job_not_found"):
        asyncio.run(client.fetch_result("j-1"))


def test_commit_posts_rows_and_reads_summary():
    client, session = _client({
        ("POST", "/records"): [FakeResponse(200, {"created_count": 2, "container_id": "Q-1", "container_name": "Ch 1"})]
    })
    rows = [{"order": 1, "question": "a"}, {"order": 2, "question": "b"}]

    summary = asyncio.run(client.commit(job_handle="j-1", records=rows, container_name="Ch 1"))

    assert summary.created_count == 2
    assert summary.container_id == "Q-1"
    assert session.calls[0][2]["json"] == {"job_id": "j-1", "container_name": "Ch 1", "records": rows}


def test_commit_failure_is_persistence_error():
    client, _ = _client({("POST", "/records"): [FakeResponse(500, None)]})
    with pytest.raises(PersistenceError, match="HTTP 500"):
        asyncio.run(client.commit(job_handle="j-1", records=[{"order": 1}]))


def test_close_closes_session():
    client, session = _client({})
    client.close()
    assert session.closed

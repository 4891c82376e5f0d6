from types import SimpleNamespace

import pytest

from expense_tracker.services import container
from expense_tracker.services.job_events import JobEventSink
from expense_tracker.services.job_queue import JobKind, UnknownJobKindError
from expense_tracker.tasks import runner


class FakeJob:
    def __init__(self):
        self.id = "job-7"
        self.meta = {"kind": "bulk-recategorize", "attempts": 1, "progress": 0}
        self.saves = 0

    def save_meta(self):
        self.saves += 1


class ProgressSink(JobEventSink):
    def __init__(self):
        self.progress = []

    def job_progress(self, kind, job_id, progress):
        self.progress.append((kind, job_id, progress))


@pytest.fixture
def installed(monkeypatch):
    seen = []

    def processor(payload, context):
        seen.append(payload)
        context.report_progress(150)
        return {"ok": True}

    processors = {kind: processor for kind in JobKind}
    monkeypatch.setattr(container, "_worker_processors", processors)
    return seen


def test_run_job_dispatches_and_tracks_attempts(monkeypatch, installed):
    job = FakeJob()
    sink = ProgressSink()
    monkeypatch.setattr(runner, "get_current_job", lambda: job)
    monkeypatch.setattr(runner, "get_event_sink", lambda: sink)

    result = runner.run_job("bulk-recategorize", {"user_id": "u1"})

    assert result == {"ok": True}
    assert installed == [{"user_id": "u1"}]
    assert job.meta["attempts"] == 2
    assert job.meta["progress"] == 100.0
    assert sink.progress == [("bulk-recategorize", "job-7", 100.0)]


def test_run_job_outside_worker_has_no_job(monkeypatch, installed):
    monkeypatch.setattr(runner, "get_current_job", lambda: None)

    assert runner.run_job(JobKind.SEND_EMAIL, {"to": "x"}) == {"ok": True}


def test_run_job_unknown_kind(installed):
    with pytest.raises(UnknownJobKindError):
        runner.run_job("mine-bitcoin", {})


def test_build_processors_covers_every_kind():
    services = SimpleNamespace(
        client=object(), store=object(), cache=object(), orchestrator=object(),
        email_sender=object(), report_renderer=object(),
        settings=SimpleNamespace(BULK_DEFAULT_LIMIT=100),
    )
    assert set(container.build_processors(services)) == set(JobKind)

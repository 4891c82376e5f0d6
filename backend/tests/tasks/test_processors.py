from datetime import datetime
from types import SimpleNamespace

import pytest

from conftest import FakeCache, FakeClient, RecordingContext, ai_result, category_id
from expense_tracker.services.categorization_client import CategorizationUnavailableError
from expense_tracker.services.email_sender import UnknownEmailKindError
from expense_tracker.services.report_renderer import ReportRenderer
from expense_tracker.tasks.categorization import (
    BulkRecategorizeProcessor,
    CategorizeExpenseProcessor,
    LearnFromCorrectionProcessor,
)
from expense_tracker.tasks.email import BudgetAlertProcessor, EmailDeliveryError, SendEmailProcessor
from expense_tracker.tasks.reports import GenerateReportProcessor


class FakeSender:
    def __init__(self, ok=True):
        self.ok = ok
        self.sent = []

    def send(self, kind, recipient, template_data):
        self.sent.append((kind, recipient, template_data))
        return self.ok


def make_expense(store, user_id, description="Taxi home", confidence=None):
    return store.create_expense(user_id, {
        "amount": 23.0, "description": description, "merchant": "Uber", "payment_method": "CREDIT_CARD",
        "transaction_date": datetime(2024, 5, 3),
    }, category_id(store, "Other"), confidence)


def categorize_payload(expense):
    return {
        "expense_id": expense["id"],
        "request": {"description": "Taxi home", "merchant": "Uber", "amount": 23.0, "payment_method": "CREDIT_CARD"},
    }


def test_categorize_persists_result_and_invalidates_owner_cache(store, user_id):
    expense = make_expense(store, user_id, confidence=0.9)
    transport = category_id(store, "Transportation")
    client = FakeClient(default=ai_result(transport, 0.4))
    cache = FakeCache()

    result = CategorizeExpenseProcessor(client, store, cache)(categorize_payload(expense), RecordingContext())

    stored = store.get_expense(expense["id"])
    # The single-expense job always takes the fresh answer
    assert stored["category_id"] == transport
    assert stored["ai_confidence"] == 0.4
    assert cache.invalidated == [user_id]
    assert result["category_id"] == transport
    assert client.calls[0].description == "Taxi home"
    assert client.probes == 0


def test_categorize_uses_payload_snapshot(store, user_id):
    expense = make_expense(store, user_id, description="edited later")
    client = FakeClient(default=ai_result(category_id(store, "Transportation"), 0.7))

    CategorizeExpenseProcessor(client, store, FakeCache())(categorize_payload(expense), RecordingContext())

    assert client.calls[0].description == "Taxi home"


def test_categorize_failure_propagates_without_fallback(store, user_id):
    expense = make_expense(store, user_id, confidence=0.6)
    client = FakeClient(default=CategorizationUnavailableError("timed out"))
    cache = FakeCache()

    with pytest.raises(CategorizationUnavailableError):
        CategorizeExpenseProcessor(client, store, cache)(categorize_payload(expense), RecordingContext())

    assert store.get_expense(expense["id"])["ai_confidence"] == 0.6
    assert cache.invalidated == []


def test_learn_processor_calls_client_and_reraises():
    client = FakeClient()
    payload = {
        "expense_id": "e1",
        "original_category_id": "other",
        "corrected_category_id": "food",
        "request": {"description": "Burrito", "amount": 11.0, "payment_method": "CASH", "merchant": "Chipotle"},
    }

    assert LearnFromCorrectionProcessor(client)(payload, RecordingContext())["learned"] is True
    assert client.learned[0][:2] == ("other", "food")

    def broken(*args):
        raise RuntimeError("db down")

    client.learn_from_correction = broken
    with pytest.raises(RuntimeError):
        LearnFromCorrectionProcessor(client)(payload, RecordingContext())


def test_bulk_processor_passes_progress_channel():
    calls = []

    class Orchestrator:
        def run(self, user_id, limit, only_low_confidence, progress=None):
            calls.append((user_id, limit, only_low_confidence))
            progress(50.0)
            return SimpleNamespace(to_dict=lambda: {"processed": 2, "updated": 1, "failed": 1})

    context = RecordingContext()
    result = BulkRecategorizeProcessor(Orchestrator(), default_limit=100)({"user_id": "u1"}, context)

    assert calls == [("u1", 100, True)]
    assert context.progress == [50.0]
    assert result == {"processed": 2, "updated": 1, "failed": 1}


def test_send_email_raises_when_delivery_fails():
    payload = {"type": "welcome", "to": "sam@example.com", "data": {"user_name": "Sam"}}

    assert SendEmailProcessor(FakeSender())(payload, RecordingContext())["sent"] is True
    with pytest.raises(EmailDeliveryError):
        SendEmailProcessor(FakeSender(ok=False))(payload, RecordingContext())


def test_send_email_rejects_unknown_kind():
    sender = FakeSender()
    with pytest.raises(UnknownEmailKindError):
        SendEmailProcessor(sender)({"type": "newsletter", "to": "x@example.com"}, RecordingContext())
    assert sender.sent == []


def test_budget_alert_sums_period_spending(store, user_id, session_factory):
    from expense_tracker.database.models import Budget

    food = category_id(store, "Food & Dining")
    for amount in (40.0, 35.0):
        expense = make_expense(store, user_id)
        store.update_expense(expense["id"], {"amount": amount})
        store.update_expense_category(expense["id"], food, None)
    session = session_factory()
    session.add(Budget(id="b1", user_id=user_id, category_id=food, amount=100.0,
                       start_date=datetime(2024, 5, 1), end_date=datetime(2024, 5, 31)))
    session.commit()
    session.close()
    sender = FakeSender()

    alert = BudgetAlertProcessor(store, sender)({"user_id": user_id, "budget_id": "b1"}, RecordingContext())

    assert alert["spent"] == 75.0
    assert alert["percentage"] == 75.0
    kind, recipient, data = sender.sent[0]
    assert kind == "budget-alert"
    assert recipient == f"{user_id}@example.com"
    assert data["user_name"] == "Sam"

    with pytest.raises(LookupError):
        BudgetAlertProcessor(store, sender)({"user_id": user_id, "budget_id": "missing"}, RecordingContext())


def test_generate_report_reports_milestones(store, user_id, tmp_path):
    report = store.create_report(user_id, {
        "name": "May", "type": "monthly", "parameters": {"start_date": "2024-05-01", "end_date": "2024-05-31"},
    })
    make_expense(store, user_id)
    context = RecordingContext()

    result = GenerateReportProcessor(store, ReportRenderer(store, str(tmp_path)))(
        {"report_id": report["id"], "user_id": user_id}, context,
    )

    assert context.progress == [10, 30, 80, 100]
    assert result["status"] == "completed"
    assert store.get_report(report["id"])["file_path"] == result["file_path"]


def test_generate_report_missing_report_fails(store, user_id, tmp_path):
    context = RecordingContext()
    with pytest.raises(LookupError):
        GenerateReportProcessor(store, ReportRenderer(store, str(tmp_path)))(
            {"report_id": "missing", "user_id": user_id}, context,
        )
    assert context.progress == [10]

from datetime import datetime

import pytest

from conftest import category_id
from expense_tracker.database.expense_store import DEFAULT_CATEGORIES, ExpenseNotFoundError


def add_expense(store, user_id, description="Groceries", confidence=None, **extra):
    data = {
        "amount": 42.0,
        "description": description,
        "payment_method": "DEBIT_CARD",
        "transaction_date": datetime(2024, 2, 10),
        **extra,
    }
    return store.create_expense(user_id, data, category_id(store, "Other"), confidence)


def test_seed_is_idempotent(store):
    assert store.seed_default_categories() == 0
    assert len(store.list_categories()) == len(DEFAULT_CATEGORIES)


def test_default_category_is_get_or_create(session_factory):
    from expense_tracker.database.expense_store import ExpenseStore

    empty = ExpenseStore(session_factory)
    first = empty.find_or_create_default_category()
    second = empty.find_or_create_default_category()

    assert first["id"] == second["id"]
    assert first["name"] == "Other"
    assert [c["name"] for c in empty.list_categories()] == ["Other"]


def test_update_expense_category_sets_and_clears_confidence(store, user_id):
    expense = add_expense(store, user_id)
    food = category_id(store, "Food & Dining")

    store.update_expense_category(expense["id"], food, 0.83)
    assert store.get_expense(expense["id"])["ai_confidence"] == 0.83

    store.update_expense_category(expense["id"], food, None)
    updated = store.get_expense(expense["id"])
    assert updated["category_id"] == food
    assert updated["ai_confidence"] is None


def test_update_missing_expense_raises(store):
    with pytest.raises(ExpenseNotFoundError):
        store.update_expense_category("missing", category_id(store, "Other"), 0.5)


def test_confidence_outside_range_is_rejected_by_database(store, user_id):
    from sqlalchemy.exc import IntegrityError

    expense = add_expense(store, user_id)
    with pytest.raises(IntegrityError):
        store.update_expense_category(expense["id"], category_id(store, "Other"), 1.7)


def test_expense_owner_and_user_scoping(store, user_id):
    expense = add_expense(store, user_id)

    assert store.get_expense_owner(expense["id"]) == user_id
    assert store.get_expense_owner("missing") is None
    assert store.get_expense(expense["id"], "someone-else") is None


def test_recategorization_candidates_newest_first_and_capped(store, user_id):
    ids = [add_expense(store, user_id, description=f"item {i}", created_at=datetime(2024, 1, i + 1))["id"]
           for i in range(6)]
    add_expense(store, user_id, description="confident", confidence=0.9, created_at=datetime(2024, 2, 1))
    add_expense(store, user_id, description="shaky", confidence=0.49, created_at=datetime(2024, 2, 2))

    low = store.list_expenses_for_recategorization(user_id, True, 4)
    assert [c["description"] for c in low] == ["shaky", "item 5", "item 4", "item 3"]

    everything = store.list_expenses_for_recategorization(user_id, False, 100)
    assert len(everything) == 8
    assert everything[0]["description"] == "shaky"
    assert everything[0]["payment_method"] == "DEBIT_CARD"
    assert ids[0] == everything[-1]["id"]


def test_corrections_are_replayed_per_merchant(store):
    other = category_id(store, "Other")
    food = category_id(store, "Food & Dining")
    store.record_correction(other, food, {"description": "Burrito", "merchant": "Chipotle", "amount": 11.0})
    store.record_correction(other, food, {"description": "Taxi", "merchant": "Uber", "amount": 20.0})

    hints = store.recent_corrections("chipotle", 5)

    assert hints == [{"description": "Burrito", "category": "Food & Dining"}]
    assert store.recent_corrections(None, 5) == []
    assert store.recent_corrections("Chipotle", 0) == []


def test_budget_spending_and_report_artifact(store, user_id, session_factory):
    from expense_tracker.database.models import Budget

    food = category_id(store, "Food & Dining")
    for amount, day in ((30.0, 5), (20.0, 20), (99.0, 28)):
        expense = add_expense(store, user_id, amount=amount, transaction_date=datetime(2024, 2, day))
        store.update_expense_category(expense["id"], food, None)
    session = session_factory()
    session.add(Budget(id="b1", user_id=user_id, category_id=food, amount=100.0,
                       start_date=datetime(2024, 2, 1), end_date=datetime(2024, 2, 21)))
    session.commit()
    session.close()

    budget = store.get_budget("b1")
    assert budget["category_name"] == "Food & Dining"
    assert store.sum_spending(user_id, food, budget["start_date"], budget["end_date"]) == 50.0

    report = store.create_report(user_id, {"name": "Feb", "type": "monthly", "parameters": {}})
    store.set_report_artifact(report["id"], "/tmp/r.json")
    assert store.get_report(report["id"], user_id)["file_path"] == "/tmp/r.json"
    with pytest.raises(LookupError):
        store.set_report_artifact("missing", "/tmp/x.json")


import os
import threading
import uuid
from types import SimpleNamespace

import pytest

# Settings are read at import time
os.environ.setdefault("SECRET_KEY", "k7Qz9vX2mN4pL8rT1wY6bH3jF5dS0aGc")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "development")

from sqlalchemy.pool import StaticPool

from expense_tracker.database.expense_store import ExpenseStore
from expense_tracker.database.postgres_db import create_session_factory
from expense_tracker.models.categorization import CategorizationResult


@pytest.fixture
def session_factory():
    factory = create_session_factory(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def store(session_factory):
    expense_store = ExpenseStore(session_factory)
    expense_store.seed_default_categories()
    return expense_store


@pytest.fixture
def user_id(session_factory):
    user = str(uuid.uuid4())
    from expense_tracker.database.models import User
    session = session_factory()
    session.add(User(id=user, email=f"{user}@example.com", first_name="Sam"))
    session.commit()
    session.close()
    return user


def category_id(store, name):
    return next(c["id"] for c in store.list_categories() if c["name"] == name)


class FakeClient:
    """AI client double. ``outcomes`` maps descriptions to a result or an exception."""

    def __init__(self, connected=True, default=None, outcomes=None):
        self.connected = connected
        self.default = default
        self.outcomes = outcomes or {}
        self.probes = 0
        self.calls = []
        self.learned = []
        self._lock = threading.Lock()

    def test_connection(self):
        self.probes += 1
        return self.connected

    def categorize_expense(self, request):
        with self._lock:
            self.calls.append(request)
        outcome = self.outcomes.get(request.description, self.default)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            raise RuntimeError("no outcome configured")
        return outcome

    def learn_from_correction(self, original_category_id, corrected_category_id, request):
        self.learned.append((original_category_id, corrected_category_id, request))


class FakeQueue:
    def __init__(self, fail=False):
        self.jobs = []
        self.fail = fail

    def enqueue(self, kind, payload, *, meta=None):
        if self.fail:
            raise ConnectionError("redis down")
        job = SimpleNamespace(id=f"job-{len(self.jobs) + 1}", kind=kind, payload=payload, meta=meta or {})
        self.jobs.append(job)
        return job

    def kinds(self):
        return [job.kind for job in self.jobs]


class FakeCache:
    def __init__(self):
        self.invalidated = []
        self.entries = {}

    def invalidate_user(self, user_id):
        self.invalidated.append(user_id)
        return 0

    def get_json(self, user_id, name):
        return self.entries.get((user_id, name))

    def set_json(self, user_id, name, value):
        self.entries[(user_id, name)] = value


class RecordingContext:
    def __init__(self):
        self.progress = []

    def report_progress(self, progress):
        self.progress.append(progress)


def ai_result(category, confidence, reasoning="model answer"):
    return CategorizationResult(category_id=category, confidence=confidence, reasoning=reasoning)


@pytest.fixture
def fake_queue():
    return FakeQueue()


@pytest.fixture
def fake_cache():
    return FakeCache()

import pytest

from conftest import FakeClient, ai_result, category_id
from expense_tracker.models.categorization import (
    FALLBACK_CONFIDENCE,
    CategorizationRequest,
    CategorizationResult,
    CategorySource,
)
from expense_tracker.services.categorization_client import (
    CategorizationUnavailableError,
    MalformedCategorizationResponse,
)
from expense_tracker.services.confidence_resolver import ConfidenceResolver, resolve_outcome


COFFEE = CategorizationRequest(description="Coffee", merchant="Starbucks", amount=4.50, payment_method="CASH")
FLIGHT = CategorizationRequest(description="Flight to Lagos", amount=500.00, payment_method="CREDIT_CARD")


def test_unreachable_service_falls_back_to_other(store):
    client = FakeClient(connected=False)
    resolver = ConfidenceResolver(client, store)

    result = resolver.resolve(COFFEE)

    assert result.category_id == category_id(store, "Other")
    assert result.confidence == 0.1
    assert "AI service unavailable" in result.reasoning
    assert result.source == CategorySource.FALLBACK
    assert client.calls == []


def test_successful_result_is_returned_verbatim(store):
    expected = ai_result("travel-cat-id", 0.92, "matched travel keywords")
    resolver = ConfidenceResolver(FakeClient(default=expected), store)

    assert resolver.resolve(FLIGHT) == expected


@pytest.mark.parametrize("error", [
    CategorizationUnavailableError("timed out after 30s"),
    MalformedCategorizationResponse("unknown category 'Travel'"),
    ValueError("boom"),
])
def test_any_client_error_resolves_to_fallback_with_error_message(store, error):
    resolver = ConfidenceResolver(FakeClient(default=error), store)

    result = resolver.resolve(COFFEE)

    assert result.category_id
    assert result.confidence == FALLBACK_CONFIDENCE
    assert str(error) in result.reasoning


@pytest.mark.parametrize("confidence", [0.0, 0.1, 0.37, 0.5, 0.999, 1.0])
def test_confidence_is_not_rescaled(store, confidence):
    resolver = ConfidenceResolver(FakeClient(default=ai_result("cat", confidence)), store)

    assert resolver.resolve(COFFEE).confidence == confidence


def test_user_category_skips_ai(store):
    client = FakeClient()
    resolver = ConfidenceResolver(client, store)

    result = resolver.resolve(COFFEE, category_id="chosen")

    assert result.category_id == "chosen"
    assert result.confidence is None
    assert result.source == CategorySource.USER
    assert client.probes == 0


def test_disabled_ai_uses_default_category_without_confidence(store):
    client = FakeClient()
    resolver = ConfidenceResolver(client, store, ai_enabled=False)

    result = resolver.resolve(COFFEE)

    assert result.category_id == category_id(store, "Other")
    assert result.confidence is None
    assert result.source == CategorySource.DISABLED
    assert client.probes == 0


def test_precomputed_probe_is_not_repeated(store):
    client = FakeClient(default=ai_result("cat", 0.8))
    resolver = ConfidenceResolver(client, store)

    resolver.resolve(COFFEE, connected=True)
    fallback = resolver.resolve(COFFEE, connected=False)

    assert client.probes == 0
    assert len(client.calls) == 1
    assert fallback.is_fallback


def test_fallback_creates_other_when_missing(session_factory):
    from expense_tracker.database.expense_store import ExpenseStore

    empty_store = ExpenseStore(session_factory)
    resolver = ConfidenceResolver(FakeClient(connected=False), empty_store)

    result = resolver.resolve(COFFEE)

    assert result.category_id == category_id(empty_store, "Other")


def test_resolve_outcome_only_looks_up_fallback_on_error():
    lookups = []

    def fallback():
        lookups.append(1)
        return "other-id"

    ok = ai_result("cat", 0.7)
    assert resolve_outcome(ok, None, fallback) is ok
    assert lookups == []

    failed = resolve_outcome(None, TimeoutError("slow"), fallback)
    assert failed.category_id == "other-id"
    assert failed.confidence == 0.1
    assert "slow" in failed.reasoning


def test_result_rejects_out_of_range_confidence():
    with pytest.raises(ValueError):
        CategorizationResult(category_id="cat", confidence=1.5, reasoning="")
    with pytest.raises(ValueError):
        CategorizationResult(category_id="", confidence=0.5, reasoning="")

import logging
from typing import Any, Dict

from expense_tracker.models.categorization import CategorizationRequest

logger = logging.getLogger(__name__)


class CategorizeExpenseProcessor:
    """
    Categorize one expense from the request snapshot carried in the payload.

    Failures propagate so the queue retries; this path never falls back.
    """

    def __init__(self, client, store, cache):
        self.client = client
        self.store = store
        self.cache = cache

    def __call__(self, payload: Dict[str, Any], context) -> Dict[str, Any]:
        expense_id = payload["expense_id"]
        request = CategorizationRequest.from_expense(payload["request"])

        try:
            result = self.client.categorize_expense(request)
            self.store.update_expense_category(expense_id, result.category_id, result.confidence)
        except Exception:
            logger.exception("Categorization job failed for expense %s", expense_id)
            raise

        owner = self.store.get_expense_owner(expense_id)
        if owner:
            self.cache.invalidate_user(owner)

        logger.info("Expense %s categorized as %s (%.2f)", expense_id, result.category_id, result.confidence)
        return {"expense_id": expense_id, **result.to_dict()}


class LearnFromCorrectionProcessor:
    def __init__(self, client):
        self.client = client

    def __call__(self, payload: Dict[str, Any], context) -> Dict[str, Any]:
        request = CategorizationRequest.from_expense(payload["request"])
        try:
            self.client.learn_from_correction(
                payload["original_category_id"],
                payload["corrected_category_id"],
                request,
            )
        except Exception as e:
            logger.warning("Learning from correction of expense %s failed: %s", payload.get("expense_id"), e)
            raise
        return {"expense_id": payload.get("expense_id"), "learned": True}


class BulkRecategorizeProcessor:
    def __init__(self, orchestrator, default_limit: int = 100):
        self.orchestrator = orchestrator
        self.default_limit = default_limit

    def __call__(self, payload: Dict[str, Any], context) -> Dict[str, Any]:
        outcome = self.orchestrator.run(
            payload["user_id"],
            int(payload.get("limit") or self.default_limit),
            bool(payload.get("only_low_confidence", True)),
            progress=context.report_progress,
        )
        return outcome.to_dict()

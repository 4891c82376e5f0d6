"""
Rules for categories chosen by the user.
"""
import logging
from typing import Any, Dict, Mapping, Optional

from expense_tracker.models.categorization import FALLBACK_CONFIDENCE, CategorizationRequest
from expense_tracker.services.job_queue import JobKind

logger = logging.getLogger(__name__)


def should_learn_from_correction(previous_confidence: Optional[float]) -> bool:
    """Only corrections of a real AI opinion are worth learning from."""
    return previous_confidence is not None and previous_confidence > FALLBACK_CONFIDENCE


def apply_manual_category(store, queue, expense: Mapping[str, Any], new_category_id: str,
                          ai_enabled: bool = True) -> Optional[str]:
    """
    Store a user-chosen category and clear the AI confidence.

    Keeping the current category still counts as a choice and clears the
    confidence. When the category changes and the replaced one came from the
    AI with more than the fallback confidence, one learn-from-correction job
    is enqueued. A failure to enqueue is logged and does not fail the edit.

    Returns:
        The id of the learning job, if one was enqueued
    """
    previous_category_id = expense["category_id"]
    previous_confidence = expense.get("ai_confidence")

    store.update_expense_category(expense["id"], new_category_id, None)

    if new_category_id == previous_category_id:
        return None
    if not ai_enabled or not should_learn_from_correction(previous_confidence):
        return None

    payload: Dict[str, Any] = {
        "expense_id": expense["id"],
        "original_category_id": previous_category_id,
        "corrected_category_id": new_category_id,
        "request": CategorizationRequest.from_expense(expense).to_dict(),
    }
    try:
        job = queue.enqueue(JobKind.LEARN_FROM_CORRECTION, payload, meta={"user_id": expense.get("user_id")})
    except Exception as e:
        logger.warning(f"Could not enqueue learning job for expense {expense['id']}: {e}")
        return None
    return job.id

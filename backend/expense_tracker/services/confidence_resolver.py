"""
Confidence-gated category resolution shared by inline expense creation,
explicit re-categorization and bulk re-categorization.
"""
import logging
from typing import Callable, Optional

from expense_tracker.models.categorization import (
    FALLBACK_CONFIDENCE,
    CategorizationRequest,
    CategorizationResult,
    CategorySource,
)

logger = logging.getLogger(__name__)


class AIServiceUnreachable(Exception):
    """The connectivity probe failed before any categorization was attempted."""

    def __init__(self):
        super().__init__("connection probe failed")


def fallback_reasoning(error: BaseException) -> str:
    return f"AI service unavailable, fell back to default category: {error}"


def resolve_outcome(
    result: Optional[CategorizationResult],
    error: Optional[BaseException],
    fallback_category_id: Callable[[], str],
) -> CategorizationResult:
    """
    Decide the category to apply from the outcome of an AI attempt.

    A successful result is returned unchanged. Any failure resolves to the
    default category with the fixed fallback confidence. The fallback lookup
    is only called when it is needed.
    """
    if error is None and result is not None:
        return result

    if error is None:
        error = RuntimeError("AI service returned no result")
    return CategorizationResult(
        category_id=fallback_category_id(),
        confidence=FALLBACK_CONFIDENCE,
        reasoning=fallback_reasoning(error),
        source=CategorySource.FALLBACK,
    )


class ConfidenceResolver:
    def __init__(self, client, store, ai_enabled: bool = True):
        self.client = client
        self.store = store
        self.ai_enabled = ai_enabled

    def _default_category_id(self) -> str:
        return self.store.find_or_create_default_category()["id"]

    def resolve(
        self,
        request: CategorizationRequest,
        category_id: Optional[str] = None,
        connected: Optional[bool] = None,
    ) -> CategorizationResult:
        """
        Args:
            request: Classification inputs
            category_id: Category chosen by the user, if any
            connected: Result of a probe already made by the caller. None means probe now.

        Returns:
            The category to persist. Never without a category id.
        """
        if category_id:
            return CategorizationResult(
                category_id=category_id,
                confidence=None,
                reasoning="Category selected by user",
                source=CategorySource.USER,
            )

        if not self.ai_enabled:
            return CategorizationResult(
                category_id=self._default_category_id(),
                confidence=None,
                reasoning="AI categorization is disabled",
                source=CategorySource.DISABLED,
            )

        result = None
        error = None
        try:
            if connected is None:
                connected = self.client.test_connection()
            if not connected:
                raise AIServiceUnreachable()
            result = self.client.categorize_expense(request)
        except Exception as exc:
            logger.warning("AI categorization failed for '%s': %s", request.description, exc)
            error = exc

        return resolve_outcome(result, error, self._default_category_id)

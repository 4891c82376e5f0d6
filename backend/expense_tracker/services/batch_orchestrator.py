"""
Bulk re-categorization.

Shared by the bulk-recategorize job and the synchronous bulk endpoint. Items
in a batch are resolved concurrently; a batch finishes before the next one
starts so the AI service sees at most ``batch_size`` requests at a time.
"""
import concurrent.futures
import logging
import time
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Optional

from expense_tracker.models.categorization import CategorizationRequest

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


@dataclass
class BatchOutcome:
    processed: int = 0
    updated: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def _chunks(items: List[Dict[str, Any]], size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


class BatchOrchestrator:
    def __init__(
        self,
        store,
        resolver,
        client,
        cache,
        batch_size: int = 10,
        inter_batch_delay: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.resolver = resolver
        self.client = client
        self.cache = cache
        self.batch_size = batch_size
        self.inter_batch_delay = inter_batch_delay
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings, store, resolver, client, cache) -> "BatchOrchestrator":
        return cls(
            store, resolver, client, cache,
            batch_size=settings.BULK_BATCH_SIZE,
            inter_batch_delay=settings.BULK_INTER_BATCH_DELAY,
        )

    def _process_item(self, expense: Dict[str, Any], connected: bool) -> bool:
        """Resolve one expense. Returns True when the stored category was replaced."""
        request = CategorizationRequest.from_expense(expense)
        result = self.resolver.resolve(request, connected=connected)
        if result.is_fallback:
            raise RuntimeError(result.reasoning)

        previous = expense.get("ai_confidence") or 0.0
        if (result.confidence or 0.0) <= previous:
            return False

        self.store.update_expense_category(expense["id"], result.category_id, result.confidence)
        return True

    def run(
        self,
        user_id: str,
        limit: int,
        only_low_confidence: bool,
        progress: Optional[ProgressCallback] = None,
    ) -> BatchOutcome:
        """
        Re-categorize up to ``limit`` of the user's expenses, newest first.

        Only results that strictly improve the stored confidence are written.
        Items whose AI call failed are counted as failed and left untouched.
        """
        expenses = self.store.list_expenses_for_recategorization(user_id, only_low_confidence, limit)
        total = len(expenses)
        outcome = BatchOutcome()
        logger.info(f"Bulk re-categorizing {total} expenses for user {user_id}")

        if total == 0:
            if progress:
                progress(100)
            return outcome

        connected = self.client.test_connection()
        if not connected:
            logger.warning("AI service unreachable, every item of this run will fall back")

        batches = list(_chunks(expenses, self.batch_size))
        for index, batch in enumerate(batches):
            with concurrent.futures.ThreadPoolExecutor(max_workers=len(batch)) as executor:
                futures = {executor.submit(self._process_item, expense, connected): expense for expense in batch}
                for future in concurrent.futures.as_completed(futures):
                    expense = futures[future]
                    outcome.processed += 1
                    try:
                        if future.result():
                            outcome.updated += 1
                    except Exception as e:
                        outcome.failed += 1
                        logger.warning(f"Failed to re-categorize expense {expense['id']}: {e}")

            if progress:
                progress(round(outcome.processed / total * 100, 2))
            if index < len(batches) - 1 and self.inter_batch_delay > 0:
                self._sleep(self.inter_batch_delay)

        self.cache.invalidate_user(user_id)
        logger.info(
            f"Bulk re-categorization for user {user_id} done: "
            f"{outcome.processed} processed, {outcome.updated} updated, {outcome.failed} failed"
        )
        return outcome

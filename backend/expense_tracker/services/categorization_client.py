"""
AI Expense Categorization Client

Talks to an Ollama-compatible model server over HTTP:
- connectivity probing and model listing via /api/tags
- single-expense categorization via /api/generate
- learning from user corrections (replayed as prompt hints)
- shared usage counters for the status endpoint

The client never falls back on its own. Failures surface as
CategorizationError subclasses and the caller decides what to do.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

import requests
from redis import Redis
from redis.exceptions import RedisError

from expense_tracker.models.categorization import (
    CategorizationRequest,
    CategorizationResult,
    CategorySource,
)

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class CategorizationError(Exception):
    """Base class for categorization failures."""


class CategorizationUnavailableError(CategorizationError):
    """The AI service could not be reached, timed out, or reported an error."""


class MalformedCategorizationResponse(CategorizationError):
    """The AI service answered with something we cannot trust."""


class UsageCounters:
    """Categorization usage counters kept in Redis so API and workers share them."""

    FIELDS = ("requests", "successes", "failures", "corrections")

    def __init__(self, connection: Redis, prefix: str = "categorization:stats"):
        self._connection = connection
        self._key = prefix

    def incr(self, field: str, amount: int = 1) -> None:
        try:
            self._connection.hincrby(self._key, field, amount)
        except RedisError as e:
            logger.warning(f"Could not update categorization counter {field}: {e}")

    def add_confidence(self, value: float) -> None:
        try:
            self._connection.hincrbyfloat(self._key, "confidence_total", value)
        except RedisError as e:
            logger.warning(f"Could not update confidence total: {e}")

    def snapshot(self) -> Dict[str, float]:
        try:
            raw = self._connection.hgetall(self._key) or {}
        except RedisError as e:
            logger.warning(f"Could not read categorization counters: {e}")
            raw = {}
        values = {}
        for key, value in raw.items():
            name = key.decode() if isinstance(key, bytes) else key
            values[name] = float(value)
        snapshot = {field: int(values.get(field, 0)) for field in self.FIELDS}
        snapshot["confidence_total"] = values.get("confidence_total", 0.0)
        return snapshot


class CategorizationClient:
    """Client for the external AI categorization service."""

    def __init__(
        self,
        base_url: str,
        model: str,
        catalog,
        counters: Optional[UsageCounters] = None,
        timeout: float = 30.0,
        probe_timeout: float = 2.0,
        correction_hints: int = 5,
        enabled: bool = True,
        http: Optional[requests.Session] = None,
    ):
        """
        Args:
            base_url: Root URL of the model server
            model: Model identifier passed on every generate call
            catalog: Provides list_categories(), recent_corrections() and record_correction()
            counters: Optional shared usage counters
        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.catalog = catalog
        self.counters = counters
        self.timeout = timeout
        self.probe_timeout = probe_timeout
        self.correction_hints = correction_hints
        self.enabled = enabled
        self.http = http or requests.Session()

    @classmethod
    def from_settings(cls, settings, catalog, counters: Optional[UsageCounters] = None) -> "CategorizationClient":
        return cls(
            base_url=settings.AI_SERVICE_URL,
            model=settings.AI_MODEL,
            catalog=catalog,
            counters=counters,
            timeout=settings.AI_REQUEST_TIMEOUT,
            probe_timeout=settings.AI_PROBE_TIMEOUT,
            correction_hints=settings.AI_CORRECTION_HINTS,
            enabled=settings.ENABLE_AI_CATEGORIZATION,
        )

    def _count(self, field: str) -> None:
        if self.counters is not None:
            self.counters.incr(field)

    def _get_tags(self, timeout: float) -> Dict[str, Any]:
        response = self.http.get(f"{self.base_url}/api/tags", timeout=timeout)
        response.raise_for_status()
        return response.json()

    def test_connection(self) -> bool:
        """Lightweight liveness probe. Never raises."""
        try:
            response = self.http.get(f"{self.base_url}/api/tags", timeout=self.probe_timeout)
            return response.status_code == 200
        except Exception as e:
            logger.warning(f"AI service not available: {e}")
            return False

    def verify_available_models(self) -> List[str]:
        """Model identifiers installed on the AI service."""
        try:
            payload = self._get_tags(self.timeout)
        except (requests.RequestException, ValueError) as e:
            raise CategorizationUnavailableError(f"Could not list models: {e}") from e
        return [m.get("name") for m in payload.get("models", []) if m.get("name")]

    def get_categorization_stats(self) -> Dict[str, Any]:
        counts = self.counters.snapshot() if self.counters is not None else {
            "requests": 0, "successes": 0, "failures": 0, "corrections": 0, "confidence_total": 0.0,
        }
        successes = counts["successes"]
        confidence_total = counts.pop("confidence_total")
        return {
            "model": self.model,
            "enabled": self.enabled,
            **counts,
            "average_confidence": round(confidence_total / successes, 4) if successes else None,
            "correction_rate": round(counts["corrections"] / successes, 4) if successes else None,
        }

    def _build_prompt(self, request: CategorizationRequest, category_names: List[str],
                      hints: List[Dict[str, Any]]) -> str:
        merchant_line = f'- Merchant: "{request.merchant}"\n' if request.merchant else ""
        hint_block = ""
        if hints:
            lines = "\n".join(f'- "{h["description"]}" -> {h["category"]}' for h in hints)
            hint_block = f"\nThe user previously corrected similar expenses from this merchant:\n{lines}\n"

        return f"""You are a personal finance assistant. Categorize this expense into exactly one of the available categories.

Expense:
- Description: "{request.description}"
{merchant_line}- Amount: {request.amount:.2f}
- Payment method: {request.payment_method}
{hint_block}
Available Categories: {", ".join(category_names)}

Respond in this EXACT JSON format:
{{
  "category": "category name",
  "confidence": 0.95,
  "reasoning": "brief explanation"
}}
"""

    def _parse_output(self, output: str, categories_by_name: Dict[str, Dict[str, Any]]) -> CategorizationResult:
        match = _JSON_OBJECT.search(output or "")
        if not match:
            raise MalformedCategorizationResponse("AI response did not contain a JSON object")
        try:
            parsed = json.loads(match.group())
        except json.JSONDecodeError as e:
            raise MalformedCategorizationResponse(f"AI response was not valid JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise MalformedCategorizationResponse("AI response JSON was not an object")

        name = parsed.get("category")
        category = categories_by_name.get(str(name).strip().lower()) if name else None
        if category is None:
            raise MalformedCategorizationResponse(f"AI suggested unknown category: {name!r}")

        confidence = parsed.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            raise MalformedCategorizationResponse(f"AI returned a non-numeric confidence: {confidence!r}")

        try:
            return CategorizationResult(
                category_id=category["id"],
                confidence=float(confidence),
                reasoning=str(parsed.get("reasoning") or ""),
                source=CategorySource.AI,
            )
        except ValueError as e:
            raise MalformedCategorizationResponse(str(e)) from e

    def categorize_expense(self, request: CategorizationRequest) -> CategorizationResult:
        """
        Ask the model for a category.

        Raises:
            CategorizationUnavailableError: network error, timeout or service error
            MalformedCategorizationResponse: the answer could not be trusted
        """
        self._count("requests")
        try:
            categories = self.catalog.list_categories()
            if not categories:
                raise CategorizationError("No categories available to choose from")
            categories_by_name = {c["name"].lower(): c for c in categories}
            hints = self.catalog.recent_corrections(request.merchant, self.correction_hints)
            prompt = self._build_prompt(request, [c["name"] for c in categories], hints)

            try:
                response = self.http.post(
                    f"{self.base_url}/api/generate",
                    json={
                        "model": self.model,
                        "prompt": prompt,
                        "stream": False,
                        "format": "json",
                        "options": {
                            "temperature": 0.1,  # Low temperature for consistent results
                            "top_p": 0.9,
                        },
                    },
                    timeout=self.timeout,
                )
            except requests.Timeout as e:
                raise CategorizationUnavailableError(f"AI request timed out after {self.timeout}s") from e
            except requests.RequestException as e:
                raise CategorizationUnavailableError(f"AI request failed: {e}") from e

            if response.status_code != 200:
                raise CategorizationUnavailableError(f"AI service error: HTTP {response.status_code}")

            try:
                body = response.json()
            except ValueError as e:
                raise MalformedCategorizationResponse(f"AI service returned invalid JSON: {e}") from e
            if not isinstance(body, dict):
                raise MalformedCategorizationResponse("AI service returned a non-object JSON body")
            if body.get("error"):
                raise CategorizationUnavailableError(f"AI service error: {body['error']}")

            result = self._parse_output(body.get("response", ""), categories_by_name)
        except Exception:
            self._count("failures")
            raise

        self._count("successes")
        if self.counters is not None:
            self.counters.add_confidence(result.confidence)
        logger.info(
            f"AI categorized '{request.description}' as {result.category_id} (confidence: {result.confidence})"
        )
        return result

    def learn_from_correction(self, original_category_id: str, corrected_category_id: str,
                              request: CategorizationRequest) -> None:
        """Record a human correction so future prompts for the merchant include it."""
        if original_category_id == corrected_category_id:
            logger.debug("Correction keeps the same category, nothing to learn")
            return
        self.catalog.record_correction(original_category_id, corrected_category_id, request.to_dict())
        self._count("corrections")
        logger.info(
            f"Learned correction {original_category_id} -> {corrected_category_id} "
            f"for merchant {request.merchant!r}"
        )

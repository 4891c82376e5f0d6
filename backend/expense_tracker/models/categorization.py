from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Mapping, Optional

# Reserved score for "fallback, not a real AI opinion"
FALLBACK_CONFIDENCE = 0.1


class CategorySource(str, Enum):
    AI = "ai"
    FALLBACK = "fallback"
    USER = "user"
    DISABLED = "disabled"


@dataclass(frozen=True)
class CategorizationRequest:
    """Classification inputs for one expense. Also the job payload snapshot."""
    description: str
    amount: float
    payment_method: str
    merchant: Optional[str] = None

    @classmethod
    def from_expense(cls, expense: Mapping[str, Any]) -> "CategorizationRequest":
        return cls(
            description=expense.get("description") or "",
            amount=float(expense.get("amount") or 0),
            payment_method=str(expense.get("payment_method") or ""),
            merchant=expense.get("merchant") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CategorizationResult:
    category_id: str
    confidence: Optional[float]
    reasoning: str
    source: CategorySource = CategorySource.AI

    def __post_init__(self):
        if not self.category_id:
            raise ValueError("category_id is required")
        if self.confidence is not None and not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")

    @property
    def is_fallback(self) -> bool:
        return self.source == CategorySource.FALLBACK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category_id": self.category_id,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "source": self.source.value,
        }

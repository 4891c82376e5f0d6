"""
Persistence operations used by the categorization pipeline, the job
processors and the HTTP handlers.

Every method opens its own short-lived session so the store can be shared
between request handlers and the batch worker threads.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from expense_tracker.database.db_service import get_db_service
from expense_tracker.database.models import (
    DEFAULT_CATEGORY_NAME,
    Budget,
    CategorizationCorrection,
    Category,
    Expense,
)
from expense_tracker.database.postgres_db import session_scope

logger = logging.getLogger(__name__)

LOW_CONFIDENCE_THRESHOLD = 0.5

DEFAULT_CATEGORIES = [
    {"name": "Food & Dining", "description": "Restaurants and groceries", "color": "#10B981", "icon": "utensils"},
    {"name": "Transportation", "description": "Gas, rideshares, public transport", "color": "#3B82F6", "icon": "car"},
    {"name": "Shopping", "description": "Clothing, electronics, retail", "color": "#8B5CF6", "icon": "shopping-bag"},
    {"name": "Entertainment", "description": "Movies, games, subscriptions", "color": "#F59E0B", "icon": "film"},
    {"name": "Bills & Utilities", "description": "Rent, electricity, internet", "color": "#EF4444", "icon": "receipt"},
    {"name": "Healthcare", "description": "Medical expenses", "color": "#06B6D4", "icon": "heart"},
    {"name": DEFAULT_CATEGORY_NAME, "description": "Miscellaneous expenses", "color": "#6B7280",
     "icon": "more-horizontal"},
]

RECATEGORIZATION_FIELDS = ("id", "description", "merchant", "amount", "payment_method", "ai_confidence")


class ExpenseNotFoundError(LookupError):
    pass


class ExpenseStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _scope(self):
        return session_scope(self._session_factory)

    # Categories

    def seed_default_categories(self) -> int:
        """Create the default categories that are missing. Returns how many were created."""
        created = 0
        with self._scope() as session:
            db = get_db_service(session)
            for category in DEFAULT_CATEGORIES:
                if db.find_one("categories", {"name": category["name"]}):
                    continue
                db.insert("categories", {**category, "is_default": True})
                created += 1
        if created:
            logger.info("Seeded %s default categories", created)
        return created

    def find_or_create_default_category(self) -> Dict[str, Any]:
        with self._scope() as session:
            existing = get_db_service(session).find_one("categories", {"name": DEFAULT_CATEGORY_NAME})
        if existing:
            return existing

        try:
            with self._scope() as session:
                return get_db_service(session).insert("categories", {
                    "name": DEFAULT_CATEGORY_NAME,
                    "description": "Miscellaneous expenses",
                    "color": "#6B7280",
                    "icon": "more-horizontal",
                    "is_default": True,
                })
        except IntegrityError:
            # Another worker created it between our read and insert
            logger.info("Default category was created concurrently, re-reading it")

        with self._scope() as session:
            category = get_db_service(session).find_one("categories", {"name": DEFAULT_CATEGORY_NAME})
        if category is None:
            raise RuntimeError("Default category could not be created")
        return category

    def list_categories(self) -> List[Dict[str, Any]]:
        with self._scope() as session:
            categories = (
                session.query(Category)
                .order_by(Category.is_default.desc(), Category.name.asc())
                .all()
            )
            db = get_db_service(session)
            return [db._model_to_dict(category) for category in categories]

    def get_category(self, category_id: str) -> Optional[Dict[str, Any]]:
        with self._scope() as session:
            return get_db_service(session).find_one("categories", {"id": category_id})

    # Expenses

    def get_expense(self, expense_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        query = {"id": expense_id}
        if user_id is not None:
            query["user_id"] = user_id
        with self._scope() as session:
            return get_db_service(session).find_one("expenses", query)

    def get_expense_owner(self, expense_id: str) -> Optional[str]:
        with self._scope() as session:
            row = session.query(Expense.user_id).filter(Expense.id == expense_id).first()
        return row[0] if row else None

    def list_expenses(self, user_id: str, category_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._scope() as session:
            q = session.query(Expense).filter(Expense.user_id == user_id)
            if category_id:
                q = q.filter(Expense.category_id == category_id)
            db = get_db_service(session)
            return [db._model_to_dict(e) for e in q.order_by(Expense.transaction_date.desc()).all()]

    def create_expense(self, user_id: str, data: Dict[str, Any], category_id: str,
                       ai_confidence: Optional[float]) -> Dict[str, Any]:
        document = {
            **data,
            "user_id": user_id,
            "category_id": category_id,
            "ai_confidence": ai_confidence,
            "updated_at": datetime.utcnow(),
        }
        with self._scope() as session:
            return get_db_service(session).insert("expenses", document)

    def update_expense(self, expense_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        with self._scope() as session:
            db = get_db_service(session)
            if changes and db.update("expenses", expense_id, dict(changes)) == 0:
                raise ExpenseNotFoundError(expense_id)
            expense = db.find_one("expenses", {"id": expense_id})
        if expense is None:
            raise ExpenseNotFoundError(expense_id)
        return expense

    def update_expense_category(self, expense_id: str, category_id: str, confidence: Optional[float]) -> None:
        with self._scope() as session:
            count = get_db_service(session).update("expenses", expense_id, {
                "category_id": category_id,
                "ai_confidence": confidence,
            })
        if count == 0:
            raise ExpenseNotFoundError(expense_id)

    def delete_expense(self, expense_id: str) -> int:
        with self._scope() as session:
            return get_db_service(session).delete("expenses", expense_id)

    def list_expenses_for_recategorization(self, user_id: str, only_low_confidence: bool,
                                           limit: int) -> List[Dict[str, Any]]:
        """Newest first, optionally restricted to unscored or low-confidence expenses."""
        with self._scope() as session:
            q = session.query(Expense).filter(Expense.user_id == user_id)
            if only_low_confidence:
                q = q.filter(or_(
                    Expense.ai_confidence.is_(None),
                    Expense.ai_confidence < LOW_CONFIDENCE_THRESHOLD,
                ))
            rows = q.order_by(Expense.created_at.desc()).limit(limit).all()
            return [
                {
                    "id": row.id,
                    "description": row.description,
                    "merchant": row.merchant,
                    "amount": row.amount,
                    "payment_method": row.payment_method.value,
                    "ai_confidence": row.ai_confidence,
                }
                for row in rows
            ]

    def expense_summary(self, user_id: str) -> Dict[str, Any]:
        with self._scope() as session:
            rows = (
                session.query(Category.name, func.count(Expense.id), func.sum(Expense.amount))
                .join(Category, Category.id == Expense.category_id)
                .filter(Expense.user_id == user_id)
                .group_by(Category.name)
                .all()
            )
        by_category = {name: {"count": count, "total": float(total or 0)} for name, count, total in rows}
        return {
            "total_expenses": sum(item["total"] for item in by_category.values()),
            "expense_count": sum(item["count"] for item in by_category.values()),
            "by_category": by_category,
        }

    # Users, budgets, reports (read by the email and report jobs)

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._scope() as session:
            return get_db_service(session).find_one("users", {"id": user_id})

    def get_budget(self, budget_id: str) -> Optional[Dict[str, Any]]:
        with self._scope() as session:
            budget = session.query(Budget).filter(Budget.id == budget_id).first()
            if budget is None:
                return None
            result = get_db_service(session)._model_to_dict(budget)
            result["category_name"] = budget.category.name if budget.category else None
            return result

    def sum_spending(self, user_id: str, category_id: str, start: Union[datetime, str],
                     end: Union[datetime, str]) -> float:
        if isinstance(start, str):
            start = datetime.fromisoformat(start)
        if isinstance(end, str):
            end = datetime.fromisoformat(end)
        with self._scope() as session:
            total = (
                session.query(func.sum(Expense.amount))
                .filter(
                    Expense.user_id == user_id,
                    Expense.category_id == category_id,
                    Expense.transaction_date >= start,
                    Expense.transaction_date <= end,
                )
                .scalar()
            )
        return float(total or 0)

    def create_report(self, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        with self._scope() as session:
            return get_db_service(session).insert("reports", {**data, "user_id": user_id})

    def get_report(self, report_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        query = {"id": report_id}
        if user_id is not None:
            query["user_id"] = user_id
        with self._scope() as session:
            return get_db_service(session).find_one("reports", query)

    def set_report_artifact(self, report_id: str, path: str) -> None:
        with self._scope() as session:
            count = get_db_service(session).update("reports", report_id, {
                "file_path": path,
                "generated_at": datetime.utcnow(),
            })
        if count == 0:
            raise LookupError(f"Report {report_id} not found")

    def expenses_in_range(self, user_id: str, start: datetime, end: datetime,
                          category_ids: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """Expenses in [start, end] joined with their category name and colour."""
        with self._scope() as session:
            q = (
                session.query(Expense, Category.name, Category.color)
                .join(Category, Category.id == Expense.category_id)
                .filter(
                    Expense.user_id == user_id,
                    Expense.transaction_date >= start,
                    Expense.transaction_date <= end,
                )
            )
            if category_ids:
                q = q.filter(Expense.category_id.in_(category_ids))
            db = get_db_service(session)
            results = []
            for expense, category_name, category_color in q.all():
                row = db._model_to_dict(expense)
                row["category_name"] = category_name
                row["category_color"] = category_color
                results.append(row)
            return results

    # Correction memory

    def record_correction(self, original_category_id: str, corrected_category_id: str,
                          request_data: Dict[str, Any]) -> Dict[str, Any]:
        with self._scope() as session:
            return get_db_service(session).insert("categorization_corrections", {
                "merchant": request_data.get("merchant"),
                "description": request_data.get("description", ""),
                "amount": request_data.get("amount"),
                "payment_method": request_data.get("payment_method"),
                "original_category_id": original_category_id,
                "corrected_category_id": corrected_category_id,
            })

    def recent_corrections(self, merchant: Optional[str], limit: int) -> List[Dict[str, Any]]:
        """Most recent corrections for a merchant, with the corrected category name."""
        if not merchant or limit <= 0:
            return []
        with self._scope() as session:
            rows = (
                session.query(CategorizationCorrection, Category.name)
                .join(Category, Category.id == CategorizationCorrection.corrected_category_id)
                .filter(func.lower(CategorizationCorrection.merchant) == merchant.lower())
                .order_by(CategorizationCorrection.created_at.desc())
                .limit(limit)
                .all()
            )
            return [
                {"description": correction.description, "category": name}
                for correction, name in rows
            ]

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from expense_tracker.api.auth import CurrentUser, get_current_user, get_services
from expense_tracker.models.categorization import CategorizationRequest
from expense_tracker.models.schemas import (
    BulkRecategorizeRequest,
    Category,
    Expense,
    ExpenseCreate,
    ExpenseUpdate,
    ExpenseWithCategorization,
    JobAccepted,
)
from expense_tracker.services.container import Services
from expense_tracker.services.expense_categorization import apply_manual_category
from expense_tracker.services.job_queue import JobKind

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/expenses", tags=["expenses"])

# Fields the AI looks at. Changing any of them makes the stored category stale.
CLASSIFICATION_FIELDS = ("description", "merchant", "amount", "payment_method")


def _require_ai(services: Services) -> None:
    if not services.ai_enabled:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="AI categorization is disabled",
        )


def _get_owned_expense(services: Services, expense_id: str, user_id: str) -> dict:
    expense = services.store.get_expense(expense_id, user_id)
    if not expense:
        raise HTTPException(status_code=404, detail="Expense not found")
    return expense


def _require_category(services: Services, category_id: str) -> None:
    if not services.store.get_category(category_id):
        raise HTTPException(status_code=404, detail="Category not found")


@router.get("/categories/list", response_model=List[Category])
def list_categories(
    current_user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return services.store.list_categories()


@router.get("/summary")
def get_expense_summary(
    current_user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    cached = services.cache.get_json(current_user.id, "summary")
    if cached is not None:
        return cached
    summary = services.store.expense_summary(current_user.id)
    services.cache.set_json(current_user.id, "summary", summary)
    return summary


@router.post("/recategorize")
def bulk_recategorize(
    body: BulkRecategorizeRequest,
    response: Response,
    wait: bool = Query(False, description="Run inline and return the counts instead of queueing a job"),
    current_user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    _require_ai(services)

    if wait:
        outcome = services.orchestrator.run(current_user.id, body.limit, body.only_low_confidence)
        return outcome.to_dict()

    job = services.queue.enqueue(
        JobKind.BULK_RECATEGORIZE,
        {"user_id": current_user.id, "limit": body.limit, "only_low_confidence": body.only_low_confidence},
        meta={"user_id": current_user.id},
    )
    response.status_code = status.HTTP_202_ACCEPTED
    return JobAccepted(job_id=job.id, kind=JobKind.BULK_RECATEGORIZE.value).model_dump()


@router.get("", response_model=List[Expense])
def list_expenses(
    category_id: Optional[str] = None,
    current_user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return services.store.list_expenses(current_user.id, category_id)


@router.post("", response_model=ExpenseWithCategorization, status_code=status.HTTP_201_CREATED)
def create_expense(
    expense: ExpenseCreate,
    current_user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    data = expense.model_dump(exclude={"category_id"})
    if expense.category_id:
        _require_category(services, expense.category_id)

    request = CategorizationRequest(
        description=expense.description,
        amount=expense.amount,
        payment_method=expense.payment_method.value,
        merchant=expense.merchant,
    )
    result = services.resolver.resolve(request, category_id=expense.category_id)

    created = services.store.create_expense(current_user.id, data, result.category_id, result.confidence)
    services.cache.invalidate_user(current_user.id)
    logger.info(f"Expense {created['id']} created for user {current_user.id} ({result.source.value})")
    return {"expense": created, "categorization": result.to_dict()}


@router.get("/{expense_id}", response_model=Expense)
def get_expense(
    expense_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return _get_owned_expense(services, expense_id, current_user.id)


@router.put("/{expense_id}", response_model=ExpenseWithCategorization)
def update_expense(
    expense_id: str,
    expense_update: ExpenseUpdate,
    current_user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    existing = _get_owned_expense(services, expense_id, current_user.id)

    changes = expense_update.model_dump(exclude_unset=True)
    new_category_id = changes.pop("category_id", None)
    if "payment_method" in changes and changes["payment_method"] is not None:
        changes["payment_method"] = changes["payment_method"].value

    inputs_changed = any(
        field in changes and changes[field] != existing.get(field) for field in CLASSIFICATION_FIELDS
    )
    if new_category_id:
        _require_category(services, new_category_id)

    updated = services.store.update_expense(expense_id, changes) if changes else existing
    job_id = None

    # An explicit category is the user's choice even when it matches the current one
    if new_category_id:
        apply_manual_category(services.store, services.queue, updated, new_category_id, services.ai_enabled)
        updated = services.store.get_expense(expense_id, current_user.id)
    elif inputs_changed and services.ai_enabled:
        job = services.queue.enqueue(
            JobKind.CATEGORIZE_EXPENSE,
            {"expense_id": expense_id, "request": CategorizationRequest.from_expense(updated).to_dict()},
            meta={"user_id": current_user.id},
        )
        job_id = job.id

    services.cache.invalidate_user(current_user.id)
    return {"expense": updated, "job_id": job_id}


@router.delete("/{expense_id}")
def delete_expense(
    expense_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    _get_owned_expense(services, expense_id, current_user.id)
    services.store.delete_expense(expense_id)
    services.cache.invalidate_user(current_user.id)
    return {"success": True, "message": "Expense deleted successfully"}


@router.post("/{expense_id}/categorize", response_model=ExpenseWithCategorization)
def recategorize_expense(
    expense_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Re-run categorization now. Always stores the fresh answer, even a lower-confidence one."""
    _require_ai(services)
    expense = _get_owned_expense(services, expense_id, current_user.id)

    result = services.resolver.resolve(CategorizationRequest.from_expense(expense))
    services.store.update_expense_category(expense_id, result.category_id, result.confidence)
    services.cache.invalidate_user(current_user.id)

    return {
        "expense": services.store.get_expense(expense_id, current_user.id),
        "categorization": result.to_dict(),
    }

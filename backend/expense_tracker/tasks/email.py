import logging
from typing import Any, Dict

from expense_tracker.services.email_sender import render_email

logger = logging.getLogger(__name__)


class EmailDeliveryError(RuntimeError):
    pass


class SendEmailProcessor:
    """Payload: ``type`` (email kind), ``to`` and template ``data``."""

    def __init__(self, sender):
        self.sender = sender

    def __call__(self, payload: Dict[str, Any], context) -> Dict[str, Any]:
        kind = payload["type"]
        recipient = payload["to"]
        data = payload.get("data") or {}
        # Unknown kinds fail before anything is sent
        render_email(kind, data)

        if not self.sender.send(kind, recipient, data):
            raise EmailDeliveryError(f"Failed to send {kind} email to {recipient}")
        logger.info("Email sent successfully: %s to %s", kind, recipient)
        return {"type": kind, "to": recipient, "sent": True}


class BudgetAlertProcessor:
    def __init__(self, store, sender):
        self.store = store
        self.sender = sender

    def __call__(self, payload: Dict[str, Any], context) -> Dict[str, Any]:
        user_id = payload["user_id"]
        budget_id = payload["budget_id"]

        user = self.store.get_user(user_id)
        budget = self.store.get_budget(budget_id)
        if not user or not budget:
            raise LookupError("User or budget not found")

        spent = self.store.sum_spending(
            user_id,
            budget["category_id"],
            budget["start_date"],
            budget["end_date"],
        )
        budget_amount = float(budget["amount"])
        alert = {
            "category_name": budget.get("category_name"),
            "budget_amount": budget_amount,
            "spent": spent,
            "percentage": spent / budget_amount * 100 if budget_amount else 0.0,
        }

        if not self.sender.send("budget-alert", user["email"], {"user_name": user.get("first_name"), "alert": alert}):
            raise EmailDeliveryError(f"Failed to send budget alert to {user['email']}")

        logger.info("Budget alert sent to %s for category %s", user["email"], alert["category_name"])
        return alert

import logging

from fastapi import APIRouter, Depends, HTTPException
from rq.exceptions import NoSuchJobError

from expense_tracker.api.auth import CurrentUser, get_current_user, get_services
from expense_tracker.services.categorization_client import CategorizationError
from expense_tracker.services.container import Services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ai"])


@router.get("/ai/status")
def get_ai_status(
    current_user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    connected = services.ai_enabled and services.client.test_connection()
    models = []
    if connected:
        try:
            models = services.client.verify_available_models()
        except CategorizationError as e:
            logger.warning(f"Could not list AI models: {e}")

    return {
        "enabled": services.ai_enabled,
        "connected": connected,
        "model": services.settings.AI_MODEL,
        "available_models": models,
        "stats": services.client.get_categorization_stats(),
        "queues": services.queue.get_queue_stats(),
    }


@router.get("/jobs/{job_id}")
def get_job_status(
    job_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    try:
        info = services.queue.get_job_info(job_id)
    except NoSuchJobError:
        raise HTTPException(status_code=404, detail="Job not found")

    # Jobs of other users are reported as missing
    if info["meta"].get("user_id") != current_user.id:
        raise HTTPException(status_code=404, detail="Job not found")
    return info

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from expense_tracker.api.auth import CurrentUser, get_current_user, get_services
from expense_tracker.models.schemas import JobAccepted, Report, ReportCreate
from expense_tracker.services.container import Services
from expense_tracker.services.job_queue import JobKind

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reports", tags=["reports"])


def _get_owned_report(services: Services, report_id: str, user_id: str) -> dict:
    report = services.store.get_report(report_id, user_id)
    if not report:
        raise HTTPException(status_code=404, detail="Report not found")
    return report


@router.post("", response_model=Report, status_code=status.HTTP_201_CREATED)
def create_report(
    report: ReportCreate,
    current_user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    parameters = {
        "start_date": report.start_date.isoformat(),
        "end_date": report.end_date.isoformat(),
        "categories": report.categories or [],
    }
    created = services.store.create_report(current_user.id, {
        "name": report.name,
        "type": report.type,
        "parameters": parameters,
    })
    logger.info(f"Report {created['id']} created by user {current_user.id}")
    return created


@router.get("/{report_id}", response_model=Report)
def get_report(
    report_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return _get_owned_report(services, report_id, current_user.id)


@router.post("/{report_id}/generate", response_model=JobAccepted, status_code=status.HTTP_202_ACCEPTED)
def generate_report(
    report_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    _get_owned_report(services, report_id, current_user.id)
    job = services.queue.enqueue(
        JobKind.GENERATE_REPORT,
        {"report_id": report_id, "user_id": current_user.id},
        meta={"user_id": current_user.id},
    )
    return JobAccepted(job_id=job.id, kind=JobKind.GENERATE_REPORT.value)

import logging
from typing import Any, Dict

logger = logging.getLogger(__name__)


class GenerateReportProcessor:
    def __init__(self, store, renderer):
        self.store = store
        self.renderer = renderer

    def __call__(self, payload: Dict[str, Any], context) -> Dict[str, Any]:
        report_id = payload["report_id"]
        user_id = payload["user_id"]
        logger.info("Generating report %s for user %s", report_id, user_id)

        context.report_progress(10)
        report = self.store.get_report(report_id, user_id)
        if not report:
            raise LookupError(f"Report {report_id} not found")

        context.report_progress(30)
        report_data = self.renderer.compute_report_data(user_id, report.get("parameters"))

        context.report_progress(80)
        path = self.renderer.write_artifact(report_id, {"report": report, "data": report_data})
        self.renderer.persist_artifact(report_id, path)

        context.report_progress(100)
        logger.info("Report %s generated successfully", report_id)
        return {"report_id": report_id, "status": "completed", "file_path": path}

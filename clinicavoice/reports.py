"""Medical reports and the report-driven dashboard."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any, Callable, Dict, List

import structlog

from clinicavoice import analytics
from clinicavoice import store as docstore
from clinicavoice import time_utils
from clinicavoice.auth import RequestContext
from clinicavoice.errors import BadRequest, NotFound
from clinicavoice.patients import find_patient_for_portal_user
from clinicavoice.schemas import ReportCreate, ReportPatch

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from clinicavoice.services import Services

logger = structlog.get_logger(__name__)

MEDICAL_REPORT = "medical-report"
TRANSCRIPTION = "transcription"


def _newest_first(reports: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    reports.sort(key=lambda r: r.get("createdAt") or "", reverse=True)
    return reports


def list_reports(services: "Services", ctx: RequestContext) -> List[Dict[str, Any]]:
    """Clinicians see the reports they own, patients the reports about them."""

    if ctx.is_patient:
        record = find_patient_for_portal_user(services.store, ctx.subject_id)
        if record is None:
            return []
        reports = services.store.query(
            docstore.REPORTS, owner_id=record["userId"], equals={"patientId": record["id"]}
        )
    else:
        reports = services.store.query(docstore.REPORTS, owner_id=ctx.subject_id)
    return _newest_first(reports)


def get_report(services: "Services", ctx: RequestContext, report_id: str) -> Dict[str, Any]:
    if ctx.is_patient:
        record = find_patient_for_portal_user(services.store, ctx.subject_id)
        report = None
        if record is not None:
            report = services.store.get(docstore.REPORTS, record["userId"], report_id)
            if report is not None and report.get("patientId") != record["id"]:
                report = None
    else:
        report = services.store.get(docstore.REPORTS, ctx.subject_id, report_id)
    if report is None:
        raise NotFound("Report not found")
    return report


def create_report(services: "Services", clinician_id: str, data: ReportCreate) -> Dict[str, Any]:
    now = time_utils.now_iso()
    report: Dict[str, Any] = {"type": MEDICAL_REPORT, **data.model_dump(exclude_unset=True)}
    report.update(
        {
            "id": str(uuid.uuid4()),
            "userId": clinician_id,
            "createdAt": now,
            "updatedAt": now,
        }
    )
    services.store.put(docstore.REPORTS, report)
    logger.info("report_created", report_id=report["id"], report_type=report["type"])
    return report


def update_report(
    services: "Services", clinician_id: str, report_id: str, data: ReportPatch
) -> Dict[str, Any]:
    changes = data.patch()
    changes.update({"updatedAt": time_utils.now_iso(), "updatedBy": clinician_id})
    updated = services.store.update(docstore.REPORTS, clinician_id, report_id, changes)
    if updated is None:
        raise NotFound("Report not found")
    return updated


def delete_report(services: "Services", clinician_id: str, report_id: str) -> None:
    if not services.store.delete(docstore.REPORTS, clinician_id, report_id):
        raise NotFound("Report not found")
    logger.info("report_deleted", report_id=report_id)


_DASHBOARD_VIEWS: Dict[str, Callable[[List[Dict[str, Any]]], Any]] = {
    "stats": analytics.dashboard_stats,
    "activity": analytics.dashboard_activity,
    "recent-notes": analytics.recent_notes,
}


def dashboard(services: "Services", clinician_id: str, endpoint: str) -> Any:
    """Render one of the ``stats``, ``activity`` or ``recent-notes`` views."""

    view = _DASHBOARD_VIEWS.get(endpoint)
    if view is None:
        logger.warning("dashboard_unknown_endpoint", endpoint=endpoint)
        raise BadRequest(f"Invalid dashboard endpoint: {endpoint}")
    reports = services.store.query(docstore.REPORTS, owner_id=clinician_id)
    return view(reports)


__all__ = [
    "MEDICAL_REPORT",
    "TRANSCRIPTION",
    "list_reports",
    "get_report",
    "create_report",
    "update_report",
    "delete_report",
    "dashboard",
]

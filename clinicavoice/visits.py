"""Visit-frequency enrichment for patient records."""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, Iterable, Mapping, Optional

import structlog

from clinicavoice import store as docstore
from clinicavoice import time_utils

logger = structlog.get_logger(__name__)

FOLLOW_UP_AFTER_MONTHS = 6


def empty_visit_frequency() -> Dict[str, Any]:
    return {"lastVisitDate": None, "annualVisitCount": 0, "needsFollowUp": False}


def months_between(earlier: date, later: date) -> int:
    """Whole-month distance using year/month arithmetic only; days are ignored."""

    return (later.year - earlier.year) * 12 + (later.month - earlier.month)


def compute_visit_frequency(
    appointments: Iterable[Mapping[str, Any]], today: Optional[date] = None
) -> Dict[str, Any]:
    """Derive last visit, trailing-year visit count and the follow-up flag.

    Only ``completed`` appointments count.  The trailing year starts on the
    same calendar day one year before ``today``.
    """

    today = today or time_utils.today()
    completed = [
        appt
        for appt in appointments
        if appt.get("status") == "completed" and isinstance(appt.get("date"), str)
    ]
    if not completed:
        return empty_visit_frequency()

    completed.sort(key=lambda a: (a.get("date") or "", a.get("time") or ""), reverse=True)
    last_visit = completed[0]["date"]

    needs_follow_up = False
    last_visit_day = time_utils.parse_iso_date(last_visit)
    if last_visit_day is not None:
        needs_follow_up = months_between(last_visit_day, today) > FOLLOW_UP_AFTER_MONTHS

    window_start = time_utils.subtract_years(today, 1).isoformat()
    annual_count = sum(1 for appt in completed if appt["date"] >= window_start)

    return {
        "lastVisitDate": last_visit,
        "annualVisitCount": annual_count,
        "needsFollowUp": needs_follow_up,
    }


def get_visit_frequency(
    store: docstore.DocumentStore,
    clinician_id: str,
    patient_id: str,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """Best-effort lookup; any store failure yields the zero-value result."""

    try:
        appointments = store.query(
            docstore.APPOINTMENTS, owner_id=clinician_id, equals={"patientId": patient_id}
        )
        return compute_visit_frequency(appointments, today)
    except Exception:
        logger.exception("visit_frequency_failed", patient_id=patient_id)
        return empty_visit_frequency()


__all__ = [
    "FOLLOW_UP_AFTER_MONTHS",
    "empty_visit_frequency",
    "months_between",
    "compute_visit_frequency",
    "get_visit_frequency",
]

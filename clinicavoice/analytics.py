"""Appointment analytics and dashboard aggregation.

All functions here are pure: callers fetch the clinician's records and pass
them in, and every trend series comes back sorted by its period key so the
result does not depend on input order.
"""

from __future__ import annotations

from collections import Counter
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from clinicavoice import time_utils
from clinicavoice.validation import APPOINTMENT_STATUSES, APPOINTMENT_TYPES, is_number

DASHBOARD_WINDOW_DAYS = 30
RECENT_NOTES_LIMIT = 10
PENDING_REVIEW_STATUSES = ("pending", "draft")


def round_half_up(value: float, places: int = 2) -> float:
    """Round ``value`` with halves going up, so 2.345 becomes 2.35."""

    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def _rate(numerator: int, denominator: int) -> float:
    if denominator <= 0:
        return 0
    return round_half_up(numerator / denominator * 100)


def week_start(day: date) -> date:
    """Return the Monday starting the ISO week that contains ``day``."""

    return day - timedelta(days=day.weekday())


def filter_appointments(
    appointments: Iterable[Mapping[str, Any]],
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    types: Optional[Sequence[str]] = None,
    statuses: Optional[Sequence[str]] = None,
) -> List[Mapping[str, Any]]:
    """Apply the analytics query filters; date bounds are inclusive."""

    selected = []
    for appointment in appointments:
        appointment_date = appointment.get("date") or ""
        if start_date and appointment_date < start_date:
            continue
        if end_date and appointment_date > end_date:
            continue
        if types and appointment.get("type") not in types:
            continue
        if statuses and appointment.get("status") not in statuses:
            continue
        selected.append(appointment)
    return selected


def _series(counts: Mapping[str, int], key: str) -> List[Dict[str, Any]]:
    return [{key: period, "count": counts[period]} for period in sorted(counts)]


def calculate_analytics(appointments: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    """Summarise ``appointments`` into counts, rates, durations and trends.

    Parameters
    ----------
    appointments:
        Appointment documents already scoped to one clinician and filtered.
        Unknown statuses and types are ignored rather than rejected.
    """

    status_counts = {status: 0 for status in APPOINTMENT_STATUSES}
    for appointment in appointments:
        status = appointment.get("status")
        if status in status_counts:
            status_counts[status] += 1

    total_appointments = len(appointments)
    total_scheduled = (
        status_counts["scheduled"]
        + status_counts["confirmed"]
        + status_counts["completed"]
        + status_counts["no-show"]
    )

    duration_totals = {kind: [0, 0] for kind in APPOINTMENT_TYPES}
    for appointment in appointments:
        bucket = duration_totals.get(appointment.get("type"))
        duration = appointment.get("duration")
        if bucket is None or not is_number(duration):
            continue
        bucket[0] += duration
        bucket[1] += 1
    average_duration_by_type = {
        kind: int(round_half_up(total / count, 0)) if count else 0
        for kind, (total, count) in duration_totals.items()
    }

    daily: Counter = Counter()
    weekly: Counter = Counter()
    monthly: Counter = Counter()
    for appointment in appointments:
        if appointment.get("status") != "completed":
            continue
        appointment_date = appointment.get("date")
        parsed = time_utils.parse_iso_date(appointment_date)
        if parsed is None:
            continue
        daily[parsed.isoformat()] += 1
        weekly[week_start(parsed).isoformat()] += 1
        monthly[parsed.isoformat()[:7]] += 1

    active_days = {appointment.get("date") for appointment in appointments if appointment.get("date")}
    avg_per_day = total_appointments / len(active_days) if active_days else 0

    return {
        "statusCounts": status_counts,
        "noShowRate": _rate(status_counts["no-show"], total_scheduled),
        "cancellationRate": _rate(status_counts["cancelled"], total_appointments),
        "averageDurationByType": average_duration_by_type,
        "patientVolumeTrends": {
            "daily": _series(daily, "date"),
            "weekly": _series(weekly, "week"),
            "monthly": _series(monthly, "month"),
        },
        "summary": {
            "totalAppointments": total_appointments,
            "totalScheduled": total_scheduled,
            "completedAppointments": status_counts["completed"],
            "completionRate": _rate(status_counts["completed"], total_scheduled),
            "avgAppointmentsPerDay": round_half_up(avg_per_day),
        },
    }


def _created_at(report: Mapping[str, Any]) -> Optional[datetime]:
    return time_utils.parse_iso_datetime(report.get("createdAt"))


def dashboard_stats(reports: Sequence[Mapping[str, Any]], now: Optional[datetime] = None) -> Dict[str, int]:
    now = now or time_utils.utc_now()
    cutoff = now - timedelta(days=DASHBOARD_WINDOW_DAYS)
    patients = {r.get("patientId") for r in reports if r.get("patientId")}
    recent = 0
    for report in reports:
        created = _created_at(report)
        if created is not None and created >= cutoff:
            recent += 1
    pending = sum(1 for r in reports if r.get("status") in PENDING_REVIEW_STATUSES)
    return {
        "activePatients": len(patients),
        "recentTranscriptions": recent,
        "pendingReviews": pending,
    }


def dashboard_activity(
    reports: Sequence[Mapping[str, Any]], now: Optional[datetime] = None
) -> List[Dict[str, Any]]:
    """Count reports per creation day over the trailing thirty days."""

    now = now or time_utils.utc_now()
    cutoff = now - timedelta(days=DASHBOARD_WINDOW_DAYS)
    per_day: Counter = Counter()
    for report in reports:
        created = _created_at(report)
        if created is not None and created >= cutoff:
            per_day[created.date().isoformat()] += 1
    return [{"date": day, "transcriptions": per_day[day]} for day in sorted(per_day)]


def recent_notes(
    reports: Sequence[Mapping[str, Any]], limit: int = RECENT_NOTES_LIMIT
) -> List[Dict[str, Any]]:
    ordered = sorted(reports, key=lambda r: r.get("createdAt") or "", reverse=True)
    return [
        {
            "id": report.get("id"),
            "patient": report.get("patientName") or "Unknown Patient",
            "status": report.get("status") or "draft",
            "date": report.get("createdAt"),
        }
        for report in ordered[:limit]
    ]


__all__ = [
    "round_half_up",
    "week_start",
    "filter_appointments",
    "calculate_analytics",
    "dashboard_stats",
    "dashboard_activity",
    "recent_notes",
]

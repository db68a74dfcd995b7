"""Appointment and time block scheduling.

Both record types live on a clinician's calendar and share one overlap rule:
two intervals on the same date conflict when each starts before the other
ends.  Cancelled appointments never conflict.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence

import structlog

from clinicavoice import store as docstore
from clinicavoice import time_utils
from clinicavoice.analytics import filter_appointments
from clinicavoice.auth import RequestContext
from clinicavoice.errors import BadRequest, Conflict, NotFound, ValidationFailed
from clinicavoice.patients import find_patient_for_portal_user
from clinicavoice.schemas import (
    AppointmentCreate,
    AppointmentPatch,
    TimeBlockCreate,
    TimeBlockPatch,
)
from clinicavoice.validation import (
    APPOINTMENT_STATUSES,
    default_duration,
    is_clock_time,
    is_number,
    time_to_minutes,
    validate_appointment_data,
    validate_time_block_data,
)

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from clinicavoice.services import Services

logger = structlog.get_logger(__name__)

DEFAULT_APPOINTMENT_LIMIT = 100
DEFAULT_TIME_BLOCK_LIMIT = 100


def overlaps(start: int, end: int, other_start: int, other_end: int) -> bool:
    """Half-open interval overlap on minutes after midnight."""

    return start < other_end and end > other_start


def _appointment_window(appointment: Mapping[str, Any]) -> Optional[tuple[int, int]]:
    appointment_time = appointment.get("time")
    duration = appointment.get("duration")
    if not is_clock_time(appointment_time) or not is_number(duration):
        return None
    start = time_to_minutes(appointment_time)
    return start, start + int(duration)


def _block_window(block: Mapping[str, Any]) -> Optional[tuple[int, int]]:
    start, end = block.get("startTime"), block.get("endTime")
    if not is_clock_time(start) or not is_clock_time(end):
        return None
    return time_to_minutes(start), time_to_minutes(end)


def has_appointment_conflict(
    services: "Services",
    clinician_id: str,
    day: str,
    start_time: str,
    duration: int,
    exclude_id: Optional[str] = None,
) -> bool:
    """Return ``True`` when the slot overlaps a live appointment or a time block."""

    start = time_to_minutes(start_time)
    end = start + int(duration)

    for appointment in services.store.query(
        docstore.APPOINTMENTS, owner_id=clinician_id, equals={"date": day}
    ):
        if appointment.get("id") == exclude_id or appointment.get("status") == "cancelled":
            continue
        window = _appointment_window(appointment)
        if window and overlaps(start, end, *window):
            return True

    for block in services.store.query(docstore.TIME_BLOCKS, owner_id=clinician_id, equals={"date": day}):
        window = _block_window(block)
        if window and overlaps(start, end, *window):
            return True
    return False


def find_block_conflict(
    services: "Services", clinician_id: str, day: str, start_time: str, end_time: str
) -> Optional[Dict[str, Any]]:
    """Return details of the first live appointment a time block would overlap."""

    start, end = time_to_minutes(start_time), time_to_minutes(end_time)
    for appointment in services.store.query(
        docstore.APPOINTMENTS, owner_id=clinician_id, equals={"date": day}
    ):
        if appointment.get("status") == "cancelled":
            continue
        window = _appointment_window(appointment)
        if window and overlaps(start, end, *window):
            return {
                "appointmentId": appointment.get("id"),
                "patientId": appointment.get("patientId"),
                "time": appointment.get("time"),
                "duration": appointment.get("duration"),
            }
    return None


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------


def _clinician_label(appointment: Mapping[str, Any]) -> str:
    return "Dr. " + str(appointment.get("userId") or "")[:8]


def _sort_by_slot(items: List[Dict[str, Any]], time_key: str = "time") -> List[Dict[str, Any]]:
    items.sort(key=lambda a: (a.get("date") or "", a.get(time_key) or ""))
    return items


def _split(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    return [part.strip() for part in value.split(",") if part.strip()]


def list_appointments(
    services: "Services",
    ctx: RequestContext,
    *,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    patient_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = DEFAULT_APPOINTMENT_LIMIT,
) -> Dict[str, Any]:
    """List appointments visible to the caller.

    Patients see only their own appointments, resolved through the portal
    account linked to their patient record, each labelled with the
    clinician's display name.
    """

    statuses = _split(status)

    def wanted(appointment: Mapping[str, Any]) -> bool:
        appointment_date = appointment.get("date") or ""
        if start_date and appointment_date < start_date:
            return False
        if end_date and appointment_date > end_date:
            return False
        if statuses and appointment.get("status") not in statuses:
            return False
        return True

    if ctx.is_patient:
        record = find_patient_for_portal_user(services.store, ctx.subject_id)
        if record is None:
            return {"appointments": [], "total": 0}
        appointments = services.store.query(
            docstore.APPOINTMENTS,
            owner_id=record["userId"],
            equals={"patientId": record["id"]},
            where=wanted,
            limit=limit,
        )
        for appointment in appointments:
            appointment["clinicianName"] = _clinician_label(appointment)
    else:
        equals = {"patientId": patient_id} if patient_id else None
        appointments = services.store.query(
            docstore.APPOINTMENTS, owner_id=ctx.subject_id, equals=equals, where=wanted, limit=limit
        )

    _sort_by_slot(appointments)
    return {"appointments": appointments, "total": len(appointments)}


def get_appointment(services: "Services", ctx: RequestContext, appointment_id: str) -> Dict[str, Any]:
    if ctx.is_patient:
        record = find_patient_for_portal_user(services.store, ctx.subject_id)
        if record is None:
            raise NotFound("Patient record not found")
        appointment = services.store.get(docstore.APPOINTMENTS, record["userId"], appointment_id)
        if appointment is None or appointment.get("patientId") != record["id"]:
            raise NotFound("Appointment not found")
        appointment["clinicianName"] = _clinician_label(appointment)
        return appointment

    appointment = services.store.get(docstore.APPOINTMENTS, ctx.subject_id, appointment_id)
    if appointment is None:
        raise NotFound("Appointment not found")
    if appointment.get("patientId"):
        try:
            patient = services.store.get(docstore.PATIENTS, ctx.subject_id, appointment["patientId"])
        except Exception:
            logger.exception("appointment_patient_lookup_failed", appointment_id=appointment_id)
            patient = None
        if patient is not None:
            appointment["patient"] = {
                key: patient.get(key) for key in ("id", "mrn", "firstName", "lastName", "phone", "email")
            }
    return appointment


def create_appointment(services: "Services", clinician_id: str, data: AppointmentCreate) -> Dict[str, Any]:
    fields = data.patch()
    errors = validate_appointment_data(fields, today=time_utils.today())
    if errors:
        raise ValidationFailed(errors)

    if services.store.get(docstore.PATIENTS, clinician_id, fields["patientId"]) is None:
        raise NotFound("Patient not found")

    duration = fields.get("duration") or default_duration(fields["type"])
    if has_appointment_conflict(services, clinician_id, fields["date"], fields["time"], duration):
        raise Conflict("Time slot conflict", "This time slot is already booked or blocked")

    now = time_utils.now_iso()
    notes = fields.get("notes") or ""
    appointment = {
        "id": str(uuid.uuid4()),
        "userId": clinician_id,
        "patientId": fields["patientId"],
        "date": fields["date"],
        "time": fields["time"],
        "duration": duration,
        "type": fields["type"],
        "status": "scheduled",
        "statusHistory": [{"status": "scheduled", "timestamp": now, "changedBy": clinician_id}],
        "notes": notes,
        "notesHistory": [{"notes": notes, "timestamp": now, "changedBy": clinician_id}] if notes else [],
        "createdAt": now,
        "updatedAt": now,
        "createdBy": clinician_id,
        "updatedBy": clinician_id,
    }
    services.store.put(docstore.APPOINTMENTS, appointment)
    logger.info("appointment_created", appointment_id=appointment["id"])
    return appointment


def _get_appointment(services: "Services", clinician_id: str, appointment_id: str) -> Dict[str, Any]:
    appointment = services.store.get(docstore.APPOINTMENTS, clinician_id, appointment_id)
    if appointment is None:
        raise NotFound("Appointment not found")
    return appointment


def update_appointment(
    services: "Services", clinician_id: str, appointment_id: str, data: AppointmentPatch
) -> Dict[str, Any]:
    """Reschedule or edit an appointment; slot changes are re-checked for conflicts."""

    changes = {key: value for key, value in data.patch().items() if value is not None}
    errors = validate_appointment_data(changes, is_update=True)
    if errors:
        raise ValidationFailed(errors)
    current = _get_appointment(services, clinician_id, appointment_id)

    moved = any(
        changes.get(key) and changes[key] != current.get(key) for key in ("date", "time", "duration")
    )
    if moved:
        new_date = changes.get("date") or current["date"]
        new_time = changes.get("time") or current["time"]
        new_duration = changes.get("duration") or current["duration"]
        if has_appointment_conflict(
            services, clinician_id, new_date, new_time, new_duration, exclude_id=appointment_id
        ):
            raise Conflict("Time slot conflict", "The new time slot is already booked or blocked")

    now = time_utils.now_iso()
    if "notes" in changes and changes["notes"] != current.get("notes"):
        history = list(current.get("notesHistory") or [])
        history.append({"notes": changes["notes"], "timestamp": now, "changedBy": clinician_id})
        changes["notesHistory"] = history
    changes.update({"updatedAt": now, "updatedBy": clinician_id})

    updated = services.store.update(docstore.APPOINTMENTS, clinician_id, appointment_id, changes)
    if updated is None:
        raise NotFound("Appointment not found")
    return updated


def change_status(
    services: "Services",
    clinician_id: str,
    appointment_id: str,
    status: Optional[str],
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    if not status:
        raise BadRequest("Status is required")
    if status not in APPOINTMENT_STATUSES:
        raise BadRequest(
            "Invalid status",
            "Status must be: scheduled, confirmed, completed, cancelled, or no-show",
        )
    current = _get_appointment(services, clinician_id, appointment_id)

    now = time_utils.now_iso()
    entry: Dict[str, Any] = {"status": status, "timestamp": now, "changedBy": clinician_id}
    if reason:
        entry["reason"] = reason
    history = list(current.get("statusHistory") or [])
    history.append(entry)

    updated = services.store.update(
        docstore.APPOINTMENTS,
        clinician_id,
        appointment_id,
        {"status": status, "statusHistory": history, "updatedAt": now, "updatedBy": clinician_id},
    )
    if updated is None:
        raise NotFound("Appointment not found")
    return updated


def cancel_appointment(
    services: "Services", clinician_id: str, appointment_id: str, reason: Optional[str]
) -> Dict[str, Any]:
    if not reason or not reason.strip():
        raise BadRequest(
            "Cancellation reason is required",
            "Please provide a reason for cancelling this appointment",
        )
    current = _get_appointment(services, clinician_id, appointment_id)

    now = time_utils.now_iso()
    history = list(current.get("statusHistory") or [])
    history.append({"status": "cancelled", "timestamp": now, "changedBy": clinician_id, "reason": reason})
    services.store.update(
        docstore.APPOINTMENTS,
        clinician_id,
        appointment_id,
        {
            "status": "cancelled",
            "statusHistory": history,
            "cancellationReason": reason,
            "cancelledAt": now,
            "cancelledBy": clinician_id,
            "updatedAt": now,
            "updatedBy": clinician_id,
        },
    )
    return {"success": True, "message": "Appointment cancelled successfully"}


def appointments_for_analytics(
    services: "Services",
    clinician_id: str,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    types: Optional[Sequence[str]] = None,
    statuses: Optional[Sequence[str]] = None,
) -> List[Dict[str, Any]]:
    appointments = services.store.query(docstore.APPOINTMENTS, owner_id=clinician_id)
    return list(filter_appointments(appointments, start_date, end_date, types, statuses))


# ---------------------------------------------------------------------------
# Time blocks
# ---------------------------------------------------------------------------


def list_time_blocks(
    services: "Services",
    clinician_id: str,
    *,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    block_type: Optional[str] = None,
    limit: int = DEFAULT_TIME_BLOCK_LIMIT,
) -> Dict[str, Any]:
    def wanted(block: Mapping[str, Any]) -> bool:
        block_date = block.get("date") or ""
        if start_date and block_date < start_date:
            return False
        if end_date and block_date > end_date:
            return False
        if block_type and block.get("type") != block_type:
            return False
        return True

    blocks = services.store.query(
        docstore.TIME_BLOCKS, owner_id=clinician_id, where=wanted, limit=limit
    )
    _sort_by_slot(blocks, time_key="startTime")
    return {"timeBlocks": blocks, "total": len(blocks)}


def _get_time_block(services: "Services", clinician_id: str, block_id: str) -> Dict[str, Any]:
    block = services.store.get(docstore.TIME_BLOCKS, clinician_id, block_id)
    if block is None:
        raise NotFound("Time block not found")
    return block


def get_time_block(services: "Services", clinician_id: str, block_id: str) -> Dict[str, Any]:
    return _get_time_block(services, clinician_id, block_id)


def create_time_block(services: "Services", clinician_id: str, data: TimeBlockCreate) -> Dict[str, Any]:
    fields = data.patch()
    errors = validate_time_block_data(fields)
    if errors:
        raise ValidationFailed(errors)

    conflict = find_block_conflict(
        services, clinician_id, fields["date"], fields["startTime"], fields["endTime"]
    )
    if conflict is not None:
        raise Conflict(
            "Time block conflicts with existing appointment",
            "Cannot create time block that overlaps with scheduled appointments",
            extra={"conflict": conflict},
        )

    now = time_utils.now_iso()
    block = {
        "id": str(uuid.uuid4()),
        "userId": clinician_id,
        "date": fields["date"],
        "startTime": fields["startTime"],
        "endTime": fields["endTime"],
        "reason": fields["reason"],
        "type": fields.get("type") or "other",
        "recurrence": fields.get("recurrence") or None,
        "createdAt": now,
        "createdBy": clinician_id,
    }
    services.store.put(docstore.TIME_BLOCKS, block)
    return block


def update_time_block(
    services: "Services", clinician_id: str, block_id: str, data: TimeBlockPatch
) -> Dict[str, Any]:
    changes = {
        key: value for key, value in data.patch().items() if value is not None or key == "recurrence"
    }
    errors = validate_time_block_data(changes, is_update=True)
    if errors:
        raise ValidationFailed(errors)
    current = _get_time_block(services, clinician_id, block_id)
    if not changes:
        raise BadRequest("No fields to update")

    new_date = changes.get("date") or current["date"]
    new_start = changes.get("startTime") or current["startTime"]
    new_end = changes.get("endTime") or current["endTime"]
    if time_to_minutes(new_end) <= time_to_minutes(new_start):
        raise ValidationFailed(["endTime must be after startTime"])

    if any(changes.get(key) and changes[key] != current.get(key) for key in ("date", "startTime", "endTime")):
        conflict = find_block_conflict(services, clinician_id, new_date, new_start, new_end)
        if conflict is not None:
            raise Conflict(
                "Time block conflicts with existing appointment",
                "Cannot update time block to overlap with scheduled appointments",
                extra={"conflict": conflict},
            )

    changes.update({"updatedAt": time_utils.now_iso(), "updatedBy": clinician_id})
    updated = services.store.update(docstore.TIME_BLOCKS, clinician_id, block_id, changes)
    if updated is None:
        raise NotFound("Time block not found")
    return updated


def delete_time_block(services: "Services", clinician_id: str, block_id: str) -> Dict[str, Any]:
    _get_time_block(services, clinician_id, block_id)
    services.store.delete(docstore.TIME_BLOCKS, clinician_id, block_id)
    return {"success": True, "message": "Time block deleted successfully"}


__all__ = [
    "overlaps",
    "has_appointment_conflict",
    "find_block_conflict",
    "list_appointments",
    "get_appointment",
    "create_appointment",
    "update_appointment",
    "change_status",
    "cancel_appointment",
    "appointments_for_analytics",
    "list_time_blocks",
    "get_time_block",
    "create_time_block",
    "update_time_block",
    "delete_time_block",
]

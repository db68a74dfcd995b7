"""Patient record lifecycle.

Patients belong to exactly one clinician.  They are created with a server
generated MRN, updated through a field whitelist and never removed: deleting
a patient only flips ``status`` to ``inactive``.
"""

from __future__ import annotations

import random
import uuid
from datetime import date
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog

from clinicavoice import store as docstore
from clinicavoice import time_utils
from clinicavoice.errors import NotFound, ValidationFailed
from clinicavoice.invitations import trigger_invitation
from clinicavoice.schemas import PatientCreate, PatientPatch
from clinicavoice.validation import validate_patient_data
from clinicavoice.visits import get_visit_frequency

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from clinicavoice.services import Services

logger = structlog.get_logger(__name__)

MRN_PREFIX = "MRN"
MRN_MAX_ATTEMPTS = 5
DEFAULT_LIST_LIMIT = 50

_rng = random.SystemRandom()


class MrnAllocationError(RuntimeError):
    """Raised when no unused MRN could be generated."""


def calculate_age(date_of_birth: Optional[str], today: Optional[date] = None) -> Optional[int]:
    """Return the age in whole years or ``None`` when the birth date is unknown."""

    dob = time_utils.parse_iso_date(date_of_birth)
    if dob is None:
        return None
    today = today or time_utils.today()
    age = today.year - dob.year
    if (today.month, today.day) < (dob.month, dob.day):
        age -= 1
    return age


def generate_mrn(today: Optional[date] = None) -> str:
    """Return ``MRN-YYYYMMDD-XXXX`` with four random digits."""

    today = today or time_utils.today()
    return f"{MRN_PREFIX}-{today:%Y%m%d}-{_rng.randint(0, 9999):04d}"


def allocate_mrn(store: docstore.DocumentStore, max_attempts: int = MRN_MAX_ATTEMPTS) -> str:
    """Generate an MRN no other patient holds, trying at most ``max_attempts`` times."""

    for attempt in range(1, max_attempts + 1):
        mrn = generate_mrn()
        if not store.scan(docstore.PATIENTS, equals={"mrn": mrn}):
            return mrn
        logger.warning("mrn_collision", mrn=mrn, attempt=attempt)
    raise MrnAllocationError(f"Unable to allocate a unique MRN after {max_attempts} attempts")


def _get_patient(services: "Services", clinician_id: str, patient_id: str) -> Dict[str, Any]:
    patient = services.store.get(docstore.PATIENTS, clinician_id, patient_id)
    if patient is None:
        raise NotFound("Patient not found")
    return patient


def _enrich(services: "Services", clinician_id: str, patient: Dict[str, Any], today: date) -> Dict[str, Any]:
    age = calculate_age(patient.get("dateOfBirth"), today)
    if age is not None:
        patient["age"] = age
    patient.update(get_visit_frequency(services.store, clinician_id, patient["id"], today))
    return patient


def _matches_search(patient: Dict[str, Any], needle: str) -> bool:
    haystacks = (
        f"{patient.get('firstName') or ''} {patient.get('lastName') or ''}",
        patient.get("mrn") or "",
        patient.get("phone") or "",
        patient.get("email") or "",
    )
    return any(needle in value.lower() for value in haystacks)


def list_patients(
    services: "Services",
    clinician_id: str,
    *,
    status: Optional[str] = "active",
    search: Optional[str] = None,
    limit: int = DEFAULT_LIST_LIMIT,
    sort_by: Optional[str] = None,
    sort_order: str = "desc",
) -> Dict[str, Any]:
    """List the clinician's patients with age and visit-frequency enrichment.

    Parameters
    ----------
    status:
        Restrict to ``active`` or ``inactive`` patients; ignored when a
        ``search`` term is given.
    sort_by:
        ``lastVisit`` orders by last completed visit, patients without a
        visit always last.
    """

    equals = {"status": status or "active"} if not search else None
    patients = services.store.query(docstore.PATIENTS, owner_id=clinician_id, equals=equals)
    if search:
        needle = search.lower()
        patients = [p for p in patients if _matches_search(p, needle)]

    if limit < 1:
        limit = DEFAULT_LIST_LIMIT
    has_more = len(patients) > limit
    patients = patients[:limit]
    today = time_utils.today()
    patients = [_enrich(services, clinician_id, patient, today) for patient in patients]

    if sort_by == "lastVisit":
        visited = [p for p in patients if p.get("lastVisitDate")]
        never = [p for p in patients if not p.get("lastVisitDate")]
        visited.sort(key=lambda p: p["lastVisitDate"], reverse=sort_order != "asc")
        patients = visited + never

    return {"patients": patients, "total": len(patients), "hasMore": has_more}


def get_patient(services: "Services", clinician_id: str, patient_id: str) -> Dict[str, Any]:
    """Return the patient with age, visit frequency and related records."""

    patient = _enrich(
        services, clinician_id, _get_patient(services, clinician_id, patient_id), time_utils.today()
    )
    appointments = services.store.query(
        docstore.APPOINTMENTS, owner_id=clinician_id, equals={"patientId": patient_id}
    )
    appointments.sort(key=lambda a: (a.get("date") or "", a.get("time") or ""), reverse=True)
    transcriptions = services.store.query(
        docstore.REPORTS, owner_id=clinician_id, equals={"patientId": patient_id}
    )
    transcriptions.sort(key=lambda r: r.get("createdAt") or "", reverse=True)
    patient["appointments"] = appointments
    patient["transcriptions"] = transcriptions
    patient["medicalHistory"] = patient.get("medicalHistory") or {}
    return patient


def create_patient(services: "Services", clinician_id: str, data: PatientCreate) -> Dict[str, Any]:
    fields = data.patch()
    errors = validate_patient_data(fields)
    if errors:
        raise ValidationFailed(errors)

    now = time_utils.now_iso()
    patient = {
        "id": str(uuid.uuid4()),
        "userId": clinician_id,
        "mrn": allocate_mrn(services.store),
        "firstName": fields["firstName"].strip(),
        "lastName": fields["lastName"].strip(),
        "dateOfBirth": fields["dateOfBirth"],
        "gender": fields.get("gender") or "prefer-not-to-say",
        "phone": fields.get("phone") or "",
        "email": fields.get("email") or "",
        "address": fields.get("address")
        or {"street": "", "city": "", "province": "", "postalCode": "", "country": ""},
        "preferredContactMethod": fields.get("preferredContactMethod") or "email",
        "status": "active",
        "cognitoUserId": None,
        "accountStatus": "pending",
        "invitationToken": None,
        "invitationSentAt": None,
        "invitationExpiresAt": None,
        "activatedAt": None,
        "lastLoginAt": None,
        "createdAt": now,
        "updatedAt": now,
        "createdBy": clinician_id,
        "updatedBy": clinician_id,
    }
    services.store.put(docstore.PATIENTS, patient)
    logger.info("patient_created", patient_id=patient["id"])

    if patient["email"]:
        trigger_invitation(services, patient["id"], clinician_id)
    return patient


def update_patient(
    services: "Services", clinician_id: str, patient_id: str, data: PatientPatch
) -> Dict[str, Any]:
    changes = data.patch()
    errors = validate_patient_data(changes, is_update=True)
    if errors:
        raise ValidationFailed(errors)
    _get_patient(services, clinician_id, patient_id)

    changes.update({"updatedAt": time_utils.now_iso(), "updatedBy": clinician_id})
    updated = services.store.update(docstore.PATIENTS, clinician_id, patient_id, changes)
    if updated is None:
        raise NotFound("Patient not found")
    return updated


def deactivate_patient(services: "Services", clinician_id: str, patient_id: str) -> Dict[str, Any]:
    """Soft delete: the record stays, only its status changes."""

    _get_patient(services, clinician_id, patient_id)
    services.store.update(
        docstore.PATIENTS,
        clinician_id,
        patient_id,
        {"status": "inactive", "updatedAt": time_utils.now_iso(), "updatedBy": clinician_id},
    )
    return {"success": True, "message": "Patient marked as inactive"}


def find_patient_for_portal_user(
    store: docstore.DocumentStore, portal_user_id: str
) -> Optional[Dict[str, Any]]:
    """Resolve the patient record linked to an activated portal account."""

    matches = store.scan(docstore.PATIENTS, equals={"cognitoUserId": portal_user_id})
    return matches[0] if matches else None


def record_login(store: docstore.DocumentStore, patient: Dict[str, Any]) -> None:
    store.update(
        docstore.PATIENTS, patient["userId"], patient["id"], {"lastLoginAt": time_utils.now_iso()}
    )


__all__ = [
    "MrnAllocationError",
    "calculate_age",
    "generate_mrn",
    "allocate_mrn",
    "list_patients",
    "get_patient",
    "create_patient",
    "update_patient",
    "deactivate_patient",
    "find_patient_for_portal_user",
    "record_login",
]

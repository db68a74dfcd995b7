"""Patient portal invitation and account activation."""

from __future__ import annotations

import secrets
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

import structlog

from clinicavoice import store as docstore
from clinicavoice import time_utils
from clinicavoice.errors import BadRequest, NotFound, PreconditionFailed
from clinicavoice.integrations import IdentityError
from clinicavoice.observability import INVITATIONS_SENT
from clinicavoice.validation import validate_password

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from clinicavoice.services import Services

logger = structlog.get_logger(__name__)

INVITATION_FUNCTION = "patient-invitation"
TOKEN_BYTES = 32
INVITATION_TTL_DAYS = 7
DEFAULT_CLINICIAN_NAME = "Your healthcare provider"
INVITATION_SUBJECT = "Welcome to ClinicaVoice - Activate Your Patient Portal Account"

_INVITATION_TEMPLATE = """\
Welcome to ClinicaVoice - Activate Your Patient Portal Account

Hi {first_name},

{clinician_name} has created a patient portal account for you in ClinicaVoice.

Your patient portal allows you to:
- View your upcoming appointments
- Access your medical records
- Review your appointment history

To activate your account and set your password, visit this link:
{activation_url}

This activation link will expire in {ttl_days} days.

If you didn't expect this email or have questions, please contact your healthcare provider.

---
ClinicaVoice - Secure Medical Documentation
This is an automated message, please do not reply to this email."""


def generate_activation_token() -> str:
    """Return 256 bits of randomness as lowercase hex."""

    return secrets.token_hex(TOKEN_BYTES)


def render_invitation(patient: Mapping[str, Any], token: str, frontend_url: str, clinician_name: str) -> str:
    return _INVITATION_TEMPLATE.format(
        first_name=patient.get("firstName") or "there",
        clinician_name=clinician_name,
        activation_url=f"{frontend_url}/activate?token={token}",
        ttl_days=INVITATION_TTL_DAYS,
    )


def send_invitation(services: "Services", payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Issue a fresh activation token and e-mail the activation link.

    ``payload`` carries ``patientId``, ``userId`` and an optional
    ``clinicianName``.  Runs as a detached function, so failures raise and are
    logged by the task runner rather than reaching an API caller.
    """

    patient_id = payload.get("patientId")
    clinician_id = payload.get("userId")
    if not patient_id or not clinician_id:
        raise ValueError("Missing required parameters: patientId and userId")

    patient = services.store.get(docstore.PATIENTS, clinician_id, patient_id)
    if patient is None:
        raise LookupError("Patient not found")
    if not patient.get("email"):
        raise ValueError("Patient does not have an email address")

    token = generate_activation_token()
    sent = time_utils.utc_now()
    sent_at = time_utils.isoformat(sent)
    expires_at = time_utils.isoformat(sent + timedelta(days=INVITATION_TTL_DAYS))
    services.store.update(
        docstore.PATIENTS,
        clinician_id,
        patient_id,
        {
            "invitationToken": token,
            "invitationSentAt": sent_at,
            "invitationExpiresAt": expires_at,
            "accountStatus": "pending",
            "updatedAt": sent_at,
        },
    )

    message = render_invitation(
        patient,
        token,
        services.settings.frontend_url,
        payload.get("clinicianName") or DEFAULT_CLINICIAN_NAME,
    )
    try:
        message_id = services.notifier.send(message, patient["email"], INVITATION_SUBJECT)
    except Exception as exc:
        INVITATIONS_SENT.labels("failed").inc()
        raise RuntimeError(f"Failed to send invitation email: {exc}") from exc
    INVITATIONS_SENT.labels("sent").inc()
    logger.info("invitation_sent", patient_id=patient_id, expires_at=expires_at)

    return {
        "success": True,
        "patientId": patient_id,
        "email": patient["email"],
        "sentAt": sent_at,
        "expiresAt": expires_at,
        "messageId": message_id,
    }


def trigger_invitation(
    services: "Services", patient_id: str, clinician_id: str, clinician_name: Optional[str] = None
) -> None:
    """Queue an invitation without waiting; dispatch failures are only logged."""

    payload = {
        "patientId": patient_id,
        "userId": clinician_id,
        "clinicianName": clinician_name or DEFAULT_CLINICIAN_NAME,
    }
    try:
        services.invoker.invoke(INVITATION_FUNCTION, payload)
    except Exception:
        logger.exception("invitation_dispatch_failed", patient_id=patient_id)


def resend_invitation(services: "Services", clinician_id: str, patient_id: str) -> Dict[str, Any]:
    patient = services.store.get(docstore.PATIENTS, clinician_id, patient_id)
    if patient is None:
        raise NotFound("Patient not found")
    if patient.get("accountStatus") == "active":
        raise PreconditionFailed(
            "Patient account is already active",
            "Cannot resend invitation to an active account",
        )
    if not patient.get("email"):
        raise PreconditionFailed(
            "Patient does not have an email address",
            "Please add an email address before sending invitation",
        )
    trigger_invitation(services, patient_id, clinician_id)
    return {
        "success": True,
        "message": "Invitation email will be sent shortly",
        "sentAt": time_utils.now_iso(),
    }


def _find_by_token(services: "Services", token: str) -> Optional[Dict[str, Any]]:
    matches = services.store.scan(docstore.PATIENTS, equals={"invitationToken": token})
    return matches[0] if matches else None


def validate_token(services: "Services", token: str) -> Dict[str, Any]:
    """Return the patient holding ``token``; raise when it cannot be used."""

    patient = _find_by_token(services, token)
    if patient is None:
        raise BadRequest("Invalid token", "Invalid activation token")
    expires_at = time_utils.parse_iso_datetime(patient.get("invitationExpiresAt"))
    if expires_at is None or expires_at < time_utils.utc_now():
        raise BadRequest("Invalid token", "Activation token has expired")
    if patient.get("accountStatus") == "active":
        raise BadRequest("Invalid token", "Account is already activated")
    return patient


def activate_account(services: "Services", token: Optional[str], password: Optional[str]) -> Dict[str, Any]:
    """Activate a patient portal account.

    The token is checked before password strength, so an expired or unknown
    token is reported as such whatever password accompanies it.
    """

    if not token:
        raise BadRequest("Validation failed", "Activation token is required")
    if not password:
        raise BadRequest("Validation failed", "Password is required")

    patient = validate_token(services, token)

    password_errors = validate_password(password)
    if password_errors:
        raise BadRequest("Validation failed", password_errors[0])

    try:
        portal_user_id = services.identity.create_user(
            patient.get("email") or "",
            password,
            {
                "name": f"{patient.get('firstName', '')} {patient.get('lastName', '')}".strip(),
                "custom:user_type": "patient",
                "custom:patientId": patient["id"],
            },
        )
    except IdentityError as exc:
        raise BadRequest("Account creation failed", str(exc)) from exc

    now = time_utils.now_iso()
    updated = services.store.update(
        docstore.PATIENTS,
        patient["userId"],
        patient["id"],
        {
            "cognitoUserId": portal_user_id,
            "accountStatus": "active",
            "activatedAt": now,
            "invitationToken": None,
            "updatedAt": now,
        },
    )
    if updated is None:
        raise NotFound("Patient not found")
    logger.info("patient_account_activated", patient_id=patient["id"])

    return {
        "success": True,
        "message": "Account activated successfully",
        "patient": {
            "id": updated["id"],
            "firstName": updated.get("firstName"),
            "lastName": updated.get("lastName"),
            "email": updated.get("email"),
            "accountStatus": updated["accountStatus"],
            "activatedAt": updated["activatedAt"],
        },
    }


__all__ = [
    "INVITATION_FUNCTION",
    "generate_activation_token",
    "render_invitation",
    "send_invitation",
    "trigger_invitation",
    "resend_invitation",
    "validate_token",
    "activate_account",
]

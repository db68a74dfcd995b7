"""Field validation for patient, appointment, time block and password input.

Each validator returns a list of human readable messages; an empty list means
the payload is acceptable.  ``is_update`` relaxes the required-field checks so
partial updates only validate the fields they carry.
"""

from __future__ import annotations

import re
from datetime import date
from typing import Any, List, Mapping, Optional

GENDERS = ("male", "female", "other", "prefer-not-to-say")
APPOINTMENT_TYPES = ("consultation", "follow-up", "procedure", "urgent")
APPOINTMENT_STATUSES = ("scheduled", "confirmed", "completed", "cancelled", "no-show")
TIME_BLOCK_TYPES = ("break", "admin", "meeting", "other")
RECURRENCE_TYPES = ("daily", "weekly", "custom")

DEFAULT_DURATIONS = {
    "consultation": 60,
    "follow-up": 30,
    "procedure": 90,
    "urgent": 45,
}
DURATION_INCREMENT_MINUTES = 15
MIN_PASSWORD_LENGTH = 8

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
TIME_RE = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")


def _blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    return not value


def is_iso_date(value: Any) -> bool:
    return isinstance(value, str) and bool(ISO_DATE_RE.match(value))


def is_clock_time(value: Any) -> bool:
    return isinstance(value, str) and bool(TIME_RE.match(value))


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def time_to_minutes(value: str) -> int:
    """Convert ``HH:MM`` into minutes after midnight."""

    hours, minutes = value.split(":", 1)
    return int(hours) * 60 + int(minutes)


def default_duration(appointment_type: Optional[str]) -> int:
    return DEFAULT_DURATIONS.get(appointment_type or "", 60)


def validate_patient_data(data: Mapping[str, Any], is_update: bool = False) -> List[str]:
    errors: List[str] = []

    if not is_update:
        if _blank(data.get("firstName")):
            errors.append("firstName is required")
        if _blank(data.get("lastName")):
            errors.append("lastName is required")
        if not data.get("dateOfBirth"):
            errors.append("dateOfBirth is required")
        if not data.get("phone") and not data.get("email"):
            errors.append("At least one contact method (phone or email) is required")

    email = data.get("email")
    if email and not (isinstance(email, str) and EMAIL_RE.match(email)):
        errors.append("Invalid email format")

    dob = data.get("dateOfBirth")
    if dob and not is_iso_date(dob):
        errors.append("Invalid dateOfBirth format. Use YYYY-MM-DD")

    gender = data.get("gender")
    if gender and gender not in GENDERS:
        errors.append("Invalid gender value")

    return errors


def validate_appointment_data(
    data: Mapping[str, Any],
    is_update: bool = False,
    today: Optional[date] = None,
) -> List[str]:
    """Validate appointment input.

    New appointments may not be dated before ``today``; updates skip that
    check so historical records can still be corrected.
    """

    errors: List[str] = []

    if not is_update:
        if _blank(data.get("patientId")):
            errors.append("patientId is required")
        if not data.get("date"):
            errors.append("date is required")
        if not data.get("time"):
            errors.append("time is required")
        if not data.get("type"):
            errors.append("type is required")

    appointment_date = data.get("date")
    if appointment_date and not is_iso_date(appointment_date):
        errors.append("Invalid date format. Use YYYY-MM-DD")

    appointment_time = data.get("time")
    if appointment_time and not is_clock_time(appointment_time):
        errors.append("Invalid time format. Use HH:MM")

    appointment_type = data.get("type")
    if appointment_type and appointment_type not in APPOINTMENT_TYPES:
        errors.append(
            "Invalid appointment type. Must be: consultation, follow-up, procedure, or urgent"
        )

    if "duration" in data and data["duration"] is not None:
        duration = data["duration"]
        if not is_number(duration) or duration <= 0:
            errors.append("Duration must be a positive number")
        elif duration % DURATION_INCREMENT_MINUTES != 0:
            errors.append("Duration must be in 15-minute increments")

    status = data.get("status")
    if status and status not in APPOINTMENT_STATUSES:
        errors.append(
            "Invalid status. Must be: scheduled, confirmed, completed, cancelled, or no-show"
        )

    if not is_update and is_iso_date(appointment_date) and today is not None:
        try:
            if date.fromisoformat(appointment_date) < today:
                errors.append("Cannot schedule appointments in the past")
        except ValueError:
            errors.append("Invalid date format. Use YYYY-MM-DD")

    return errors


def _validate_recurrence(recurrence: Any, errors: List[str]) -> None:
    if not isinstance(recurrence, Mapping):
        errors.append("Invalid recurrence type. Must be: daily, weekly, or custom")
        return
    if recurrence.get("type") not in RECURRENCE_TYPES:
        errors.append("Invalid recurrence type. Must be: daily, weekly, or custom")
    end_date = recurrence.get("endDate")
    if end_date and not is_iso_date(end_date):
        errors.append("Invalid recurrence endDate format. Use YYYY-MM-DD")
    days = recurrence.get("daysOfWeek")
    if days:
        if not isinstance(days, list):
            errors.append("recurrence.daysOfWeek must be an array")
        elif any(not is_number(day) or day < 0 or day > 6 for day in days):
            errors.append("recurrence.daysOfWeek must contain numbers 0-6 (Sunday-Saturday)")


def validate_time_block_data(data: Mapping[str, Any], is_update: bool = False) -> List[str]:
    errors: List[str] = []

    if not is_update:
        if not data.get("date"):
            errors.append("date is required")
        if not data.get("startTime"):
            errors.append("startTime is required")
        if not data.get("endTime"):
            errors.append("endTime is required")
        if _blank(data.get("reason")):
            errors.append("reason is required")

    block_date = data.get("date")
    if block_date and not is_iso_date(block_date):
        errors.append("Invalid date format. Use YYYY-MM-DD")

    start = data.get("startTime")
    end = data.get("endTime")
    if start and not is_clock_time(start):
        errors.append("Invalid startTime format. Use HH:MM")
    if end and not is_clock_time(end):
        errors.append("Invalid endTime format. Use HH:MM")
    if is_clock_time(start) and is_clock_time(end):
        if time_to_minutes(end) <= time_to_minutes(start):
            errors.append("endTime must be after startTime")

    block_type = data.get("type")
    if block_type and block_type not in TIME_BLOCK_TYPES:
        errors.append("Invalid type. Must be: break, admin, meeting, or other")

    if data.get("recurrence"):
        _validate_recurrence(data["recurrence"], errors)

    return errors


def validate_password(password: str) -> List[str]:
    """Return the strength rules ``password`` fails, in a stable order."""

    errors: List[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append("Password must be at least 8 characters long")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"\d", password):
        errors.append("Password must contain at least one number")
    return errors


__all__ = [
    "GENDERS",
    "APPOINTMENT_TYPES",
    "APPOINTMENT_STATUSES",
    "TIME_BLOCK_TYPES",
    "DEFAULT_DURATIONS",
    "is_iso_date",
    "is_clock_time",
    "is_number",
    "time_to_minutes",
    "default_duration",
    "validate_patient_data",
    "validate_appointment_data",
    "validate_time_block_data",
    "validate_password",
]

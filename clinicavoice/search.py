"""Patient search with weighted relevance scoring."""

from __future__ import annotations

from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from clinicavoice import store as docstore
from clinicavoice import time_utils
from clinicavoice.errors import BadRequest
from clinicavoice.patients import calculate_age

SEARCH_FIELDS = ("name", "mrn", "phone", "email")

MRN_EXACT = 100
MRN_PARTIAL = 50
FULL_NAME_EXACT = 90
FULL_NAME_PARTIAL = 40
NAME_EXACT = 80
NAME_PREFIX = 35
NAME_PARTIAL = 20
PHONE_MATCH = 70
EMAIL_MATCH = 60

LastVisitLookup = Callable[[Mapping[str, Any]], Optional[str]]


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _full_name(patient: Mapping[str, Any]) -> str:
    return f"{_text(patient.get('firstName'))} {_text(patient.get('lastName'))}".lower()


def _name_part_score(value: str, query: str) -> int:
    if not value:
        return 0
    value = value.lower()
    if value == query:
        return NAME_EXACT
    if value.startswith(query):
        return NAME_PREFIX
    if query in value:
        return NAME_PARTIAL
    return 0


def calculate_relevance_score(patient: Mapping[str, Any], query: str) -> int:
    """Return the additive relevance score of ``patient`` for ``query``.

    Every category is evaluated independently; phone numbers are compared
    against the raw query while everything else is case-insensitive.
    """

    needle = query.lower()
    score = 0

    mrn = _text(patient.get("mrn")).lower()
    if mrn:
        if mrn == needle:
            score += MRN_EXACT
        elif needle in mrn:
            score += MRN_PARTIAL

    if patient.get("firstName") or patient.get("lastName"):
        full_name = _full_name(patient)
        if full_name == needle:
            score += FULL_NAME_EXACT
        elif needle in full_name:
            score += FULL_NAME_PARTIAL

    score += _name_part_score(_text(patient.get("firstName")), needle)
    score += _name_part_score(_text(patient.get("lastName")), needle)

    phone = _text(patient.get("phone"))
    if phone and query in phone:
        score += PHONE_MATCH

    email = _text(patient.get("email")).lower()
    if email and needle in email:
        score += EMAIL_MATCH

    return score


def matches_requested_fields(
    patient: Mapping[str, Any], query: str, fields: Iterable[str] = SEARCH_FIELDS
) -> bool:
    """Return ``True`` when ``patient`` matches ``query`` on any requested field."""

    needle = query.lower()
    requested = set(fields)
    if "name" in requested and needle in _full_name(patient):
        return True
    if "mrn" in requested and patient.get("mrn") and needle in _text(patient.get("mrn")).lower():
        return True
    if "phone" in requested and patient.get("phone") and query in _text(patient.get("phone")):
        return True
    if "email" in requested and patient.get("email") and needle in _text(patient.get("email")).lower():
        return True
    return False


def rank_patients(
    patients: Iterable[Mapping[str, Any]],
    query: str,
    fields: Sequence[str] = SEARCH_FIELDS,
) -> List[Dict[str, Any]]:
    """Filter, score and order ``patients``; score desc then last name asc."""

    scored = [
        {**patient, "relevanceScore": calculate_relevance_score(patient, query)}
        for patient in patients
        if matches_requested_fields(patient, query, fields)
    ]
    scored.sort(key=lambda p: _text(p.get("lastName")).lower())
    scored.sort(key=lambda p: p["relevanceScore"], reverse=True)
    return scored


def _result(patient: Mapping[str, Any], today: date, last_visit: Optional[str]) -> Dict[str, Any]:
    return {
        "id": patient.get("id"),
        "mrn": patient.get("mrn"),
        "firstName": patient.get("firstName"),
        "lastName": patient.get("lastName"),
        "dateOfBirth": patient.get("dateOfBirth"),
        "age": calculate_age(patient.get("dateOfBirth"), today),
        "gender": patient.get("gender"),
        "phone": patient.get("phone"),
        "email": patient.get("email"),
        "lastVisitDate": last_visit,
        "status": patient.get("status"),
        "relevanceScore": patient["relevanceScore"],
    }


def search_patients(
    store: docstore.DocumentStore,
    clinician_id: str,
    query: Any,
    fields: Optional[Sequence[str]] = None,
    last_visit_lookup: Optional[LastVisitLookup] = None,
) -> Dict[str, Any]:
    """Search the clinician's active patients.

    Parameters
    ----------
    query:
        Free text; blank queries are rejected.
    fields:
        Subset of ``name``, ``mrn``, ``phone`` and ``email``; ``None`` means
        all of them and an empty list matches nobody.
    last_visit_lookup:
        Optional callable returning the last completed visit date for a
        patient document.
    """

    if not isinstance(query, str) or not query.strip():
        raise BadRequest("Query parameter is required", "Please provide a search query")
    requested = list(SEARCH_FIELDS) if fields is None else list(fields)

    candidates = store.query(
        docstore.PATIENTS, owner_id=clinician_id, equals={"status": "active"}
    )
    ranked = rank_patients(candidates, query, requested)
    today = time_utils.today()
    results = [
        _result(patient, today, last_visit_lookup(patient) if last_visit_lookup else None)
        for patient in ranked
    ]
    return {"results": results, "total": len(results), "query": query}


__all__ = [
    "SEARCH_FIELDS",
    "calculate_relevance_score",
    "matches_requested_fields",
    "rank_patients",
    "search_patients",
]

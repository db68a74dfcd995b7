"""Collaborator contracts and their local implementations.

The record handlers talk to outside systems only through the small protocols
defined here: notification delivery, asynchronous function invocation, the
portal identity provider, upload URL signing, the transcription engine and
medical entity extraction.  Each protocol ships with an implementation that
lets the service run standalone; deployments can inject others.
"""

from __future__ import annotations

import hashlib
import hmac
import re
import time
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple
from urllib.parse import quote, urlencode

import requests
import structlog

from clinicavoice import store as docstore
from clinicavoice import time_utils
from clinicavoice.auth import hash_password, verify_password
from clinicavoice.tasks import DetachedTaskRunner

logger = structlog.get_logger(__name__)

HTTP_TIMEOUT_SECONDS = 10
PORTAL_PARTITION = "portal"


# ---------------------------------------------------------------------------
# Notification dispatch
# ---------------------------------------------------------------------------


class Notifier(Protocol):
    def send(self, message: str, recipient: str, subject: Optional[str] = None) -> str: ...


class LoggingNotifier:
    """Record outgoing messages in the log and keep them for inspection."""

    def __init__(self, sender: str = "noreply@clinicavoice.local") -> None:
        self.sender = sender
        self.sent: List[Dict[str, Any]] = []

    def send(self, message: str, recipient: str, subject: Optional[str] = None) -> str:
        message_id = uuid.uuid4().hex
        self.sent.append(
            {
                "messageId": message_id,
                "recipient": recipient,
                "subject": subject,
                "message": message,
                "sender": self.sender,
            }
        )
        logger.info("notification_sent", recipient=recipient, subject=subject, message_id=message_id)
        return message_id


class WebhookNotifier:
    """Deliver messages by POSTing JSON to a notification gateway."""

    def __init__(self, url: str, sender: str, timeout: float = HTTP_TIMEOUT_SECONDS) -> None:
        self.url = url
        self.sender = sender
        self.timeout = timeout

    def send(self, message: str, recipient: str, subject: Optional[str] = None) -> str:
        payload = {
            "from": self.sender,
            "to": recipient,
            "subject": subject,
            "text": message,
        }
        resp = requests.post(self.url, json=payload, timeout=self.timeout)
        resp.raise_for_status()
        try:
            body = resp.json()
        except ValueError:
            body = {}
        message_id = str(body.get("messageId") or body.get("id") or uuid.uuid4().hex)
        logger.info("notification_sent", recipient=recipient, message_id=message_id)
        return message_id


# ---------------------------------------------------------------------------
# Asynchronous side invocation
# ---------------------------------------------------------------------------


FunctionHandler = Callable[[Dict[str, Any]], Any]


class Invoker(Protocol):
    def invoke(self, function_name: str, payload: Mapping[str, Any]) -> None: ...


class LocalInvoker:
    """Dispatch named functions in-process on the detached task runner."""

    def __init__(self, tasks: DetachedTaskRunner) -> None:
        self._tasks = tasks
        self._functions: Dict[str, FunctionHandler] = {}

    def register(self, function_name: str, handler: FunctionHandler) -> None:
        self._functions[function_name] = handler

    def registered(self) -> Tuple[str, ...]:
        return tuple(sorted(self._functions))

    def invoke(self, function_name: str, payload: Mapping[str, Any]) -> None:
        try:
            handler = self._functions[function_name]
        except KeyError:
            raise LookupError(f"Unknown function: {function_name}") from None
        logger.info("function_invoked", function=function_name)
        self._tasks.submit(function_name, handler, dict(payload))


# ---------------------------------------------------------------------------
# Portal identity provider
# ---------------------------------------------------------------------------


class IdentityError(Exception):
    """Raised when the identity provider refuses to create an account."""


class UsernameExistsError(IdentityError):
    pass


class IdentityProvider(Protocol):
    def create_user(self, email: str, password: str, attributes: Mapping[str, Any]) -> str: ...

    def authenticate(self, email: str, password: str) -> Optional[Dict[str, Any]]: ...


class PortalIdentityProvider:
    """Patient portal accounts kept in the document store.

    Usernames are lower-cased email addresses; passwords are hashed with the
    shared passlib context.
    """

    def __init__(self, store: docstore.DocumentStore) -> None:
        self._store = store

    @staticmethod
    def _username(email: str) -> str:
        return email.strip().lower()

    def create_user(self, email: str, password: str, attributes: Mapping[str, Any]) -> str:
        username = self._username(email)
        if not username:
            raise IdentityError("Email is required to create an account")
        if self._store.get(docstore.PORTAL_USERS, PORTAL_PARTITION, username) is not None:
            raise UsernameExistsError("An account with this email already exists")
        user_id = str(uuid.uuid4())
        self._store.put(
            docstore.PORTAL_USERS,
            {
                "id": username,
                "userId": PORTAL_PARTITION,
                "sub": user_id,
                "email": username,
                "passwordHash": hash_password(password),
                "attributes": dict(attributes),
                "createdAt": time_utils.now_iso(),
            },
        )
        return user_id

    def authenticate(self, email: str, password: str) -> Optional[Dict[str, Any]]:
        record = self._store.get(docstore.PORTAL_USERS, PORTAL_PARTITION, self._username(email))
        if record is None or not verify_password(password, record.get("passwordHash", "")):
            return None
        return record


# ---------------------------------------------------------------------------
# Upload URL signing
# ---------------------------------------------------------------------------


class FileStorage(Protocol):
    bucket: str

    def presign_upload(self, key: str, content_type: str, expires_in: int) -> str: ...


class SignedUrlStorage:
    """Produce time-limited, HMAC-signed PUT URLs for direct uploads."""

    def __init__(self, base_url: str, bucket: str, secret: str) -> None:
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self._secret = secret.encode("utf-8")

    def _signature(self, key: str, content_type: str, expires: int) -> str:
        message = f"PUT\n{self.bucket}\n{key}\n{content_type}\n{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def presign_upload(self, key: str, content_type: str, expires_in: int) -> str:
        expires = int(time.time()) + int(expires_in)
        query = urlencode(
            {
                "contentType": content_type,
                "expires": expires,
                "signature": self._signature(key, content_type, expires),
            }
        )
        return f"{self.base_url}/{self.bucket}/{quote(key)}?{query}"


# ---------------------------------------------------------------------------
# Transcription engine
# ---------------------------------------------------------------------------


class TranscriptionEngine(Protocol):
    def start_job(self, job_name: str, media_uri: str, media_format: str, output_key: str) -> None: ...


class LoggingTranscriptionEngine:
    """Accept transcription jobs and log them; results arrive via completion events."""

    def __init__(self) -> None:
        self.jobs: List[Dict[str, str]] = []

    def start_job(self, job_name: str, media_uri: str, media_format: str, output_key: str) -> None:
        job = {
            "jobName": job_name,
            "mediaUri": media_uri,
            "mediaFormat": media_format,
            "outputKey": output_key,
        }
        self.jobs.append(job)
        logger.info("transcription_job_started", **job)


# ---------------------------------------------------------------------------
# Medical entity extraction
# ---------------------------------------------------------------------------


class EntityExtractor(Protocol):
    def detect_entities(self, text: str) -> List[Dict[str, Any]]: ...

    def detect_phi(self, text: str) -> List[Dict[str, Any]]: ...


_CONDITION_LEXICON: Mapping[str, str] = {
    "type 2 diabetes": "DX_NAME",
    "diabetes": "DX_NAME",
    "hypertension": "DX_NAME",
    "chronic kidney disease": "DX_NAME",
    "asthma": "DX_NAME",
    "migraine": "DX_NAME",
    "pneumonia": "DX_NAME",
    "fever": "DX_NAME",
    "cough": "DX_NAME",
    "headache": "DX_NAME",
    "chest pain": "DX_NAME",
    "shortness of breath": "DX_NAME",
}

_MEDICATION_LEXICON: Mapping[str, str] = {
    "metformin": "GENERIC_NAME",
    "lisinopril": "GENERIC_NAME",
    "atorvastatin": "GENERIC_NAME",
    "amoxicillin": "GENERIC_NAME",
    "ibuprofen": "GENERIC_NAME",
    "acetaminophen": "GENERIC_NAME",
    "albuterol": "GENERIC_NAME",
    "insulin": "GENERIC_NAME",
}

_PROCEDURE_LEXICON: Mapping[str, str] = {
    "blood test": "TEST_NAME",
    "x-ray": "TEST_NAME",
    "mri": "TEST_NAME",
    "ecg": "TEST_NAME",
    "biopsy": "PROCEDURE_NAME",
}

_LEXICONS: Tuple[Tuple[str, Mapping[str, str], float], ...] = (
    ("MEDICAL_CONDITION", _CONDITION_LEXICON, 0.9),
    ("MEDICATION", _MEDICATION_LEXICON, 0.95),
    ("TEST_TREATMENT_PROCEDURE", _PROCEDURE_LEXICON, 0.85),
)

_PHI_PATTERNS: Tuple[Tuple[str, re.Pattern[str], float], ...] = (
    ("EMAIL", re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"), 0.99),
    ("ID", re.compile(r"\bMRN-\d{8}-\d{4}\b"), 0.99),
    ("ID", re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), 0.95),
    ("PHONE_OR_FAX", re.compile(r"(?:\+?\d{1,3}[\s-]?)?(?:\(\d{3}\)|\d{3})[\s-]\d{3}[\s-]\d{4}"), 0.9),
    ("DATE", re.compile(r"\b(?:19|20)\d{2}-\d{2}-\d{2}\b|\b\d{1,2}/\d{1,2}/(?:19|20)\d{2}\b"), 0.9),
    ("NAME", re.compile(r"\b(?:Dr|Mr|Mrs|Ms)\.?\s+[A-Z][a-z]+(?:\s+[A-Z][a-z]+)?"), 0.8),
)


def _entity(text: str, category: str, kind: str, score: float, begin: int, end: int) -> Dict[str, Any]:
    return {
        "text": text,
        "category": category,
        "type": kind,
        "confidence": score,
        "beginOffset": begin,
        "endOffset": end,
    }


class LexiconEntityExtractor:
    """Dictionary and pattern based medical entity and PHI detection.

    Longer lexicon terms win over terms they contain, so "type 2 diabetes"
    is reported once rather than also as "diabetes".
    """

    def detect_entities(self, text: str) -> List[Dict[str, Any]]:
        found: List[Dict[str, Any]] = []
        taken: List[Tuple[int, int]] = []
        terms = [
            (term, category, kind, score)
            for category, lexicon, score in _LEXICONS
            for term, kind in lexicon.items()
        ]
        terms.sort(key=lambda item: len(item[0]), reverse=True)
        for term, category, kind, score in terms:
            pattern = re.compile(rf"\b{re.escape(term)}\b", re.IGNORECASE)
            for match in pattern.finditer(text):
                span = match.span()
                if any(span[0] < end and span[1] > start for start, end in taken):
                    continue
                taken.append(span)
                found.append(_entity(match.group(0), category, kind, score, *span))
        found.sort(key=lambda e: e["beginOffset"])
        return found

    def detect_phi(self, text: str) -> List[Dict[str, Any]]:
        found: List[Dict[str, Any]] = []
        taken: List[Tuple[int, int]] = []
        for kind, pattern, score in _PHI_PATTERNS:
            for match in pattern.finditer(text):
                span = match.span()
                if any(span[0] < end and span[1] > start for start, end in taken):
                    continue
                taken.append(span)
                found.append(_entity(match.group(0), "PROTECTED_HEALTH_INFORMATION", kind, score, *span))
        found.sort(key=lambda e: e["beginOffset"])
        return found


__all__ = [
    "Notifier",
    "LoggingNotifier",
    "WebhookNotifier",
    "Invoker",
    "LocalInvoker",
    "IdentityError",
    "UsernameExistsError",
    "IdentityProvider",
    "PortalIdentityProvider",
    "FileStorage",
    "SignedUrlStorage",
    "TranscriptionEngine",
    "LoggingTranscriptionEngine",
    "EntityExtractor",
    "LexiconEntityExtractor",
]

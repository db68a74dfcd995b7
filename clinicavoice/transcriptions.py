"""Dictated-audio transcription lifecycle.

A transcription record is created by the upload endpoint with status
``pending_upload``.  Storage events then drive it forward:

* the upload event starts a transcription job (``processing``),
* the job output event stores the transcript (``completed`` or ``failed``)
  and queues medical analysis,
* medical analysis attaches extracted entities and PHI to the record.

Each stage is a named function dispatched through the invoker.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

import structlog

from clinicavoice import store as docstore
from clinicavoice import time_utils
from clinicavoice.errors import NotFound
from clinicavoice.reports import TRANSCRIPTION

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from clinicavoice.services import Services

logger = structlog.get_logger(__name__)

PROCESSOR_FUNCTION = "transcription-processor"
COMPLETION_FUNCTION = "transcription-completion"
MEDICAL_ANALYSIS_FUNCTION = "medical-analysis"

TRANSCRIPT_PREFIX = "transcripts/"
MEDIA_FORMATS = {
    "webm": "webm",
    "mp3": "mp3",
    "mp4": "mp4",
    "m4a": "mp4",
    "wav": "wav",
    "mpeg": "mp3",
}
DEFAULT_MEDIA_FORMAT = "mp3"


def list_transcriptions(services: "Services", clinician_id: str) -> List[Dict[str, Any]]:
    items = services.store.query(
        docstore.REPORTS, owner_id=clinician_id, equals={"type": TRANSCRIPTION}
    )
    items.sort(key=lambda r: r.get("createdAt") or "", reverse=True)
    return items


def _get_transcription(services: "Services", clinician_id: str, file_id: str) -> Optional[Dict[str, Any]]:
    item = services.store.get(docstore.REPORTS, clinician_id, file_id)
    if item is None or item.get("type") != TRANSCRIPTION:
        return None
    return item


def get_transcription(services: "Services", clinician_id: str, file_id: str) -> Dict[str, Any]:
    item = _get_transcription(services, clinician_id, file_id)
    if item is None:
        raise NotFound("Transcription not found")
    return item


def transcription_status(services: "Services", clinician_id: str, file_id: str) -> Dict[str, Any]:
    """Poll a transcription; unknown ids report ``processing``."""

    item = _get_transcription(services, clinician_id, file_id)
    if item is None:
        return {
            "status": "processing",
            "fileId": file_id,
            "message": "Transcription is being processed",
        }
    return {
        "status": item.get("status") or "processing",
        "transcript": item.get("transcript"),
        "fileId": file_id,
        "id": item["id"],
        "jobName": item.get("jobName"),
        "updatedAt": item.get("updatedAt"),
        "medicalAnalysis": item.get("medicalAnalysis"),
    }


def start_transcription() -> Dict[str, str]:
    return {
        "message": "Upload your file to storage. Transcription will start automatically.",
        "status": "upload_ready",
    }


def parse_audio_key(key: str) -> Optional[Dict[str, str]]:
    """Split ``audio/{userId}/{timestamp}_{fileId}.{ext}`` into its parts."""

    parts = key.split("/")
    if len(parts) < 3:
        return None
    name_parts = parts[2].split("_")
    if len(name_parts) < 2:
        return None
    return {
        "userId": parts[1],
        "fileId": name_parts[1].split(".")[0],
        "extension": key.rsplit(".", 1)[-1].lower(),
    }


def process_upload(services: "Services", payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Start a transcription job for a freshly uploaded audio object."""

    key = payload.get("key") or ""
    bucket = payload.get("bucket") or services.storage.bucket
    parsed = parse_audio_key(key)
    if parsed is None:
        logger.error("transcription_invalid_key", key=key)
        return {"started": False, "key": key}

    file_id = parsed["fileId"]
    job_name = f"transcription-{time_utils.epoch_millis()}-{file_id}"
    media_format = MEDIA_FORMATS.get(parsed["extension"], DEFAULT_MEDIA_FORMAT)

    services.store.update(
        docstore.REPORTS,
        parsed["userId"],
        file_id,
        {
            "jobName": job_name,
            "status": "processing",
            "fileId": file_id,
            "updatedAt": time_utils.now_iso(),
        },
    )
    services.transcriber.start_job(
        job_name,
        f"s3://{bucket}/{key}",
        media_format,
        f"{TRANSCRIPT_PREFIX}{job_name}.json",
    )
    logger.info("transcription_started", file_id=file_id, job_name=job_name, media_format=media_format)
    return {"started": True, "jobName": job_name, "fileId": file_id}


def _job_name_from_key(key: str) -> str:
    name = key.rsplit("/", 1)[-1]
    return name[: -len(".json")] if name.endswith(".json") else name


def complete_transcription(services: "Services", payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Store a finished job's transcript and queue medical analysis.

    ``payload`` carries the output object ``key`` and the engine's ``output``
    document, either ``{"status": "FAILED"}`` or
    ``{"results": {"transcripts": [{"transcript": ...}]}}``.
    """

    key = payload.get("key") or ""
    output = payload.get("output") or {}
    job_name = _job_name_from_key(key)

    matches = services.store.scan(
        docstore.REPORTS, equals={"type": TRANSCRIPTION, "jobName": job_name}
    )
    if not matches:
        logger.error("transcription_record_missing", job_name=job_name)
        return {"updated": False, "jobName": job_name}
    item = matches[0]
    now = time_utils.now_iso()

    if output.get("status") == "FAILED":
        services.store.update(
            docstore.REPORTS,
            item["userId"],
            item["id"],
            {"status": "failed", "errorMessage": "Transcription failed", "updatedAt": now},
        )
        logger.warning("transcription_failed", job_name=job_name)
        return {"updated": True, "jobName": job_name, "status": "failed"}

    transcript = output["results"]["transcripts"][0]["transcript"]
    services.store.update(
        docstore.REPORTS,
        item["userId"],
        item["id"],
        {"status": "completed", "transcript": transcript, "transcriptKey": key, "updatedAt": now},
    )
    logger.info("transcription_completed", job_name=job_name, characters=len(transcript))

    try:
        services.invoker.invoke(
            MEDICAL_ANALYSIS_FUNCTION,
            {
                "transcriptionId": item["id"],
                "userId": item["userId"],
                "transcript": transcript,
                "transcriptKey": key,
            },
        )
    except Exception:
        logger.exception("medical_analysis_dispatch_failed", transcription_id=item["id"])
    return {"updated": True, "jobName": job_name, "status": "completed"}


def build_medical_analysis(services: "Services", transcript: str) -> Dict[str, Any]:
    entities = services.extractor.detect_entities(transcript)
    phi = services.extractor.detect_phi(transcript)
    categories: Dict[str, None] = {}
    for entity in entities:
        categories.setdefault(entity["category"], None)
    return {
        "entities": entities,
        "phi": phi,
        "summary": {
            "totalEntities": len(entities),
            "totalPHI": len(phi),
            "categories": list(categories),
            "analyzedAt": time_utils.now_iso(),
        },
    }


def analyze_transcription(services: "Services", payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Attach medical entities and PHI findings to a completed transcription."""

    transcription_id = payload.get("transcriptionId")
    transcript = payload.get("transcript")
    if not transcription_id or not transcript:
        raise ValueError("Invalid event format")

    owner_id = payload.get("userId")
    if not owner_id:
        matches = services.store.scan(
            docstore.REPORTS, equals={"type": TRANSCRIPTION, "id": transcription_id}
        )
        if not matches:
            raise LookupError(f"Could not find transcription record for ID: {transcription_id}")
        owner_id = matches[0]["userId"]

    analysis = build_medical_analysis(services, transcript)
    services.store.update(
        docstore.REPORTS,
        owner_id,
        transcription_id,
        {"medicalAnalysis": analysis, "updatedAt": time_utils.now_iso()},
    )
    logger.info(
        "medical_analysis_completed",
        transcription_id=transcription_id,
        entities=analysis["summary"]["totalEntities"],
    )
    return {"transcriptionId": transcription_id, "medicalAnalysis": analysis["summary"]}


__all__ = [
    "PROCESSOR_FUNCTION",
    "COMPLETION_FUNCTION",
    "MEDICAL_ANALYSIS_FUNCTION",
    "list_transcriptions",
    "get_transcription",
    "transcription_status",
    "start_transcription",
    "parse_audio_key",
    "process_upload",
    "complete_transcription",
    "build_medical_analysis",
    "analyze_transcription",
]

"""Presigned audio uploads."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any, Dict

import structlog

from clinicavoice import store as docstore
from clinicavoice import time_utils
from clinicavoice.auth import RequestContext
from clinicavoice.errors import BadRequest
from clinicavoice.reports import TRANSCRIPTION
from clinicavoice.schemas import UploadRequest
from clinicavoice.validation import is_number

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from clinicavoice.services import Services

logger = structlog.get_logger(__name__)

ALLOWED_AUDIO_TYPES = (
    "audio/webm",
    "audio/mp3",
    "audio/mp4",
    "audio/wav",
    "audio/m4a",
    "audio/mpeg",
)
MAX_UPLOAD_BYTES = 100 * 1024 * 1024
UPLOAD_URL_TTL_SECONDS = 300


def create_upload(services: "Services", ctx: RequestContext, data: UploadRequest) -> Dict[str, Any]:
    """Register a pending transcription and return a short-lived upload URL."""

    if data.fileType not in ALLOWED_AUDIO_TYPES:
        raise BadRequest("Invalid file type. Only audio files are allowed.")
    if is_number(data.fileSize) and data.fileSize > MAX_UPLOAD_BYTES:
        raise BadRequest("File too large. Maximum size is 100MB.")
    if not data.fileName:
        raise BadRequest("Validation failed", "fileName is required")

    now = time_utils.utc_now()
    file_id = str(uuid.uuid4())
    extension = data.fileName.rsplit(".", 1)[-1]
    key = f"audio/{ctx.subject_id}/{time_utils.epoch_millis(now)}_{file_id}.{extension}"

    upload_url = services.storage.presign_upload(key, data.fileType, UPLOAD_URL_TTL_SECONDS)

    created = time_utils.isoformat(now)
    services.store.put(
        docstore.REPORTS,
        {
            "id": file_id,
            "userId": ctx.subject_id,
            "type": TRANSCRIPTION,
            "fileKey": key,
            "originalFileName": data.fileName,
            "fileType": data.fileType,
            "fileSize": data.fileSize,
            "status": "pending_upload",
            "createdAt": created,
            "updatedAt": created,
        },
    )
    logger.info("upload_url_issued", file_id=file_id, file_type=data.fileType)
    return {
        "uploadUrl": upload_url,
        "fileId": file_id,
        "s3Key": key,
        "expiresIn": UPLOAD_URL_TTL_SECONDS,
        "message": "Upload URL generated successfully",
    }


__all__ = ["ALLOWED_AUDIO_TYPES", "MAX_UPLOAD_BYTES", "UPLOAD_URL_TTL_SECONDS", "create_upload"]

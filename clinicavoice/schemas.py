"""Request bodies and partial-update models.

Update models double as field whitelists: anything not declared is ignored,
and :meth:`PatchModel.patch` only returns the fields the client actually sent.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PatchModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    def patch(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class PatientPatch(PatchModel):
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    dateOfBirth: Optional[str] = None
    gender: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[Dict[str, Any]] = None
    preferredContactMethod: Optional[str] = None


class PatientCreate(PatientPatch):
    pass


class PatientSearchRequest(BaseModel):
    query: Optional[str] = None
    fields: Optional[List[str]] = None


class AppointmentPatch(PatchModel):
    date: Optional[str] = None
    time: Optional[str] = None
    duration: Any = None
    type: Optional[str] = None
    notes: Optional[str] = None


class AppointmentCreate(AppointmentPatch):
    patientId: Optional[str] = None


class StatusChange(BaseModel):
    status: Optional[str] = None
    reason: Optional[str] = None


class CancellationRequest(BaseModel):
    reason: Optional[str] = None


class TimeBlockPatch(PatchModel):
    date: Optional[str] = None
    startTime: Optional[str] = None
    endTime: Optional[str] = None
    reason: Optional[str] = None
    type: Optional[str] = None
    recurrence: Any = None


class TimeBlockCreate(TimeBlockPatch):
    pass


class ReportPatch(PatchModel):
    summary: Optional[str] = None
    content: Optional[str] = None
    transcript: Optional[str] = None
    status: Optional[str] = None
    patientName: Optional[str] = None


class ReportCreate(BaseModel):
    """New reports keep any extra attributes the client sends."""

    model_config = ConfigDict(extra="allow")

    patientId: Optional[str] = None
    patientName: Optional[str] = None
    type: Optional[str] = None
    status: Optional[str] = None
    summary: Optional[str] = None
    content: Optional[str] = None
    transcript: Optional[str] = None


class TemplatePatch(PatchModel):
    name: Optional[str] = None
    content: Optional[str] = None


class TemplateCreate(TemplatePatch):
    pass


class TemplateRenderRequest(BaseModel):
    values: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("values")
    @classmethod
    def stringify_values(cls, values: Dict[str, Any]) -> Dict[str, Any]:
        return {str(k): "" if v is None else v for k, v in values.items()}


class ActivationRequest(BaseModel):
    token: Optional[str] = None
    password: Optional[str] = None


class UploadRequest(BaseModel):
    fileName: Optional[str] = None
    fileType: Optional[str] = None
    fileSize: Any = None


class LoginRequest(BaseModel):
    email: str
    password: str


__all__ = [
    "PatchModel",
    "PatientPatch",
    "PatientCreate",
    "PatientSearchRequest",
    "AppointmentPatch",
    "AppointmentCreate",
    "StatusChange",
    "CancellationRequest",
    "TimeBlockPatch",
    "TimeBlockCreate",
    "ReportPatch",
    "ReportCreate",
    "TemplatePatch",
    "TemplateCreate",
    "TemplateRenderRequest",
    "ActivationRequest",
    "UploadRequest",
    "LoginRequest",
]

"""HTTP surface of the ClinicaVoice backend.

Every route authenticates the bearer token into a :class:`RequestContext`,
checks the caller's role and hands off to the record modules.  Failures of
any kind leave this module as ``{error, message?, errors?}`` JSON.
"""

from __future__ import annotations

import threading
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException
from structlog.contextvars import bind_contextvars, unbind_contextvars

from clinicavoice import (
    analytics,
    invitations,
    patients,
    reports,
    scheduling,
    search,
    templates,
    transcriptions,
    uploads,
)
from clinicavoice import store as docstore
from clinicavoice.auth import (
    CLINICIAN,
    PATIENT,
    RequestContext,
    create_access_token,
    require_clinician,
    require_member,
    require_roles,
)
from clinicavoice.config import Settings, get_settings
from clinicavoice.errors import Forbidden, NotFound, ServiceError, build_error_body
from clinicavoice.observability import (
    REQUEST_COUNTER,
    REQUEST_LATENCY,
    configure_logging,
    normalise_path_for_metrics,
)
from clinicavoice.schemas import (
    ActivationRequest,
    AppointmentCreate,
    AppointmentPatch,
    CancellationRequest,
    LoginRequest,
    PatientCreate,
    PatientPatch,
    PatientSearchRequest,
    ReportCreate,
    ReportPatch,
    StatusChange,
    TemplateCreate,
    TemplatePatch,
    TemplateRenderRequest,
    TimeBlockCreate,
    TimeBlockPatch,
    UploadRequest,
)
from clinicavoice.services import Services, build_services
from clinicavoice.visits import get_visit_frequency

_settings = get_settings()
configure_logging(_settings.log_level)
logger = structlog.get_logger(__name__)

START_TIME = time.time()

_services: Optional[Services] = None
_services_lock = threading.Lock()


def get_services() -> Services:
    """Return the process-wide service handles, building them on first use."""

    global _services
    if _services is None:
        with _services_lock:
            if _services is None:
                _services = build_services(get_settings())
    return _services


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - exercised by uvicorn
    logger.info("lifespan_startup")
    try:
        yield
    finally:
        if _services is not None:
            _services.close()
        logger.info("lifespan_shutdown_complete", uptime=round(time.time() - START_TIME, 2))


app = FastAPI(title="ClinicaVoice API", lifespan=lifespan)

require_uploader = require_roles(
    CLINICIAN, PATIENT, message="Invalid user type. Please contact support."
)


# ---------------------------------------------------------------------------
# Middleware and error conversion
# ---------------------------------------------------------------------------


@app.middleware("http")
async def convert_unexpected_errors(request: Request, call_next):
    """Turn anything the exception handlers did not claim into a 500 body."""

    try:
        return await call_next(request)
    except Exception as exc:
        logger.exception("unhandled_error", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=500,
            content=build_error_body("Internal server error", str(exc)),
        )


@app.middleware("http")
async def track_http_metrics(request: Request, call_next):
    """Emit Prometheus counters and histograms for each request."""

    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start
    normalised = normalise_path_for_metrics(request.url.path)
    REQUEST_COUNTER.labels(request.method, normalised, str(response.status_code)).inc()
    REQUEST_LATENCY.labels(request.method, normalised).observe(duration)
    return response


@app.middleware("http")
async def inject_trace_id(request: Request, call_next):
    """Attach or propagate a trace identifier for each request."""

    trace_id = request.headers.get("x-trace-id") or uuid.uuid4().hex
    bind_contextvars(trace_id=trace_id, path=request.url.path, method=request.method)
    try:
        response = await call_next(request)
        response.headers["X-Trace-Id"] = trace_id
        return response
    finally:
        unbind_contextvars("trace_id", "path", "method")


@app.middleware("http")
async def allow_any_origin(request: Request, call_next):
    response = await call_next(request)
    response.headers["Access-Control-Allow-Origin"] = "*"
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=list(_settings.allowed_origins),
    allow_credentials="*" not in _settings.allowed_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Unknown routes and methods become a generic invalid-request error."""

    if exc.status_code in (status.HTTP_404_NOT_FOUND, status.HTTP_405_METHOD_NOT_ALLOWED):
        return JSONResponse(status_code=400, content=build_error_body("Invalid request"))
    return JSONResponse(
        status_code=exc.status_code,
        content=build_error_body(str(exc.detail)),
        headers=dict(exc.headers or {}),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    messages: List[str] = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return JSONResponse(
        status_code=400,
        content=build_error_body("Validation failed", errors=messages),
    )


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------


@app.get("/health", tags=["system"])
def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Lightweight liveness check with a best-effort store probe."""

    try:
        services.store.get(docstore.PATIENTS, "health", "health")
        db_ok = True
    except Exception:
        logger.warning("health_store_unavailable", exc_info=True)
        db_ok = False
    return {"status": "ok", "uptime": round(time.time() - START_TIME, 2), "db": db_ok}


@app.get("/metrics", tags=["system"])
def metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------------------------------------------------------------------------
# Patients
# ---------------------------------------------------------------------------


@app.get("/patients")
def list_patients(
    status_filter: Optional[str] = Query("active", alias="status"),
    search_term: Optional[str] = Query(None, alias="search"),
    limit: int = Query(patients.DEFAULT_LIST_LIMIT),
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder"),
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return patients.list_patients(
        services,
        ctx.subject_id,
        status=status_filter,
        search=search_term,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )


@app.post("/patients/search")
def search_patients(
    body: PatientSearchRequest,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    def last_visit(patient: Dict[str, Any]) -> Optional[str]:
        return get_visit_frequency(services.store, ctx.subject_id, patient["id"])["lastVisitDate"]

    return search.search_patients(
        services.store, ctx.subject_id, body.query, body.fields, last_visit_lookup=last_visit
    )


@app.post("/patients/activate")
def activate_patient(body: ActivationRequest, services: Services = Depends(get_services)):
    return invitations.activate_account(services, body.token, body.password)


# Registered ahead of /patients/{patient_id} so these paths never resolve as ids.
@app.api_route("/patients/search", methods=["GET", "PUT", "DELETE"], include_in_schema=False)
@app.api_route("/patients/activate", methods=["GET", "PUT", "DELETE"], include_in_schema=False)
def patient_action_wrong_method():
    raise HTTPException(status_code=status.HTTP_405_METHOD_NOT_ALLOWED)


@app.post("/patients", status_code=status.HTTP_201_CREATED)
def create_patient(
    body: PatientCreate,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return patients.create_patient(services, ctx.subject_id, body)


@app.get("/patients/{patient_id}")
def get_patient(
    patient_id: str,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return patients.get_patient(services, ctx.subject_id, patient_id)


@app.put("/patients/{patient_id}")
def update_patient(
    patient_id: str,
    body: PatientPatch,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return patients.update_patient(services, ctx.subject_id, patient_id, body)


@app.delete("/patients/{patient_id}")
def delete_patient(
    patient_id: str,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return patients.deactivate_patient(services, ctx.subject_id, patient_id)


@app.post("/patients/{patient_id}/resend-invitation")
def resend_invitation(
    patient_id: str,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return invitations.resend_invitation(services, ctx.subject_id, patient_id)


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------


def _split_param(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    return [part.strip() for part in value.split(",") if part.strip()]


@app.get("/appointments/analytics")
def appointment_analytics(
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    appointment_type: Optional[str] = Query(None, alias="type"),
    status_filter: Optional[str] = Query(None, alias="status"),
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    types = _split_param(appointment_type)
    statuses = _split_param(status_filter)
    selected = scheduling.appointments_for_analytics(
        services, ctx.subject_id, start_date, end_date, types, statuses
    )
    result = analytics.calculate_analytics(selected)
    result["filters"] = {
        "startDate": start_date,
        "endDate": end_date,
        "type": types,
        "status": statuses,
    }
    return result


@app.get("/appointments")
def list_appointments(
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    patient_id: Optional[str] = Query(None, alias="patientId"),
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(scheduling.DEFAULT_APPOINTMENT_LIMIT, ge=1),
    ctx: RequestContext = Depends(require_member),
    services: Services = Depends(get_services),
):
    return scheduling.list_appointments(
        services,
        ctx,
        start_date=start_date,
        end_date=end_date,
        patient_id=patient_id,
        status=status_filter,
        limit=limit,
    )


@app.get("/appointments/{appointment_id}")
def get_appointment(
    appointment_id: str,
    ctx: RequestContext = Depends(require_member),
    services: Services = Depends(get_services),
):
    return scheduling.get_appointment(services, ctx, appointment_id)


@app.post("/appointments", status_code=status.HTTP_201_CREATED)
def create_appointment(
    body: AppointmentCreate,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return scheduling.create_appointment(services, ctx.subject_id, body)


@app.put("/appointments/{appointment_id}")
def update_appointment(
    appointment_id: str,
    body: AppointmentPatch,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return scheduling.update_appointment(services, ctx.subject_id, appointment_id, body)


@app.post("/appointments/{appointment_id}/status")
def change_appointment_status(
    appointment_id: str,
    body: StatusChange,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return scheduling.change_status(services, ctx.subject_id, appointment_id, body.status, body.reason)


@app.delete("/appointments/{appointment_id}")
def cancel_appointment(
    appointment_id: str,
    body: Optional[CancellationRequest] = None,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    reason = body.reason if body is not None else None
    return scheduling.cancel_appointment(services, ctx.subject_id, appointment_id, reason)


# ---------------------------------------------------------------------------
# Time blocks
# ---------------------------------------------------------------------------


@app.get("/time-blocks")
def list_time_blocks(
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    block_type: Optional[str] = Query(None, alias="type"),
    limit: int = Query(scheduling.DEFAULT_TIME_BLOCK_LIMIT, ge=1),
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return scheduling.list_time_blocks(
        services,
        ctx.subject_id,
        start_date=start_date,
        end_date=end_date,
        block_type=block_type,
        limit=limit,
    )


@app.get("/time-blocks/{block_id}")
def get_time_block(
    block_id: str,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return scheduling.get_time_block(services, ctx.subject_id, block_id)


@app.post("/time-blocks", status_code=status.HTTP_201_CREATED)
def create_time_block(
    body: TimeBlockCreate,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return scheduling.create_time_block(services, ctx.subject_id, body)


@app.put("/time-blocks/{block_id}")
def update_time_block(
    block_id: str,
    body: TimeBlockPatch,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return scheduling.update_time_block(services, ctx.subject_id, block_id, body)


@app.delete("/time-blocks/{block_id}")
def delete_time_block(
    block_id: str,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return scheduling.delete_time_block(services, ctx.subject_id, block_id)


# ---------------------------------------------------------------------------
# Reports and dashboard
# ---------------------------------------------------------------------------


@app.get("/reports")
def list_reports(
    ctx: RequestContext = Depends(require_member),
    services: Services = Depends(get_services),
):
    return reports.list_reports(services, ctx)


@app.get("/reports/{report_id}")
def get_report(
    report_id: str,
    ctx: RequestContext = Depends(require_member),
    services: Services = Depends(get_services),
):
    return reports.get_report(services, ctx, report_id)


@app.post("/reports", status_code=status.HTTP_201_CREATED)
def create_report(
    body: ReportCreate,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return reports.create_report(services, ctx.subject_id, body)


@app.put("/reports/{report_id}")
def update_report(
    report_id: str,
    body: ReportPatch,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return reports.update_report(services, ctx.subject_id, report_id, body)


@app.delete("/reports/{report_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_report(
    report_id: str,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
) -> Response:
    reports.delete_report(services, ctx.subject_id, report_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/dashboard/{endpoint}")
def dashboard(
    endpoint: str,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return reports.dashboard(services, ctx.subject_id, endpoint)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


@app.get("/templates")
def list_templates(
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return templates.list_templates(services, ctx.subject_id)


@app.get("/templates/{template_id}")
def get_template(
    template_id: str,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return templates.get_template(services, ctx.subject_id, template_id)


@app.post("/templates", status_code=status.HTTP_201_CREATED)
def create_template(
    body: TemplateCreate,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return templates.create_template(services, ctx.subject_id, body)


@app.put("/templates/{template_id}")
def update_template(
    template_id: str,
    body: TemplatePatch,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return templates.update_template(services, ctx.subject_id, template_id, body)


@app.delete("/templates/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_template(
    template_id: str,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
) -> Response:
    templates.delete_template(services, ctx.subject_id, template_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/templates/{template_id}/render")
def render_template(
    template_id: str,
    body: TemplateRenderRequest,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return templates.render_template(services, ctx.subject_id, template_id, body.values)


# ---------------------------------------------------------------------------
# Transcriptions and uploads
# ---------------------------------------------------------------------------


@app.get("/transcribe")
def list_transcriptions(
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return transcriptions.list_transcriptions(services, ctx.subject_id)


@app.get("/transcribe/{file_id}")
def get_transcription(
    file_id: str,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return transcriptions.get_transcription(services, ctx.subject_id, file_id)


@app.post("/transcribe/{file_id}")
def transcription_status(
    file_id: str,
    ctx: RequestContext = Depends(require_clinician),
    services: Services = Depends(get_services),
):
    return transcriptions.transcription_status(services, ctx.subject_id, file_id)


@app.post("/transcribe")
def start_transcription(ctx: RequestContext = Depends(require_clinician)):
    return transcriptions.start_transcription()


@app.post("/upload")
def create_upload(
    body: UploadRequest,
    ctx: RequestContext = Depends(require_uploader),
    services: Services = Depends(get_services),
):
    return uploads.create_upload(services, ctx, body)


# ---------------------------------------------------------------------------
# Portal sign-in and internal events
# ---------------------------------------------------------------------------


@app.post("/auth/login")
def login(
    body: LoginRequest,
    services: Services = Depends(get_services),
    settings: Settings = Depends(get_settings),
):
    """Exchange portal credentials for a patient bearer token."""

    account = services.identity.authenticate(body.email, body.password)
    if account is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")
    patient = patients.find_patient_for_portal_user(services.store, account["sub"])
    if patient is not None:
        patients.record_login(services.store, patient)
    token = create_access_token(account["sub"], PATIENT, email=account.get("email"), settings=settings)
    return {
        "accessToken": token,
        "tokenType": "bearer",
        "userType": PATIENT,
        "patientId": patient["id"] if patient else None,
    }


@app.post("/internal/events/{function_name}", status_code=status.HTTP_202_ACCEPTED)
def dispatch_internal_event(
    function_name: str,
    payload: Dict[str, Any],
    x_internal_token: Optional[str] = Header(None),
    services: Services = Depends(get_services),
    settings: Settings = Depends(get_settings),
):
    """Queue a storage or engine event for one of the detached functions."""

    if not settings.internal_api_token or x_internal_token != settings.internal_api_token:
        raise Forbidden()
    try:
        services.invoker.invoke(function_name, payload)
    except LookupError as exc:
        raise NotFound(str(exc)) from exc
    return {"accepted": True, "function": function_name}

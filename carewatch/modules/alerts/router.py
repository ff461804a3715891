"""HTTP endpoints for alert ingestion and the dashboard lifecycle boundary."""

import hmac
from typing import Any

import structlog
from fastapi import APIRouter, Body, Depends, Header, HTTPException, Response, status

from carewatch.core.config import settings
from carewatch.modules.alerts.exceptions import (
    AlertError,
    AlertNotFound,
    AlertValidationError,
    ConcurrentModification,
    InvalidTransition,
)
from carewatch.modules.alerts.schemas import (
    AcknowledgeRequest,
    AlertDetailResponse,
    AlertResponse,
    DeliveryAttemptResponse,
    DispatchReportResponse,
    IngestResponse,
    ResolveRequest,
    TransitionResponse,
)
from carewatch.modules.alerts.service import AlertEngine, get_engine
from carewatch.shared import deps
from carewatch.shared.constants import WEBHOOK_SECRET_HEADER, Role

router = APIRouter()
log = structlog.get_logger()

allow_resend = deps.RoleChecker([Role.CAREGIVER, Role.SERVICE])


def _http_error(exc: AlertError) -> HTTPException:
    if isinstance(exc, AlertValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(exc), "errors": exc.errors},
        )
    if isinstance(exc, AlertNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    if isinstance(exc, (InvalidTransition, ConcurrentModification)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _check_webhook_secret(provided: str | None) -> None:
    expected = settings.INGEST_WEBHOOK_SECRET
    if not expected:
        return
    if not provided or not hmac.compare_digest(provided, expected):
        log.warning("alert webhook rejected", reason="bad_secret")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook secret",
        )


@router.post(
    "/events",
    status_code=status.HTTP_201_CREATED,
    response_model=IngestResponse,
    response_model_exclude_none=True,
)
async def ingest_event(
    response: Response,
    payload: dict[str, Any] = Body(...),
    webhook_secret: str | None = Header(None, alias=WEBHOOK_SECRET_HEADER),
    engine: AlertEngine = Depends(get_engine),
) -> IngestResponse:
    """
    Ingest a sensor, inactivity or manual event.

    Returns 201 with `alertId` for a new alert, or 200 with
    `deduplicatedAlertId` when the same event key was seen within the
    dedup window.
    """
    _check_webhook_secret(webhook_secret)
    try:
        result = await engine.ingestion.ingest(payload)
    except AlertError as exc:
        raise _http_error(exc) from exc

    if result.deduplicated:
        response.status_code = status.HTTP_200_OK
        return IngestResponse(deduplicated_alert_id=result.alert_id)
    return IngestResponse(alert_id=result.alert_id)


@router.get("/{alert_id}", response_model=AlertDetailResponse)
async def get_alert(
    alert_id: str,
    principal: deps.Principal = Depends(deps.get_current_principal),
    engine: AlertEngine = Depends(get_engine),
) -> AlertDetailResponse:
    try:
        alert = await engine.lifecycle.get(alert_id)
        history = await engine.lifecycle.history(alert_id)
    except AlertError as exc:
        raise _http_error(exc) from exc

    report = await engine.dispatcher.report(alert_id, escalation=alert.is_escalated)
    attempts = await engine.tracker.attempts_for(alert_id)
    return AlertDetailResponse(
        **AlertResponse.from_alert(alert).model_dump(),
        history=[TransitionResponse.from_transition(item) for item in history],
        deliveries=[DeliveryAttemptResponse.from_attempt(item) for item in attempts],
        delivery_summary=report.summary(),
    )


@router.post("/{alert_id}/acknowledge", response_model=AlertResponse)
async def acknowledge_alert(
    alert_id: str,
    body: AcknowledgeRequest | None = None,
    principal: deps.Principal = Depends(deps.get_current_principal),
    engine: AlertEngine = Depends(get_engine),
) -> AlertResponse:
    """Acknowledge an alert. Acknowledging twice is a no-op."""
    try:
        alert = await engine.lifecycle.acknowledge(
            alert_id, principal.id, note=body.note if body else None
        )
    except AlertError as exc:
        raise _http_error(exc) from exc
    return AlertResponse.from_alert(alert)


@router.post("/{alert_id}/resolve", response_model=AlertResponse)
async def resolve_alert(
    alert_id: str,
    body: ResolveRequest,
    principal: deps.Principal = Depends(deps.get_current_principal),
    engine: AlertEngine = Depends(get_engine),
) -> AlertResponse:
    """
    Resolve an alert as `confirmed` or `false_alarm`.

    An alert that is still open is acknowledged in the same step.
    """
    try:
        alert = await engine.lifecycle.resolve(alert_id, body.kind, principal.id, note=body.note)
    except AlertError as exc:
        raise _http_error(exc) from exc
    return AlertResponse.from_alert(alert)


@router.post("/{alert_id}/resend", response_model=DispatchReportResponse)
async def resend_alert(
    alert_id: str,
    principal: deps.Principal = Depends(allow_resend),
    engine: AlertEngine = Depends(get_engine),
) -> DispatchReportResponse:
    """Re-run delivery for channels that have not succeeded yet."""
    try:
        report = await engine.dispatcher.resend(alert_id)
    except AlertError as exc:
        raise _http_error(exc) from exc
    log.info("alert resend requested", alert_id=alert_id, principal=principal.id)
    return DispatchReportResponse.from_report(report)

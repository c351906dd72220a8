import hmac
import time
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import HTMLResponse
from pydantic import BaseModel

from agents.dunning.admin import AdminService, NotFoundError
from agents.dunning.sender import BrevoTransport
from agents.dunning.templates import InvalidOptOutToken
from backend.core.cache_store import get_engine
from backend.core.config import settings
from backend.core.observability.logging import hash_actor_token, logger
from backend.core.observability.metrics import record_ops_duration

router = APIRouter(prefix="/api/v1/dunning", tags=["dunning-admin"])
public_router = APIRouter(prefix="/api/public", tags=["dunning-public"])

MAX_LIMIT = 500


def get_admin_service() -> AdminService:
    return AdminService(get_engine(), transport=BrevoTransport())


def _error(status_code: int, code: str, detail: str):
    raise HTTPException(status_code=status_code, detail={"error": code, "detail": detail})


def _auth_admin(authorization: str | None = Header(None, alias="Authorization")) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        _error(
            status.HTTP_401_UNAUTHORIZED, "unauthorized", "Missing or invalid Authorization header"
        )
    token = authorization.split(" ", 1)[1].strip()
    allowed = [t.strip() for t in settings.ADMIN_TOKENS.split(",") if t.strip()]
    if not any(hmac.compare_digest(token.encode(), candidate.encode()) for candidate in allowed):
        _error(status.HTTP_403_FORBIDDEN, "forbidden", "Admin token required")
    return hash_actor_token(token)


def _audit(event: str, token_hash: str, **fields: Any) -> None:
    logger.info(event, extra={"actor_role": "admin", "actor_token_hash": token_hash, **fields})


class RunRequest(BaseModel):
    test_mode: bool = False


class CampaignUpdate(BaseModel):
    is_active: bool | None = None
    template_type: str | None = None


class TemplateUpdate(BaseModel):
    subject_template: str
    body_template: str
    template_name: str | None = None
    is_active: bool = True


class OptOutRequest(BaseModel):
    email: str
    reason: str | None = None
    scope: str = "all"


class TestEmailRequest(BaseModel):
    order_id: int
    to: str
    template_type: str | None = None


class SettingsUpdate(BaseModel):
    test_mode: bool | None = None
    test_email: str | None = None


class EmergencyStopRequest(BaseModel):
    reason: str


@router.post("/run", response_model=dict[str, Any])
def trigger_run(
    body: RunRequest | None = None,
    token_hash: str = Depends(_auth_admin),
    service: AdminService = Depends(get_admin_service),
):
    start = time.time()
    test_mode = bool(body and body.test_mode)
    summary = service.run(test_mode=test_mode)
    record_ops_duration((time.time() - start) * 1000.0, "run")
    _audit("dunning_run_triggered", token_hash, test_mode=test_mode, status=summary.status)
    return summary.to_dict()


@router.post("/sync", response_model=dict[str, Any])
def trigger_sync(
    token_hash: str = Depends(_auth_admin),
    service: AdminService = Depends(get_admin_service),
):
    start = time.time()
    result = service.sync()
    record_ops_duration((time.time() - start) * 1000.0, "sync")
    _audit("cache_sync_triggered", token_hash, status=result.get("status"))
    return result


@router.get("/stats", response_model=dict[str, Any])
def get_stats(
    days: int = Query(30, ge=1, le=365),
    _: str = Depends(_auth_admin),
    service: AdminService = Depends(get_admin_service),
):
    return service.stats(days=days)


@router.get("/campaigns")
def list_campaigns(
    _: str = Depends(_auth_admin),
    service: AdminService = Depends(get_admin_service),
) -> dict[str, Any]:
    return {"items": service.list_campaigns()}


@router.patch("/campaigns/{campaign_id}", response_model=dict[str, Any])
def update_campaign(
    campaign_id: int,
    body: CampaignUpdate,
    token_hash: str = Depends(_auth_admin),
    service: AdminService = Depends(get_admin_service),
):
    try:
        campaign = service.update_campaign(
            campaign_id, is_active=body.is_active, template_type=body.template_type
        )
    except NotFoundError as e:
        _error(status.HTTP_404_NOT_FOUND, "not_found", str(e))
    _audit("campaign_updated", token_hash, campaign_id=campaign_id)
    return campaign


@router.put("/templates/{template_type}", response_model=dict[str, Any])
def update_template(
    template_type: str,
    body: TemplateUpdate,
    token_hash: str = Depends(_auth_admin),
    service: AdminService = Depends(get_admin_service),
):
    try:
        template = service.upsert_template(
            template_type,
            subject_template=body.subject_template,
            body_template=body.body_template,
            template_name=body.template_name,
            is_active=body.is_active,
        )
    except ValueError as e:
        _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "invalid_template", str(e))
    _audit("template_updated", token_hash, template_type=template_type)
    return template


@router.get("/schedule")
def list_schedule(
    status_filter: str | None = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=MAX_LIMIT),
    _: str = Depends(_auth_admin),
    service: AdminService = Depends(get_admin_service),
) -> dict[str, Any]:
    items = service.list_schedule(status=status_filter, limit=limit)
    return {"items": items, "total": len(items)}


@router.get("/logs")
def list_logs(
    limit: int = Query(50, ge=1, le=MAX_LIMIT),
    _: str = Depends(_auth_admin),
    service: AdminService = Depends(get_admin_service),
) -> dict[str, Any]:
    items = service.list_logs(limit=limit)
    return {"items": items, "total": len(items)}


@router.get("/opt-outs")
def list_opt_outs(
    limit: int = Query(100, ge=1, le=MAX_LIMIT),
    _: str = Depends(_auth_admin),
    service: AdminService = Depends(get_admin_service),
) -> dict[str, Any]:
    return {"items": service.preferences.list_opt_outs(limit=limit)}


@router.post("/opt-outs", response_model=dict[str, Any])
def add_opt_out(
    body: OptOutRequest,
    token_hash: str = Depends(_auth_admin),
    service: AdminService = Depends(get_admin_service),
):
    try:
        preference = service.preferences.add_opt_out(body.email, reason=body.reason, scope=body.scope)
    except ValueError as e:
        _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "invalid_opt_out", str(e))
    _audit("opt_out_added", token_hash, scope=body.scope)
    return preference


@router.delete("/opt-outs", response_model=dict[str, Any])
def remove_opt_out(
    email: str = Query(...),
    token_hash: str = Depends(_auth_admin),
    service: AdminService = Depends(get_admin_service),
):
    if not service.preferences.remove_opt_out(email):
        _error(status.HTTP_404_NOT_FOUND, "not_found", "No opt-out recorded for this address")
    _audit("opt_out_removed", token_hash)
    return {"removed": True}


@router.get("/preview")
def preview(
    _: str = Depends(_auth_admin),
    service: AdminService = Depends(get_admin_service),
) -> dict[str, Any]:
    campaigns = service.preview()
    return {
        "campaigns": campaigns,
        "total_eligible": sum(c["eligible"] for c in campaigns),
        "would_schedule": sum(c["would_schedule"] for c in campaigns),
    }


@router.post("/test-email", response_model=dict[str, Any])
def send_test_email(
    body: TestEmailRequest,
    token_hash: str = Depends(_auth_admin),
    service: AdminService = Depends(get_admin_service),
):
    try:
        result = service.send_test_email(body.order_id, body.to, template_type=body.template_type)
    except NotFoundError as e:
        _error(status.HTTP_404_NOT_FOUND, "not_found", str(e))
    except ValueError as e:
        _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "invalid_request", str(e))
    _audit("test_email_sent", token_hash, order_id=body.order_id, success=result["success"])
    return result


@router.get("/settings", response_model=dict[str, Any])
def get_settings(
    _: str = Depends(_auth_admin),
    service: AdminService = Depends(get_admin_service),
):
    return service.get_settings()


@router.put("/settings", response_model=dict[str, Any])
def update_settings(
    body: SettingsUpdate,
    token_hash: str = Depends(_auth_admin),
    service: AdminService = Depends(get_admin_service),
):
    try:
        current = service.update_settings(test_mode=body.test_mode, test_email=body.test_email)
    except ValueError as e:
        _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "invalid_settings", str(e))
    _audit("automation_settings_updated", token_hash, test_mode=current["test_mode"])
    return current


@router.post("/emergency-stop", response_model=dict[str, Any])
def emergency_stop(
    body: EmergencyStopRequest,
    token_hash: str = Depends(_auth_admin),
    service: AdminService = Depends(get_admin_service),
):
    result = service.emergency_stop(body.reason)
    _audit("emergency_stop", token_hash, stopped=result["stopped"], reason=body.reason)
    return result


@router.get("/safety", response_model=dict[str, Any])
def safety_metrics(
    _: str = Depends(_auth_admin),
    service: AdminService = Depends(get_admin_service),
):
    return service.safety()


@public_router.get("/opt-out", response_class=HTMLResponse)
def public_opt_out(
    token: str = Query(...),
    service: AdminService = Depends(get_admin_service),
):
    try:
        service.opt_out_by_token(token)
    except InvalidOptOutToken as e:
        logger.warning("opt_out_token_rejected", extra={"error": str(e)})
        return HTMLResponse(
            "<html><body><h1>Link invalid or expired</h1>"
            "<p>Please contact us to update your email preferences.</p></body></html>",
            status_code=status.HTTP_400_BAD_REQUEST,
        )
    logger.info("public_opt_out_recorded")
    return HTMLResponse(
        "<html><body><h1>You have been unsubscribed</h1>"
        "<p>You will no longer receive payment reminder emails from us.</p></body></html>"
    )

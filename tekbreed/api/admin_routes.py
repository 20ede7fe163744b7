"""
Admin Routes - Monitoring and Housekeeping Endpoints

Provides admin-only endpoints for:
- System health status and detailed health checks
- Audit log statistics and recent events (sanitized)
- Maintenance tasks and cron job control
- Moderation of user reports (moderators and admins)
"""

from fastapi import APIRouter, Depends, Query, HTTPException, status
from pydantic import BaseModel, Field
from typing import Optional
from datetime import timedelta

from tekbreed.database.app_db import get_app_db
from tekbreed.database.audit_log_db import get_audit_log_storage
from tekbreed.middleware.jwt_middleware import user_id_from_claims
from tekbreed.middleware.rbac import require_admin, require_roles, require_moderator_or_above, Roles
from tekbreed.services.content_service import get_content_service
from tekbreed.services.health_service import run_health_checks, health_indicator
from tekbreed.services.log_retention import get_log_statistics, estimate_log_space_usage
from tekbreed.services.maintenance_service import run_maintenance_task, MAINTENANCE_TASKS
from tekbreed.services.scheduler import (
    get_cron_jobs, run_cron_jobs, set_cron_job_enabled, get_scheduler
)
from tekbreed.utils.errors import TekBreedError, to_http_exception

admin_router = APIRouter(prefix='/admin', tags=['admin'])

period_map = {
    "1h": timedelta(hours=1),
    "6h": timedelta(hours=6),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30)
}

HEALTH_STATUS = {
    "🟢": "All Systems Operational",
    "🟡": "Minor Issues Detected",
    "🔴": "System Issues Detected",
}


class JobToggleRequest(BaseModel):
    enabled: bool


class ResolveReportRequest(BaseModel):
    status: str = Field(..., min_length=1)
    admin_notes: Optional[str] = Field(None, max_length=2000)


@admin_router.get('/health')
async def get_health(current_user: dict = Depends(require_admin)):
    """
    Get system health status.

    Returns traffic light indicator:
    - 🟢 All Systems Operational
    - 🟡 Minor Issues Detected
    - 🔴 System Issues Detected
    """
    try:
        recent_errors = get_audit_log_storage().count_recent_errors(hours=1)
        indicator = health_indicator(recent_errors)

        try:
            get_app_db().ping()
            database_status = "connected"
        except Exception as e:
            database_status = f"error: {str(e)[:50]}"
            indicator = "🔴"

        return {
            "status": HEALTH_STATUS[indicator],
            "indicator": indicator,
            "services": {
                "database": {"status": database_status},
                "scheduler": {"status": "running" if get_scheduler().initialized else "stopped"},
            },
            "recent_errors": recent_errors
        }

    except Exception as e:
        return {
            "status": "Unable to determine status",
            "indicator": "🟡",
            "services": {"database": {"status": "unknown"}},
            "error": str(e)
        }


@admin_router.get('/health-checks')
async def get_health_checks(current_user: dict = Depends(require_admin)):
    """Database, log table and memory checks, run concurrently."""
    return await run_health_checks()


@admin_router.get('/logs/stats')
async def get_log_stats(current_user: dict = Depends(require_admin)):
    try:
        return {
            **get_log_statistics(),
            "space_usage": estimate_log_space_usage(),
        }
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error getting log stats: {str(e)}")


@admin_router.get('/events')
async def get_recent_events(
    period: str = Query("24h", description="Time period: 1h, 6h, 24h, 7d, 30d"),
    limit: int = Query(50, ge=1, le=200, description="Maximum events to return"),
    severity: Optional[str] = Query(None, description="INFO, WARNING, ERROR or CRITICAL"),
    module: Optional[str] = Query(None, description="Filter by module"),
    current_user: dict = Depends(require_admin)
):
    """
    Recent audit events for the dashboard.

    Descriptions are sanitized; metadata and actor details are not exposed.
    """
    try:
        delta = period_map.get(period, timedelta(hours=24))
        hours = int(delta.total_seconds() // 3600)
        events = get_audit_log_storage().get_recent_events(
            hours=hours, limit=limit, severity=severity, module=module
        )
        return {"events": events, "total": len(events), "period": period}

    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error getting events: {str(e)}")


# =============================================================================
# Maintenance and cron
# =============================================================================

@admin_router.post('/maintenance')
def trigger_maintenance(
    task: str = Query(..., description=f"One of: {', '.join(MAINTENANCE_TASKS)}"),
    dry_run: bool = Query(False, alias="dry-run"),
    current_user: dict = Depends(require_admin)
):
    print(f"[Admin] Maintenance '{task}' requested by {user_id_from_claims(current_user)}")
    return run_maintenance_task(task, dry_run=dry_run)


@admin_router.get('/cron/jobs')
async def list_cron_jobs(current_user: dict = Depends(require_admin)):
    jobs = [
        {"name": job.name, "schedule": job.schedule, "enabled": job.enabled, "timezone": job.timezone}
        for job in get_cron_jobs()
    ]
    scheduler = get_scheduler()
    return {
        "jobs": jobs,
        "scheduler": {
            "initialized": scheduler.initialized,
            "jobs": scheduler.get_status(),
        },
    }


@admin_router.post('/cron/run')
def run_cron_now(current_user: dict = Depends(require_admin)):
    """Run every enabled job immediately, in registry order."""
    results = run_cron_jobs()
    return {
        "results": results,
        "failed": sum(1 for result in results if result["status"] == "error"),
    }


@admin_router.patch('/cron/jobs/{name}')
async def toggle_cron_job(name: str, request: JobToggleRequest, current_user: dict = Depends(require_admin)):
    if not set_cron_job_enabled(name, request.enabled):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Cron job not found: {name}")

    return {"name": name, "enabled": request.enabled}


@admin_router.get('/scheduler')
async def get_scheduler_status(current_user: dict = Depends(require_admin)):
    scheduler = get_scheduler()
    return {"initialized": scheduler.initialized, "jobs": scheduler.get_status()}


# =============================================================================
# Moderation
# =============================================================================

@admin_router.get('/reports')
async def list_reports(
    report_status: Optional[str] = Query(None, alias="status", description="PENDING, REVIEWED, RESOLVED or DISMISSED"),
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(require_moderator_or_above)
):
    try:
        reports = get_app_db().list_reports(
            status=report_status.upper() if report_status else None,
            limit=limit
        )
        return {"reports": reports, "total": len(reports)}
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error getting reports: {str(e)}")


@admin_router.post('/reports/{report_id}/resolve')
async def resolve_report(
    report_id: str,
    request: ResolveReportRequest,
    current_user: dict = Depends(require_roles([Roles.MODERATOR]))
):
    try:
        resolver_id = user_id_from_claims(current_user)
        get_app_db().upsert_user(resolver_id, current_user.get("email"), current_user.get("name"))
        result = get_content_service().resolve_report(
            report_id,
            resolver_id,
            request.status,
            request.admin_notes
        )
        return {"success": True, **result}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error resolving report: {str(e)}")

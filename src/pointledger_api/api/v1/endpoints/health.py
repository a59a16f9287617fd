from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from pointledger_api.core.settings import settings
from pointledger_api.db.session import get_session
from pointledger_api.observability.loyalty import get_loyalty_store
from pointledger_api.observability.scheduler import get_loyalty_scheduler_store

router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error"]
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:  # noqa: BLE001
        components["database"] = ComponentStatus(status="error", detail=str(exc))
        status = "error"
    else:
        components["database"] = ComponentStatus(status="ready")

    scheduler = getattr(request.app.state, "loyalty_job_scheduler", None)
    if settings.loyalty_job_scheduler_enabled and scheduler is not None:
        running = bool(scheduler.is_running)
        failing = [
            job_id
            for job_id, job in get_loyalty_scheduler_store().snapshot()["jobs"].items()
            if job["totals"]["consecutive_failures"] > 0
        ]
        if failing:
            components["loyalty_scheduler"] = ComponentStatus(
                status="error",
                detail=f"Jobs failing: {', '.join(sorted(failing))}",
            )
            status = "error"
        elif not running:
            components["loyalty_scheduler"] = ComponentStatus(status="starting", detail="Scheduler not running")
            status = "degraded" if status == "ready" else status
        else:
            components["loyalty_scheduler"] = ComponentStatus(status="ready")
    else:
        components["loyalty_scheduler"] = ComponentStatus(
            status="disabled",
            detail="Loyalty job scheduler disabled via settings",
        )

    return ReadinessPayload(status=status, components=components)


@router.get("/observability/loyalty", summary="Loyalty workflow counters")
async def loyalty_metrics() -> dict[str, object]:
    return {
        "loyalty": get_loyalty_store().snapshot().as_dict(),
        "scheduler": get_loyalty_scheduler_store().snapshot(),
    }

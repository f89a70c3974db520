from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, status

from taskflow.api.deps import get_current_claims
from taskflow.domain.errors import AuthorizationError
from taskflow.domain.models import AccountOverdueRead, DashboardStatsRead, WorkloadRead
from taskflow.services.dashboard_service import DashboardService

router = APIRouter()


def get_dashboard_service() -> DashboardService:
    return DashboardService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[DashboardService, Depends(get_dashboard_service)]


@router.get("/overdue-rollup", response_model=list[AccountOverdueRead])
def overdue_rollup(claims: Claims, service: Service) -> list[AccountOverdueRead]:
    return service.overdue_rollup(claims["sub"])


@router.get("/workload", response_model=list[WorkloadRead])
def workload(claims: Claims, service: Service) -> list[WorkloadRead]:
    try:
        return service.workload(claims["sub"])
    except AuthorizationError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


@router.get("/stats", response_model=DashboardStatsRead)
def get_stats(claims: Claims, service: Service) -> DashboardStatsRead:
    return service.stats(claims["sub"])

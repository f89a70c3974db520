from __future__ import annotations

from fastapi import FastAPI, HTTPException

from taskflow.api.routers import dashboard, reminders, tasks
from taskflow.infra.audit import AuditMiddleware
from taskflow.infra.db import check_db_ready
from taskflow.infra.logging_setup import setup_logging
from taskflow.infra.redis_state import check_redis_ready
from taskflow.infra.settings import sequencer_backend

setup_logging()

app = FastAPI(
    title="taskflow",
    description="Task and reminder workflow engine: routing, ordering, review and overdue tracking.",
    version="0.1.0",
)

app.add_middleware(AuditMiddleware)

app.include_router(tasks.router, prefix="/api", tags=["tasks"])
app.include_router(reminders.router, prefix="/api/reminders", tags=["reminders"])
app.include_router(dashboard.router, prefix="/api/dashboard", tags=["dashboard"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    checks = {"db": "ok" if check_db_ready() else "fail"}
    # Redis only backs the sequencer; it is not a dependency otherwise.
    if sequencer_backend() == "redis":
        checks["redis"] = "ok" if check_redis_ready() else "fail"
    if any(value != "ok" for value in checks.values()):
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}

from __future__ import annotations

from fastapi import FastAPI, HTTPException

from buildboard.api.errors import register_error_handlers
from buildboard.api.routers import assignments, organization
from buildboard.infra.audit import AuditMiddleware
from buildboard.infra.db import check_db_ready
from buildboard.infra.log_config import configure_logging

configure_logging()

app = FastAPI(
    title="buildboard",
    description="Construction project management backend with context-scoped role assignments.",
    version="0.1.0",
)

app.add_middleware(AuditMiddleware)
register_error_handlers(app)

app.include_router(organization.router, prefix="/api/organization", tags=["organization"])
app.include_router(assignments.router, prefix="/api/assignments", tags=["assignments"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    checks = {"db": "ok" if db_ok else "fail"}
    if not db_ok:
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}

"""
Security Operator - Read-only Report API
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from security_operator.config import get_settings
from security_operator.database import get_db, health_check, init_db
from security_operator.exceptions import OperatorException
from security_operator.schemas import (
    HealthCheckResponse,
    ReportDetailResponse,
    ReportListResponse,
    ReportSummaryResponse,
    ScanConditionResponse,
)
from security_operator.store import ConditionRepository, ReportKey, ReportRepository

logger = logging.getLogger(__name__)


# =============================================================================
# Application Lifecycle
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Make sure the report tables exist before serving."""
    logger.info("Starting report API...")
    try:
        await init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
    yield
    logger.info("Shutting down report API...")


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="Security Operator",
    description="Vulnerability reports of the workloads running in the cluster",
    version=get_settings().app_version,
    lifespan=lifespan,
)


@app.exception_handler(OperatorException)
async def operator_exception_handler(request: Request, exc: OperatorException):
    logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=500, content=exc.to_dict())


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    start_time = datetime.now(timezone.utc)

    response = await call_next(request)

    duration = (datetime.now(timezone.utc) - start_time).total_seconds()
    logger.info(
        f"{request.method} {request.url.path} "
        f"status={response.status_code} "
        f"duration={duration:.3f}s "
        f"request_id={request_id}"
    )

    response.headers["X-Request-ID"] = request_id
    return response


# =============================================================================
# Health Checks
# =============================================================================

@app.get("/health", response_model=HealthCheckResponse)
async def health():
    return HealthCheckResponse(status="healthy", version=get_settings().app_version)


@app.get("/health/live")
async def liveness():
    """Kubernetes liveness probe."""
    return {"status": "alive"}


@app.get("/health/ready", response_model=HealthCheckResponse)
async def readiness():
    """Kubernetes readiness probe: the report store must answer."""
    db = await health_check()
    if db["status"] != "healthy":
        return JSONResponse(
            status_code=503,
            content=HealthCheckResponse(
                status="unavailable",
                version=get_settings().app_version,
                database=db,
            ).model_dump(mode="json"),
        )
    return HealthCheckResponse(status="ready", version=get_settings().app_version, database=db)


# =============================================================================
# Report Endpoints
# =============================================================================

@app.get("/api/v1/reports", response_model=ReportListResponse)
async def list_reports(
    namespace: str | None = None,
    vulnerable_only: bool = False,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=500),
    session: AsyncSession = Depends(get_db),
):
    """List current reports, without findings."""
    reports, total = await ReportRepository(session).list_reports(
        namespace=namespace,
        page=page,
        page_size=page_size,
        vulnerable_only=vulnerable_only,
    )
    return ReportListResponse(
        items=[ReportSummaryResponse.model_validate(r) for r in reports],
        total=total,
    )


@app.get("/api/v1/reports/{namespace}/{workload}", response_model=ReportListResponse)
async def workload_reports(
    namespace: str,
    workload: str,
    session: AsyncSession = Depends(get_db),
):
    """Reports of every container of one workload."""
    reports, total = await ReportRepository(session).list_reports(
        namespace=namespace,
        workload_name=workload,
    )
    if not total:
        raise HTTPException(status_code=404, detail="No reports for this workload")
    return ReportListResponse(
        items=[ReportSummaryResponse.model_validate(r) for r in reports],
        total=total,
    )


@app.get(
    "/api/v1/reports/{namespace}/{workload}/{container}",
    response_model=ReportDetailResponse,
)
async def container_report(
    namespace: str,
    workload: str,
    container: str,
    session: AsyncSession = Depends(get_db),
):
    """Full report of one container, findings included."""
    report = await ReportRepository(session).get(ReportKey(namespace, workload, container))
    if report is None:
        raise HTTPException(status_code=404, detail="Report not found")
    return ReportDetailResponse.model_validate(report)


@app.get("/api/v1/conditions", response_model=list[ScanConditionResponse])
async def list_conditions(
    namespace: str | None = None,
    terminal_only: bool = False,
    session: AsyncSession = Depends(get_db),
):
    """Targets whose latest scans failed."""
    conditions = await ConditionRepository(session).list_conditions(namespace, terminal_only)
    return [ScanConditionResponse.model_validate(c) for c in conditions]

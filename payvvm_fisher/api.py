"""
PayVVM Fisher API - HTTP intake and query surface for the submission pool.

Provides REST endpoints for:
- Submitting signed authorizations (POST /fishing/submit, /fishing/submit-disperse,
  /fishing/submit-claim, /fishing/submit-mate-claim)
- Inspecting pool records (GET /fishing/records, GET /fishing/records/{id})
- External confirmation of a record (PATCH /fishing/records/{id})
- Health checks (GET /health)

The API never executes anything: it only writes to the pool. Relay workers
(`payvvm-fisher run`) pick records up from there.
"""

import asyncio
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from . import __version__
from .auth import verify_api_token
from .config import Settings, get_settings
from .db import IllegalTransition, PoolError, RecordNotFound, SubmissionPool
from .evm import EvmClient
from .intake import MalformedAuthorization, parse_claim, parse_disperse, parse_pay
from .models import Authorization, FaucetKind, OperationKind
from .schemas import (
    ConfirmRequest,
    ErrorResponse,
    HealthResponse,
    RecordListResponse,
    RecordResponse,
    SubmitResponse,
)

# Configure logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

logger = structlog.get_logger()


# Chain client for health checks (initialized at startup)
_evm_client: Optional[EvmClient] = None


@lru_cache
def get_pool() -> SubmissionPool:
    """Get the shared submission pool."""
    return SubmissionPool(get_settings().database_url)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    global _evm_client

    settings = get_settings()

    try:
        _evm_client = EvmClient.from_settings(settings)
    except ValueError as e:
        logger.error("evm_client_unavailable", error=str(e))
        _evm_client = None

    logger.info(
        "api_started",
        version=__version__,
        host=settings.host,
        port=settings.port,
        evm_rpc=settings.rpc_url,
        auth_enabled=bool(settings.api_token),
    )

    yield

    logger.info("api_stopped")


app = FastAPI(
    title="PayVVM Fisher API",
    description="Intake and query surface for signed PayVVM authorizations",
    version=__version__,
    lifespan=lifespan,
)


_settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MalformedAuthorization)
async def malformed_authorization_handler(
    request: Request, exc: MalformedAuthorization
) -> JSONResponse:
    logger.info("submission_rejected", path=request.url.path, detail=exc.detail)
    return JSONResponse(
        status_code=400,
        content={"error": exc.reason, "detail": exc.detail},
    )


# ============================================================================
# Health Check
# ============================================================================


@app.get("/health", response_model=HealthResponse)
def health_check(
    settings: Settings = Depends(get_settings),
    pool: SubmissionPool = Depends(get_pool),
) -> HealthResponse:
    """
    Check API health.

    Returns pool record counts and whether an RPC endpoint answers.
    """
    evm_ok = _evm_client.is_reachable() if _evm_client else False

    db_ok = True
    try:
        records = pool.count_by_status()
    except SQLAlchemyError as e:
        logger.error("pool_unavailable", error=str(e))
        db_ok = False
        records = {}

    return HealthResponse(
        status="ok" if (evm_ok and db_ok) else "degraded",
        version=__version__,
        evm_rpc=evm_ok,
        records=records,
        contracts={
            "evvm": settings.evvm_address,
            "staking": settings.staking_address,
            "pyusd_faucet": settings.pyusd_faucet_address,
            "mate_faucet": settings.mate_faucet_address,
        },
    )


# ============================================================================
# Intake
# ============================================================================


async def _read_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as e:
        raise MalformedAuthorization(f"request body is not valid JSON: {e}") from e


async def _submit(auth: Authorization, pool: SubmissionPool) -> SubmitResponse:
    try:
        result = await asyncio.to_thread(pool.insert, auth)
    except PoolError as e:
        logger.error("submission_store_failed", sender=auth.sender, error=str(e))
        raise HTTPException(status_code=503, detail=str(e))

    if not result.created:
        logger.info("submission_duplicate", record_id=result.record_id)

    return SubmitResponse(
        success=True,
        id=result.record_id,
        status=result.status.value,
        created=result.created,
    )


@app.post(
    "/fishing/submit",
    response_model=SubmitResponse,
    responses={400: {"model": ErrorResponse}},
)
async def submit_pay(
    request: Request,
    pool: SubmissionPool = Depends(get_pool),
) -> SubmitResponse:
    """Queue a signed single transfer."""
    auth = parse_pay(await _read_body(request))
    return await _submit(auth, pool)


@app.post(
    "/fishing/submit-disperse",
    response_model=SubmitResponse,
    responses={400: {"model": ErrorResponse}},
)
async def submit_disperse(
    request: Request,
    pool: SubmissionPool = Depends(get_pool),
) -> SubmitResponse:
    """Queue a signed batch transfer."""
    auth = parse_disperse(await _read_body(request))
    return await _submit(auth, pool)


@app.post(
    "/fishing/submit-claim",
    response_model=SubmitResponse,
    responses={400: {"model": ErrorResponse}},
)
async def submit_pyusd_claim(
    request: Request,
    pool: SubmissionPool = Depends(get_pool),
) -> SubmitResponse:
    """Queue a signed PYUSD faucet claim."""
    auth = parse_claim(await _read_body(request), FaucetKind.PYUSD)
    return await _submit(auth, pool)


@app.post(
    "/fishing/submit-mate-claim",
    response_model=SubmitResponse,
    responses={400: {"model": ErrorResponse}},
)
async def submit_mate_claim(
    request: Request,
    pool: SubmissionPool = Depends(get_pool),
) -> SubmitResponse:
    """Queue a signed MATE faucet claim."""
    auth = parse_claim(await _read_body(request), FaucetKind.MATE)
    return await _submit(auth, pool)


# ============================================================================
# Records
# ============================================================================


@app.get("/fishing/records", response_model=RecordListResponse)
def list_records(
    pending: bool = Query(False, description="Only pending records, oldest first"),
    limit: int = Query(50, ge=1, le=500),
    operation: Optional[OperationKind] = Query(None),
    pool: SubmissionPool = Depends(get_pool),
) -> RecordListResponse:
    """List pool records."""
    records = pool.list_records(pending_only=pending, limit=limit, operation=operation)
    return RecordListResponse(
        records=[RecordResponse.from_record(r) for r in records],
        count=len(records),
    )


@app.get("/fishing/records/{record_id}", response_model=RecordResponse)
def get_record(
    record_id: str,
    pool: SubmissionPool = Depends(get_pool),
) -> RecordResponse:
    record = pool.get(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Record not found: {record_id}")
    return RecordResponse.from_record(record)


@app.patch(
    "/fishing/records/{record_id}",
    response_model=RecordResponse,
    dependencies=[Depends(verify_api_token)],
)
def confirm_record(
    record_id: str,
    request: ConfirmRequest,
    pool: SubmissionPool = Depends(get_pool),
) -> RecordResponse:
    """
    Mark a record executed with a transaction hash observed outside the relay.

    Executed records and failures other than confirmation_timeout are final
    and answer 409.
    """
    try:
        pool.mark_confirmed(record_id, request.tx_hash)
    except RecordNotFound:
        raise HTTPException(status_code=404, detail=f"Record not found: {record_id}")
    except IllegalTransition as e:
        raise HTTPException(status_code=409, detail=str(e))

    record = pool.get(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Record not found: {record_id}")
    return RecordResponse.from_record(record)

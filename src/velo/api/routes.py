"""REST API for the Velo relayer.

Endpoints:
    GET  /health          - liveness and relayer address
    GET  /info            - fee schedule, supported pools, program id
    POST /estimate-fee    - fee quote for one pool
    GET  /pools           - liquidity and accumulator position per pool
    POST /relay           - relay either kind of request, selected by "kind"
    POST /relay/withdraw  - relay a withdrawal to a static recipient
    POST /relay/stealth   - relay a withdrawal to a stealth address

Every failure is returned as {"success": false, "error": ..., "code": ...}.
"""

import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import TypeAdapter, ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from velo import __version__
from velo.config import VeloSettings, get_settings
from velo.crypto.keys import Keypair
from velo.exceptions import (
    ArtifactMissing,
    CeremonyError,
    InsufficientPoolLiquidity,
    NullifierAlreadySpent,
    ProofGenerationError,
    RelayerUnavailable,
    SpendInProgress,
    StaleRoot,
    StorageError,
    VeloError,
)
from velo.ledger.memory import bootstrap_ledger
from velo.models.schemas import (
    FeeEstimateRequest,
    FeeEstimateResponse,
    HealthResponse,
    PoolsResponse,
    RelayerInfoResponse,
    RelayFailure,
    RelayRequest,
    RelayStealthRequest,
    RelaySuccess,
    RelayWithdrawRequest,
)
from velo.relayer.service import RelayerService
from velo.security.auth import verify_relay_token
from velo.storage.database import get_db_manager

logger = logging.getLogger(__name__)

CONFLICT_ERRORS = (NullifierAlreadySpent, SpendInProgress, InsufficientPoolLiquidity, StaleRoot)
SERVER_ERRORS = (ArtifactMissing, CeremonyError, ProofGenerationError, StorageError)

relay_request_adapter = TypeAdapter(RelayRequest)


def status_for(exc: VeloError) -> int:
    """HTTP status for a domain error."""
    if isinstance(exc, RelayerUnavailable):
        return 503
    if isinstance(exc, CONFLICT_ERRORS):
        return 409
    if isinstance(exc, SERVER_ERRORS):
        return 500
    return 400


def failure_response(status_code: int, error: str, code: str, retryable: bool = False) -> JSONResponse:
    body = RelayFailure(error=error, code=code, retryable=retryable)
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True))


def build_default_service(settings: VeloSettings) -> RelayerService:
    """
    Relayer backed by an in-memory ledger with every pool initialized.

    Used by `velo serve` and when the app is created without a service.
    """
    if settings.relayer_keypair_path is not None:
        keypair = Keypair.from_json_file(settings.relayer_keypair_path)
    else:
        keypair = Keypair.generate()

    verifier = None
    if settings.relay_mode == "proof":
        from velo.proving.pipeline import ProofPipeline
        verifier = ProofPipeline.from_settings(settings).verify

    ledger = bootstrap_ledger(
        keypair,
        program_id=settings.program_id,
        verifier=verifier,
        depth=settings.merkle_depth,
        root_history_size=settings.root_history_size,
    )
    db = get_db_manager(settings.database_url)
    return RelayerService.from_settings(settings, ledger, keypair=keypair, db=db)


def create_app(service: Optional[RelayerService] = None,
               settings: Optional[VeloSettings] = None) -> FastAPI:
    """
    Build the relayer application.

    Args:
        service: Relayer to serve; built from settings on first use when omitted
        settings: Defaults to get_settings()
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Velo Relayer API",
        description="Relays fixed-denomination privacy pool withdrawals",
        version=__version__,
    )
    app.state.settings = settings
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert validation errors (422) to 400 Bad Request."""
        error_messages = []
        for error in exc.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            error_messages.append(f"{field}: {error['msg']}")
        return failure_response(400, "; ".join(error_messages), "ValidationError")

    @app.exception_handler(VeloError)
    async def velo_exception_handler(request: Request, exc: VeloError):
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error(f"{request.url.path} failed: {exc}", exc_info=True)
        else:
            logger.info(f"{request.url.path} rejected ({type(exc).__name__}): {exc}")
        return failure_response(status_code, str(exc), type(exc).__name__, exc.retryable)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return failure_response(exc.status_code, str(exc.detail), "HTTPError")

    @app.exception_handler(Exception)
    async def unexpected_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unexpected error on {request.url.path}: {exc}", exc_info=True)
        return failure_response(500, "Internal relayer error", "InternalError")

    # Dependencies
    def get_service(request: Request) -> RelayerService:
        if request.app.state.service is None:
            request.app.state.service = build_default_service(request.app.state.settings)
        return request.app.state.service

    async def require_relay_auth(request: Request, authorization: Optional[str] = Header(None)):
        """Bearer token check, active only when VELO_REQUIRE_AUTH is set."""
        current = request.app.state.settings
        if not current.require_auth:
            return None
        if not authorization or not authorization.startswith("Bearer "):
            raise StarletteHTTPException(status_code=401, detail="Missing bearer token")
        payload = verify_relay_token(authorization[7:], current.jwt_secret)
        if payload is None:
            raise StarletteHTTPException(status_code=401, detail="Invalid or expired token")
        return payload

    # ========================================================================
    # System Endpoints
    # ========================================================================

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check(service: RelayerService = Depends(get_service)):
        """Check service health and status."""
        return HealthResponse(status="ok", relayer=service.address, version=__version__)

    @app.get("/info", response_model=RelayerInfoResponse, tags=["System"])
    async def relayer_info(service: RelayerService = Depends(get_service)):
        """Relayer address, fee schedule and supported pools."""
        return await run_in_threadpool(service.info)

    @app.post("/estimate-fee", response_model=FeeEstimateResponse, tags=["Fees"])
    async def estimate_fee(request: FeeEstimateRequest, service: RelayerService = Depends(get_service)):
        """
        Quote the relayer fee for one withdrawal.

        - **poolSize**: SMALL, MEDIUM or LARGE
        """
        return service.estimate_fee(request.pool_size)

    @app.get("/pools", response_model=PoolsResponse, tags=["Pools"])
    async def pools(service: RelayerService = Depends(get_service)):
        """Liquidity and accumulator state of every pool."""
        statuses = await run_in_threadpool(service.pools_status)
        return PoolsResponse(pools=statuses)

    # ========================================================================
    # Relay Endpoints
    # ========================================================================

    @app.post("/relay", response_model=RelaySuccess, response_model_exclude_none=True, tags=["Relay"])
    async def relay(
        request: Request,
        service: RelayerService = Depends(get_service),
        _auth=Depends(require_relay_auth),
    ):
        """
        Relay a withdrawal of either kind.

        - **kind**: "withdraw" (needs **recipient**) or "stealth" (needs **recipientStealthMeta**)
        """
        try:
            body = relay_request_adapter.validate_python(await request.json())
        except ValidationError as e:
            raise RequestValidationError(e.errors()) from e
        except ValueError as e:
            raise RequestValidationError([{"loc": ("body",), "msg": f"Invalid JSON: {e}"}]) from e
        return await run_in_threadpool(service.handle, body)

    @app.post("/relay/withdraw", response_model=RelaySuccess, response_model_exclude_none=True,
              tags=["Relay"])
    async def relay_withdraw(
        request: RelayWithdrawRequest,
        service: RelayerService = Depends(get_service),
        _auth=Depends(require_relay_auth),
    ):
        """
        Relay a withdrawal of one note to a static recipient.

        - **noteCommitment**: commitment (64 char hex)
        - **nullifier**, **secret**: note opening (base58)
        - **recipient**: recipient address (base58)
        - **poolSize**: SMALL, MEDIUM or LARGE
        - **proof**: optional client proof with its public signals
        """
        return await run_in_threadpool(service.handle, request)

    @app.post("/relay/stealth", response_model=RelaySuccess, response_model_exclude_none=True,
              tags=["Relay"])
    async def relay_stealth(
        request: RelayStealthRequest,
        service: RelayerService = Depends(get_service),
        _auth=Depends(require_relay_auth),
    ):
        """
        Relay a withdrawal of one note to a fresh stealth address.

        The response carries **stealthAddress**, **ephemeralPublicKey** and
        **viewTag** for the recipient to scan with.
        """
        return await run_in_threadpool(service.handle, request)

    return app

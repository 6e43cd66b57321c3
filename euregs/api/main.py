"""
FastAPI application for the EU regulations store.
Provides search, article lookup, control mapping and applicability endpoints.
"""
import logging
import logging.config
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from euregs import __version__
from euregs.config.settings import Settings, get_log_config, settings as default_settings
from euregs.database.adapter import DatabaseAdapter
from euregs.database.connection import create_adapter
from euregs.errors import (
    BackendConnectionError,
    BackendError,
    BackendUnavailable,
    NotFound,
    QueryTimeout,
    RegulationsError,
    ValidationError,
)
from euregs.middleware.rate_limit import RateLimitCleanup, RateLimiter
from euregs.models.regulation import Recital
from euregs.models.responses import (
    ApplicabilityResult,
    ArticleDetail,
    CompareResult,
    ControlMappingResult,
    DefinitionsResult,
    EvidenceResult,
    HealthStatus,
    RegulationList,
    SearchResponse,
    Statistics,
)
from euregs.services.regulations import RegulationsService

# Configure logging
logging.config.dictConfig(get_log_config())
logger = logging.getLogger(__name__)


class CompareRequest(BaseModel):
    topic: str
    regulations: List[str] = Field(default_factory=list)


class ApplicabilityRequest(BaseModel):
    sector: str
    subsector: Optional[str] = None
    size: Optional[str] = None
    member_state: Optional[str] = None


def error_envelope(message: str, code: str, details: Optional[dict] = None) -> dict:
    return {
        "success": False,
        "error": {"code": code, "message": message, "details": details},
    }


def status_for(exc: RegulationsError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, QueryTimeout):
        return 504
    if isinstance(exc, (BackendUnavailable, BackendConnectionError)):
        return 503
    return 500


async def regulations_exception_handler(request: Request, exc: RegulationsError):
    """Map the error taxonomy to HTTP; backend details never reach the client."""
    status_code = status_for(exc)
    if isinstance(exc, BackendError):
        logger.warning(f"Backend error on {request.url.path}: {exc.condition}")
        content = error_envelope(
            "The regulations database could not complete the request",
            code=exc.condition,
            details={"retryable": exc.retryable},
        )
    elif isinstance(exc, NotFound):
        content = error_envelope(exc.message, code=exc.condition, details=exc.identifiers)
    else:
        details = {"field": exc.field} if isinstance(exc, ValidationError) and exc.field else None
        content = error_envelope(exc.message, code=exc.condition, details=details)
    return JSONResponse(status_code=status_code, content=content)


def client_key(request: Request) -> str:
    """Verified tenant when present, else the first forwarded address, else the peer.

    The tenant is read only from ``request.state.tenant_id``, which an upstream
    authentication layer sets after verifying the caller. Request headers never
    name the tenant.
    """
    tenant = getattr(request.state, "tenant_id", None)
    if tenant:
        return f"tenant:{tenant}"
    forwarded = request.headers.get("cf-connecting-ip", "").strip()
    if not forwarded:
        forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    if forwarded:
        return f"ip:{forwarded}"
    host = request.client.host if request.client else "unknown"
    return f"ip:{host}"


async def enforce_rate_limit(request: Request, response: Response) -> None:
    limiter: RateLimiter = request.app.state.limiter
    info = limiter.check(client_key(request))
    headers = {
        "X-RateLimit-Limit": str(info.limit),
        "X-RateLimit-Remaining": str(info.remaining),
        "X-RateLimit-Reset": str(int(info.reset_at)),
    }
    if not info.allowed:
        headers["Retry-After"] = str(info.retry_after())
        raise HTTPException(status_code=429, detail="Too many requests", headers=headers)
    response.headers.update(headers)


def get_service(request: Request) -> RegulationsService:
    return request.app.state.service


def split_list(value: Optional[str]) -> Optional[List[str]]:
    if value is None:
        return None
    items = [item.strip() for item in value.split(",") if item.strip()]
    return items or None


def create_app(adapter: Optional[DatabaseAdapter] = None, config: Optional[Settings] = None) -> FastAPI:
    """Build the application; the adapter is opened and closed by the lifespan."""
    config = config or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan management."""
        logger.info("Starting EU Regulations API")
        db = adapter or create_adapter(config)
        await db.connect()
        app.state.adapter = db
        app.state.service = RegulationsService(
            db,
            max_limit=config.search_max_limit,
            max_compare=config.compare_max_regulations,
        )
        app.state.limiter = RateLimiter(
            config.rate_limit_max_requests, config.rate_limit_window_seconds
        )
        cleanup = RateLimitCleanup(app.state.limiter, config.rate_limit_cleanup_interval_seconds)
        cleanup.start()
        logger.info(f"Backend ready: {db.kind.value}")

        yield

        logger.info("Shutting down EU Regulations API")
        cleanup.stop()
        await db.close()

    app = FastAPI(
        title="EU Regulations API",
        description="Search and cross-reference EU regulatory texts",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.add_exception_handler(RegulationsError, regulations_exception_handler)

    @app.get("/")
    async def root():
        return {
            "message": "EU Regulations API is running!",
            "status": "healthy",
            "environment": config.env,
            "version": __version__,
        }

    @app.get("/health", response_model=HealthStatus)
    async def health_check(service: RegulationsService = Depends(get_service)):
        """Backend kind, connectivity and pool occupancy."""
        health = await service.health()
        if health.status != "healthy":
            return JSONResponse(status_code=503, content=health.model_dump())
        return health

    api = [Depends(enforce_rate_limit)]

    @app.get("/api/about", response_model=Statistics, dependencies=api)
    async def about(service: RegulationsService = Depends(get_service)):
        return await service.get_statistics()

    @app.get("/api/regulations", response_model=RegulationList, dependencies=api)
    async def list_regulations(service: RegulationsService = Depends(get_service)):
        return await service.list_regulations()

    @app.get("/api/regulations/{regulation}", response_model=RegulationList, dependencies=api)
    async def get_regulation(regulation: str, service: RegulationsService = Depends(get_service)):
        return await service.list_regulations(regulation)

    @app.get(
        "/api/regulations/{regulation}/articles/{article}",
        response_model=ArticleDetail,
        dependencies=api,
    )
    async def get_article(
        regulation: str,
        article: str,
        include_recitals: bool = False,
        service: RegulationsService = Depends(get_service),
    ):
        return await service.get_article(regulation, article, include_recitals=include_recitals)

    @app.get(
        "/api/regulations/{regulation}/recitals/{recital_number}",
        response_model=Recital,
        dependencies=api,
    )
    async def get_recital(
        regulation: str,
        recital_number: int,
        service: RegulationsService = Depends(get_service),
    ):
        return await service.get_recital(regulation, recital_number)

    @app.get("/api/search", response_model=SearchResponse, dependencies=api)
    async def search(
        query: str,
        regulations: Optional[str] = None,
        limit: int = 10,
        service: RegulationsService = Depends(get_service),
    ):
        return await service.search_regulations(query, split_list(regulations), limit)

    @app.get("/api/definitions", response_model=DefinitionsResult, dependencies=api)
    async def definitions(
        term: str,
        regulation: Optional[str] = None,
        service: RegulationsService = Depends(get_service),
    ):
        return await service.get_definitions(term, regulation)

    @app.post("/api/compare", response_model=CompareResult, dependencies=api)
    async def compare(body: CompareRequest, service: RegulationsService = Depends(get_service)):
        return await service.compare_requirements(body.topic, body.regulations)

    @app.get("/api/controls/{framework}", response_model=ControlMappingResult, dependencies=api)
    async def controls(
        framework: str,
        control: Optional[str] = None,
        regulation: Optional[str] = None,
        service: RegulationsService = Depends(get_service),
    ):
        return await service.map_controls(framework, control, regulation)

    @app.post("/api/applicability", response_model=ApplicabilityResult, dependencies=api)
    async def applicability(body: ApplicabilityRequest, service: RegulationsService = Depends(get_service)):
        return await service.check_applicability(
            body.sector, body.subsector, body.size, body.member_state
        )

    @app.get("/api/evidence", response_model=EvidenceResult, dependencies=api)
    async def evidence(
        regulation: Optional[str] = None,
        article: Optional[str] = None,
        evidence_type: Optional[str] = None,
        service: RegulationsService = Depends(get_service),
    ):
        return await service.get_evidence_requirements(regulation, article, evidence_type)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("euregs.api.main:app", host="0.0.0.0", port=default_settings.port)

from fastapi import FastAPI, HTTPException, Request, Depends, Path
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from typing import List, Union
import logging
import structlog
import time
from contextlib import asynccontextmanager

from models import (
    ErrorResponse,
    HealthResponse,
    PointError,
    PointErrorKind,
    PointHistory,
    PointRequest,
    PointResult,
    PointSuccess,
    UserPoint,
)
from services import PointService, get_point_service
from repositories import get_user_point_repository, get_point_history_repository
from locks import get_lock_registry
from config import Settings, get_settings


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

    if settings.log_format == "text":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


settings = get_settings()
configure_logging(settings)

logger = structlog.get_logger()

# Rate limiting
limiter = Limiter(key_func=get_remote_address)


def point_rate_limit() -> str:
    return f"{get_settings().rate_limit_per_minute}/minute"


# Business error kind -> (HTTP status, extra headers)
ERROR_STATUS = {
    PointErrorKind.INVALID_AMOUNT: (400, None),
    PointErrorKind.BALANCE_CEILING_EXCEEDED: (409, None),
    PointErrorKind.INSUFFICIENT_BALANCE: (409, None),
    PointErrorKind.LOCK_TIMEOUT: (503, {"Retry-After": "1"}),
    PointErrorKind.STORE_FAILURE: (500, None),
}


class PointHTTPException(HTTPException):
    def __init__(self, error: PointError):
        status_code, headers = ERROR_STATUS[error.kind]
        super().__init__(status_code=status_code, detail=error.detail, headers=headers)
        self.error_code = error.kind.value


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Point API", version=settings.app_version)
    yield
    # Shutdown
    logger.info("Shutting down Point API")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Per-user point balances with serialized charge and use",
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=settings.allowed_methods,
    allow_headers=settings.allowed_headers,
)


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

    process_time = time.time() - start_time
    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time=round(process_time, 4)
    )

    return response


# Dependency injection
def get_service(
    user_point_repo=Depends(get_user_point_repository),
    point_history_repo=Depends(get_point_history_repository),
    lock_registry=Depends(get_lock_registry),
    settings: Settings = Depends(get_settings),
) -> PointService:
    return get_point_service(
        user_point_repo, point_history_repo, lock_registry, settings.point_policy()
    )


def unwrap(result: Union[PointResult, UserPoint, List[PointHistory]]):
    if isinstance(result, PointError):
        raise PointHTTPException(result)
    if isinstance(result, PointSuccess):
        return result.point
    return result


# Health check endpoint
@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health and get store statistics"
)
async def health_check(
    user_point_repo=Depends(get_user_point_repository),
    point_history_repo=Depends(get_point_history_repository),
    lock_registry=Depends(get_lock_registry),
):
    try:
        users_count = await user_point_repo.get_users_count()
        histories_count = await point_history_repo.get_histories_count()

        return HealthResponse(
            status="healthy",
            users_count=users_count,
            histories_count=histories_count,
            active_locks=len(lock_registry),
        )
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        raise HTTPException(
            status_code=500,
            detail="Health check failed"
        )


@app.get(
    "/point/{user_id}",
    response_model=UserPoint,
    summary="Get Point",
    description="Current point balance of a user"
)
async def get_point(
    user_id: int = Path(..., ge=0),
    service: PointService = Depends(get_service)
):
    result = await service.get_balance(user_id)
    return unwrap(result)


@app.get(
    "/point/{user_id}/histories",
    response_model=List[PointHistory],
    summary="Get Point Histories",
    description="Charge and use records of a user, oldest first"
)
async def get_histories(
    user_id: int = Path(..., ge=0),
    service: PointService = Depends(get_service)
):
    result = await service.get_history(user_id)
    return unwrap(result)


@app.patch(
    "/point/{user_id}/charge",
    response_model=UserPoint,
    summary="Charge Point",
    responses={
        400: {"description": "Amount outside the charge band"},
        409: {"description": "Balance ceiling exceeded"},
        429: {"description": "Rate limit exceeded"},
        503: {"description": "Concurrent requests for the user, retry"},
    }
)
@limiter.limit(point_rate_limit)
async def charge_point(
    request: Request,
    point_request: PointRequest,
    user_id: int = Path(..., ge=0),
    service: PointService = Depends(get_service)
):
    result = await service.charge(user_id, point_request.amount)
    return unwrap(result)


@app.patch(
    "/point/{user_id}/use",
    response_model=UserPoint,
    summary="Use Point",
    responses={
        400: {"description": "Amount outside the use band"},
        409: {"description": "Insufficient balance"},
        429: {"description": "Rate limit exceeded"},
        503: {"description": "Concurrent requests for the user, retry"},
    }
)
@limiter.limit(point_rate_limit)
async def use_point(
    request: Request,
    point_request: PointRequest,
    user_id: int = Path(..., ge=0),
    service: PointService = Depends(get_service)
):
    result = await service.use(user_id, point_request.amount)
    return unwrap(result)


# Global exception handler
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    error_code = getattr(exc, "error_code", f"HTTP_{exc.status_code}")
    logger.warning(
        "Request failed",
        url=str(request.url),
        status_code=exc.status_code,
        error_code=error_code,
        detail=exc.detail,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            detail=exc.detail,
            error_code=error_code
        ).model_dump(mode="json"),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=exc
    )

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            detail="Internal server error",
            error_code="INTERNAL_ERROR"
        ).model_dump(mode="json")
    )


# Root endpoint
@app.get("/", include_in_schema=False)
async def root():
    return {"message": settings.app_name, "docs": "/docs"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hrm8.core.config import settings
from hrm8.core.errors import EngineError
import hrm8.models  # noqa: F401  # force model registration

from hrm8.api.v1.auth import router as auth_router
from hrm8.api.v1.leads import router as leads_router
from hrm8.api.v1.conversion_requests import router as conversion_requests_router
from hrm8.api.v1.companies import router as companies_router
from hrm8.api.v1.revenue_events import router as revenue_events_router
from hrm8.api.v1.commissions import router as commissions_router
from hrm8.api.v1.withdrawals import router as withdrawals_router
from hrm8.api.v1.settlements import router as settlements_router
from hrm8.api.v1.regions import router as regions_router
from hrm8.api.v1.audit_logs import router as audit_logs_router

logger = logging.getLogger(__name__)


def create_application() -> FastAPI:
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = FastAPI(title="HRM8 API")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            # Local development (Vite frontend)
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            # Production domains
            "https://app.hrm8.com",
            "https://api.hrm8.com",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        else:
            logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})

    @app.get("/")
    def root():
        return {"status": "ok", "service": "hrm8"}

    # Routers
    app.include_router(auth_router, prefix="/api/v1")
    app.include_router(leads_router, prefix="/api/v1")
    app.include_router(conversion_requests_router, prefix="/api/v1")
    app.include_router(companies_router, prefix="/api/v1")
    app.include_router(revenue_events_router, prefix="/api/v1")
    app.include_router(commissions_router, prefix="/api/v1")
    app.include_router(withdrawals_router, prefix="/api/v1")
    app.include_router(settlements_router, prefix="/api/v1")
    app.include_router(regions_router, prefix="/api/v1")
    app.include_router(audit_logs_router, prefix="/api/v1")

    return app


app = create_application()

from __future__ import annotations

import logging

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import files, health, projects, qa, search
from .config import get_settings
from .services.errors import ServiceException, http_status_for_error
from .telemetry import setup_telemetry


def configure_logging(level: int = logging.INFO) -> None:
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
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", level=level)


configure_logging()
logger = structlog.get_logger()

settings = get_settings()
setup_telemetry(settings)
app = FastAPI(title=settings.app_name, version=settings.app_version)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:8080"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ServiceException)
async def service_exception_handler(request: Request, exc: ServiceException) -> JSONResponse:
    status_code = http_status_for_error(exc)
    logger.warning(
        "service_error",
        path=request.url.path,
        status_code=status_code,
        code=exc.error.code,
        component=exc.error.component.value,
    )
    return JSONResponse(status_code=status_code, content={"detail": exc.error.to_dict()})


app.include_router(health.router)
app.include_router(search.router, prefix="/api", tags=["Search"])
app.include_router(qa.router, prefix="/api", tags=["Question Answering"])
app.include_router(projects.router, prefix="/api", tags=["Projects"])
app.include_router(files.router, prefix="/api", tags=["Files"])

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.v1.class_hierarchy.router import router as class_hierarchy_router
from app.api.v1.classes.classes_router import router as classes_router
from app.api.v1.promotions.router import router as promotions_router
from app.api.v1.pupils.router import router as pupils_router
from app.api.v1.results.router import router as results_router
from app.core.config import settings
from app.core.exceptions import ExecutionError, ServiceError
from app.db.schema_check import ensure_tables
from app.db.session import engine

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    await ensure_tables(engine)
    yield


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    body = {"success": False, "error": exc.message}
    if isinstance(exc, ExecutionError):
        # Partial progress is reported with the snapshot needed to reconcile it, never as success.
        body.update(
            snapshot_id=exc.snapshot_id,
            failed_chunk=exc.failed_chunk,
            operations_completed=exc.operations_completed,
        )
        logger.error("Execution failed: %s (snapshot %s)", exc.message, exc.snapshot_id)
    return JSONResponse(status_code=exc.status_code, content=body)


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": str(exc.detail)})


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"success": False, "error": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "error": "Internal server error"},
    )


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="School Records Workflow", lifespan=lifespan)

    # CORS: allow the admin and teacher portals to call this API
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # Routers
    app.include_router(classes_router)
    app.include_router(pupils_router)
    app.include_router(class_hierarchy_router)
    app.include_router(results_router)
    app.include_router(promotions_router)

    return app


app = create_app()

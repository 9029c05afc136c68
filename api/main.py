import sys
import time
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request

from api.shared.dtos import ErrorResponse
from core.logging_config import configure_logging
from core.settings import SETTINGS
from di.container import ApplicationContainer as DependencyContainer

configure_logging()

logger = structlog.get_logger("rag")


class CustomFastAPI(FastAPI):
    container: DependencyContainer


def uses_database() -> bool:
    return SETTINGS.RAG.INDEX_BACKEND == "pgvector" or SETTINGS.RAG.LEDGER_BACKEND == "postgres"


@asynccontextmanager
async def lifespan(_app: CustomFastAPI):
    logger.info("Starting application initialization...")
    start_time = time.time()

    try:
        if uses_database():
            logger.info("Initializing database connection...")
            db_start = time.time()
            db_resource = _app.container.infrastructure.database()
            await db_resource.init()
            await db_resource.ping()
            logger.info(
                "Database connection established",
                elapsed_s=round(time.time() - db_start, 2),
            )
        else:
            logger.info("Running with in-memory ledger and index")

        logger.info(
            "Application startup completed",
            elapsed_s=round(time.time() - start_time, 2),
            rag_mode=SETTINGS.RAG.RAG_MODE,
        )
    except Exception as e:
        logger.exception("Failed to initialize application", error=str(e))
        raise

    yield

    try:
        if uses_database():
            await _app.container.infrastructure.database().shutdown()
        logger.info("Application shutdown complete")
    except Exception as e:
        logger.exception("Error during shutdown", error=str(e))


def create_fastapi_app() -> CustomFastAPI:
    origins = {
        "*",
        "http://localhost",
        "http://localhost:*",
        "http://localhost:3000",
        "http://localhost:8000",
    }

    _app = CustomFastAPI(
        title="Grounded Chat API",
        description="Retrieval-grounded question answering with streamed responses",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Initialize dependency container
    _app.container = DependencyContainer()
    _app.container.wire(modules=[sys.modules[__name__]])

    # Add CORS middleware
    _app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include feature routers
    from api.features.chat.router import router as chat_router

    _app.include_router(chat_router, prefix="/api/v1/chat", tags=["Chat"])

    return _app


app = create_fastapi_app()


# Health check endpoints
@app.get("/")
async def root():
    return {"message": "Grounded Chat API is running", "status": "ok"}


@app.get("/health")
async def health():
    return {"status": "ok"}


# Exception handlers
@app.exception_handler(404)
async def not_found_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=404,
        content=ErrorResponse(
            error="Not Found", detail=f"{exc.detail} : {request.url}", status_code=404
        ).model_dump(),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error="Validation Error", detail=str(exc), status_code=422
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception", error=str(exc))
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error="Internal Server Error",
            detail="An unexpected error occurred",
            status_code=500,
        ).model_dump(),
    )

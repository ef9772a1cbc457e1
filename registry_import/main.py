"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from registry_import.api.imports import router as imports_router
from registry_import.config import get_settings
from registry_import.database import Base, engine
from registry_import import models  # noqa: F401 - Import to register models

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()],
)

# Set specific log levels for noisy libraries
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create database tables on startup."""
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(
    title="Shareholder Registry Importer",
    description="Resumable bulk import of shareholder-registry CSV/XLSX files",
    version="0.1.0",
    lifespan=lifespan,
)

# Configure CORS; preflight requests to the queue trigger are answered here
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)

app.include_router(imports_router)


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    """Faults outside job-level error handling."""
    logger.error(f"💥 Unhandled error on {request.url.path}: {exc}", exc_info=exc)
    # ServerErrorMiddleware sits outside CORSMiddleware
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": str(exc) or "Unknown error"},
        headers={"Access-Control-Allow-Origin": "*"},
    )


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}

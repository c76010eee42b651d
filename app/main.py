"""
Wasmforge API - Main Application
HTTP front end for reproducible contract builds and bytecode verification.
"""
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from contract_builder import __version__  # type: ignore
from contract_builder.config import get_settings  # type: ignore
from app.routers import contracts

_log = logging.getLogger(__name__)

settings = get_settings()


# =============================================================================
# Lifespan Event Handler
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Prepare the build workspace root and log the tool configuration."""
    workspace = Path(settings.workspace_root)
    workspace.mkdir(parents=True, exist_ok=True)
    _log.info(
        "wasmforge %s: cargo=%s rustc=%s converter=%s workspace=%s",
        __version__, settings.cargo_bin, settings.rustc_bin,
        settings.rwasm_converter, workspace,
    )
    yield
    _log.info("wasmforge API shutting down")


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title=settings.api_title,
    description="Build Rust contracts to WASM/rWASM and verify deployed bytecode against source",
    version=settings.api_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies: 422 with the pydantic error list."""
    body = await request.body()
    _log.warning(
        "422 on %s %s  body[:200]=%s  errors=%s",
        request.method, request.url.path, body[:200], exc.errors()[:3],
    )
    return JSONResponse(status_code=422, content={"detail": exc.errors()})


# =============================================================================
# Service endpoints
# =============================================================================

@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "service": "wasmforge-api",
        "version": settings.api_version,
        "pipeline": __version__,
    }


@app.get("/")
async def root():
    return {
        "message": "Wasmforge API - contract build and verification",
        "docs": "/docs",
        "health": "/health",
        "endpoints": [
            "POST /contracts/compile",
            "POST /contracts/verify",
            "GET /contracts/networks",
        ],
    }


app.include_router(contracts.router, prefix="/contracts", tags=["contracts"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host=settings.api_host, port=settings.api_port)

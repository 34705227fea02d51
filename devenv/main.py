from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from .config import resolve_allowed_origins
from .core.errors import DevenvError
from . import database
from .schemas import ErrorResponse
from .routers import environments, projects, proxy, settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await database.init_db()
    yield
    # Shutdown
    await database.engine.dispose()


app = FastAPI(
    title="devenv",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/api/docs",
    openapi_url="/api/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=resolve_allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DevenvError)
async def devenv_error_handler(request: Request, exc: DevenvError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=ErrorResponse(error=exc.message).model_dump())


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}" for error in exc.errors()
    )
    return JSONResponse(status_code=400, content=ErrorResponse(error=details or "Invalid request").model_dump())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("%s %s failed", request.method, request.url.path)
    return JSONResponse(status_code=500, content=ErrorResponse(error=str(exc) or exc.__class__.__name__).model_dump())


@app.get("/api/health")
def read_health():
    return {"status": "ok"}


app.include_router(projects.router, prefix="/api")
app.include_router(environments.router, prefix="/api")
app.include_router(proxy.router, prefix="/api")
app.include_router(settings.router, prefix="/api")

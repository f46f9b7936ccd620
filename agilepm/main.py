from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from agilepm.core import config
from agilepm.core.database.engine import AsyncSessionLocal, init_db
from agilepm.core.exceptions import RbacError, http_exception_for
from agilepm.features.ai.service import AiSettingsService
from agilepm.utils import get_logger


log = get_logger(__name__)
log.info("Initializing server")
app = FastAPI(
    title="AgilePM Access Control",
    description="Role and permission resolution for the project-management API",
    version="0.1.0",
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)


class LogTimings(TimingClient):
    def timing(self, metric_name, timing, tags):
        log.debug(dict(route=metric_name.removeprefix("main.agilepm.features."), timing=timing, tags=tags))


app.add_middleware(TimingMiddleware, client=LogTimings(), metric_namer=StarletteScopeToName("main", app))

if config.ENABLE_DOCS:
    log.warning("Docs enabled")
if config.ALLOW_ORIGIN:
    log.warning("Setting allow origin to %s", config.ALLOW_ORIGIN)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[config.ALLOW_ORIGIN],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_request: Request, exc: RequestValidationError):
    errors = dict()
    for error in exc.errors():
        if "loc" not in error or "msg" not in error:
            continue
        errors[error["loc"][-1]] = error["msg"]
    log.info("Request validation error %s", errors)
    return JSONResponse(status_code=400, content=jsonable_encoder(errors))


@app.exception_handler(RbacError)
async def rbac_exception_handler(_request: Request, exc: RbacError):
    http_exc = http_exception_for(exc)
    if http_exc.status_code >= 500:
        log.error("Unhandled access-control error: %s", exc.message)
    return JSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail})


@app.on_event("startup")
async def startup():
    """Create tables and seed the AI defaults."""
    log.info("Initializing database...")
    await init_db()
    async with AsyncSessionLocal() as session:
        await AiSettingsService(session).init_defaults()
    log.info("Database initialized successfully")


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}

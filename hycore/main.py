import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from .config import settings
from .errors import WorldError
from .logger import logger
from .routers import console, health, streams, worlds
from .routers.utils import envelope
from .worlds import WorldSupervisor


def create_app(supervisor: WorldSupervisor | None = None) -> FastAPI:
    """
    Build the API app.

    Without a supervisor one is built from settings at startup, and worlds the
    backends still host are registered again.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting up hycore...")
        owned = supervisor is None
        app.state.supervisor = supervisor or WorldSupervisor.from_settings(settings)
        if owned:
            found = await app.state.supervisor.rebuild()
            logger.info(f"Startup complete, {found} world(s) discovered.")
        yield
        logger.info("Shutting down...")
        await app.state.supervisor.shutdown()

    app = FastAPI(lifespan=lifespan, title="Hycore")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(streams.router)
    app.include_router(worlds.router)
    app.include_router(console.router)

    _add_exception_handlers(app)
    return app


def _add_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(WorldError)
    async def world_error_handler(request: Request, exc: WorldError) -> JSONResponse:
        content = envelope(message=str(exc), success=False)
        content["code"] = exc.code
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = exc.errors()
        missing = [
            str(error["loc"][-1]) for error in errors if error.get("type") == "missing"
        ]
        if missing:
            content = envelope(message="Missing required fields", success=False)
            content["missingFields"] = missing
        else:
            error = errors[0] if errors else {}
            field = error.get("loc", ("request",))[-1]
            content = envelope(
                message=f"Invalid {field}: {error.get('msg', 'invalid value')}",
                success=False,
            )
        return JSONResponse(status_code=400, content=content)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(
            status_code=400, content=envelope(message=str(exc), success=False)
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        message = exc.detail
        if exc.status_code == 404 and message == "Not Found":
            message = f"Route {request.method} {request.url.path} not found"
        return JSONResponse(
            status_code=exc.status_code,
            content=envelope(message=message, success=False),
        )

    @app.exception_handler(Exception)
    async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            f"{request.method} {request.url.path} - {exc}",
            exc_info=(type(exc), exc, exc.__traceback__),
        )
        content = envelope(message=str(exc) or "Internal Server Error", success=False)
        if not settings.is_production:
            content["stack"] = "".join(
                traceback.format_exception(type(exc), exc, exc.__traceback__)
            )
        return JSONResponse(status_code=500, content=content)


app = create_app()

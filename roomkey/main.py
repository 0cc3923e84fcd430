from __future__ import annotations

import re
from contextlib import asynccontextmanager
from time import perf_counter
from typing import AsyncIterator, Awaitable, Callable, Optional
from uuid import uuid4

from fastapi import FastAPI, Request, Response

from roomkey.config import DEFAULT_APP_KEY, get_settings
from roomkey.logger import configure_logging, get_logger, mask_secret
from roomkey.routes import invitations, join, rooms, sessions, system

settings = get_settings()
configure_logging(settings.log_level, settings.log_file)
logger = get_logger("api")

# Path segments after these prefixes carry credentials.
_CREDENTIAL_PATH = re.compile(r"^/(join|enter|invite|rooms)/([^/]+)")


def _loggable_path(path: str) -> str:
    return _CREDENTIAL_PATH.sub(lambda m: f"/{m.group(1)}/{mask_secret(m.group(2))}", path)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("app.startup", "Starting app", env=settings.app_env, version=settings.app_version)
    if settings.app_env.strip().lower() not in {"prod", "production"}:
        if settings.app_key == DEFAULT_APP_KEY:
            logger.warning(
                "security.defaults",
                "APP_KEY is using a default placeholder; set a unique secret before production",
            )
        if not settings.cookie_secure:
            logger.warning(
                "security.cookies",
                "COOKIE_SECURE is disabled; enable it when serving over HTTPS",
            )
    yield
    logger.info("app.shutdown", "Shutting down app")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)


@app.middleware("http")
async def request_logging(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    request_id = request.headers.get("x-request-id") or str(uuid4())
    client: Optional[str] = None
    if request.client:
        client = request.client.host
    path = _loggable_path(request.url.path)

    start = perf_counter()
    with logger.context(request_id=request_id):
        logger.info("request.start", "Started", method=request.method, path=path, client=client)
        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (perf_counter() - start) * 1000
            logger.exception(
                "request.error",
                "Failed",
                method=request.method,
                path=path,
                duration_ms=round(duration_ms, 1),
                error_type=type(exc).__name__,
            )
            raise

        duration_ms = (perf_counter() - start) * 1000
        logger.info(
            "request.complete",
            "Completed",
            method=request.method,
            path=path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 1),
        )

    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(system.router)
app.include_router(rooms.router)
app.include_router(join.router)
app.include_router(invitations.router)
app.include_router(sessions.router)

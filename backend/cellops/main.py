import logging
import time

import sentry_sdk
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sentry_sdk.integrations.fastapi import FastApiIntegration
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from . import notify  # noqa: F401  registers the after-commit dispatch hooks
from .config import settings
from .logging_config import bind_log_context, clear_log_context, configure_logging
from .metrics import REQUEST_COUNT, REQUEST_LATENCY
from .routes import cultures, deviations, processes, tasks, templates

configure_logging(settings.ENVIRONMENT, settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

if settings.SENTRY_DSN:
    sentry_sdk.init(dsn=settings.SENTRY_DSN, integrations=[FastApiIntegration()])

app = FastAPI(title=f"{settings.PROJECT_NAME} API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

limiter = Limiter(key_func=get_remote_address, default_limits=["120/minute"])
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, lambda r, e: Response("Too Many Requests", status_code=429))
if not settings.testing:
    app.add_middleware(SlowAPIMiddleware)


@app.middleware("http")
async def record_metrics(request: Request, call_next):
    clear_log_context()
    bind_log_context(request=f"{request.method} {request.url.path}")
    start = time.time()
    response = await call_next(request)
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    REQUEST_COUNT.labels(request.method, endpoint).inc()
    REQUEST_LATENCY.labels(endpoint).observe(time.time() - start)
    return response


@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(templates.router)
app.include_router(processes.router)
app.include_router(cultures.router)
app.include_router(deviations.router)
app.include_router(tasks.router)


def audit_routes():
    from fastapi.routing import APIRoute
    from .auth import get_current_user

    for route in app.routes:
        if isinstance(route, APIRoute) and route.path.startswith("/api"):
            calls = [dep.call for dep in route.dependant.dependencies]
            if get_current_user not in calls:
                raise RuntimeError(f"Route {route.path} missing authentication")


audit_routes()
logger.info("%s API ready (%s)", settings.PROJECT_NAME, settings.ENVIRONMENT)

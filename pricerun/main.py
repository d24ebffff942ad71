from sqlalchemy import text

from pricerun.core.observability import (
    http_exception_handler,
    pipeline_exception_handler,
    request_logging_middleware,
    setup_observability,
    unhandled_exception_handler,
    validation_exception_handler,
)
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from pricerun.core.config import settings
from pricerun.core.errors import PipelineError
from pricerun.db.session import engine
from pricerun.routers import outbox, rules, runs
from pricerun.services.channel_connector import build_channel_registry
from pricerun.workers.rules_worker import RuleRunWorker

app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description=(
        "Pricing rule run pipeline.\n\n"
        "Quick flow:\n"
        "1. `POST /rules` with a selector and transform.\n"
        "2. `POST /rules/{id}/materialize` to preview target prices.\n"
        "3. `POST /runs/{id}/queue`, then let the worker (or `POST /outbox/run`) apply them.\n"
        "4. `POST /runs/{id}/reconcile` to compare with live channel prices.\n\n"
        "Every request needs `X-Tenant-Id` and `X-Project-Id` headers."
    ),
    swagger_ui_parameters={
        "displayRequestDuration": True,
        "defaultModelsExpandDepth": 1,
    },
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "rules", "description": "Pricing rules and materialization into preview runs."},
        {"name": "runs", "description": "Run lifecycle: queue, progress, retry, cancel, rollback, reconcile."},
        {"name": "outbox", "description": "Inline processing of due outbox events."},
    ],
)

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(PipelineError, pipeline_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.state.channels = build_channel_registry()
app.state.worker = RuleRunWorker(channels=app.state.channels, worker_id="api-inline")

cors_origins = settings.cors_origins or ["http://localhost:3000"]
allow_all_origins = "*" in cors_origins
env_value = settings.env.lower().strip()
allow_origin_regex = settings.cors_origin_regex

if (
    not allow_origin_regex
    and env_value in {"dev", "development", "staging", "stage"}
):
    allow_origin_regex = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if allow_all_origins else cors_origins,
    allow_origin_regex=allow_origin_regex,
    allow_credentials=not allow_all_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rules.router)
app.include_router(runs.router)
app.include_router(outbox.router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready",
    }


@app.get("/health", tags=["health"])
def health():
    return {"ok": True}


@app.get("/ready", tags=["health"])
def ready():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        return {"ok": False}
    return {"ok": True}

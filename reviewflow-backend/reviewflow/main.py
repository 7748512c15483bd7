import logging
import threading
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from reviewflow.campaign_worker import start_in_thread
from reviewflow.core.config import settings
from reviewflow.core.observability import install_observability, log_event
from reviewflow.db.session import engine
from reviewflow.routers import auth, business, campaigns, customers, feedback, review_requests, webhooks

logger = logging.getLogger("reviewflow.api")

LOCAL_ORIGIN_REGEX = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"
NON_PROD_ENVS = {"dev", "development", "staging", "stage"}

API_DESCRIPTION = """\
Collects customer reviews for service businesses.

1. `POST /auth/register` creates an owner and their business.
2. `PUT /business/review-settings` sets the public platforms and the rating threshold.
3. `POST /customers`, then `POST /review-requests` to send the first ask.
4. `POST /campaigns/executions` to follow up until the customer rates.

The gate link in every message (`/feedback/{customer_id}`) sends happy customers to a
public platform and everyone else to private feedback.
"""

OPENAPI_TAGS = [
    {"name": "health", "description": "Liveness and database readiness."},
    {"name": "auth", "description": "Owner registration and bearer tokens."},
    {"name": "business", "description": "Review platform links and the rating threshold."},
    {"name": "customers", "description": "Customer profiles and channel consent."},
    {"name": "review-requests", "description": "Sending review requests and their delivery status."},
    {"name": "campaigns", "description": "Follow-up sequences and per-request campaign executions."},
    {"name": "feedback", "description": "Public rating gate and private feedback."},
    {"name": "webhooks", "description": "Provider delivery events and inbound SMS."},
]


@asynccontextmanager
async def lifespan(_app: FastAPI):
    stop_event = threading.Event()
    worker = start_in_thread(stop_event) if settings.campaign_worker_enabled else None
    yield
    stop_event.set()
    if worker is not None:
        worker.join(timeout=5)


def _cors_options() -> dict:
    origins = settings.cors_origins or ["http://localhost:3000"]
    wildcard = "*" in origins
    origin_regex = settings.cors_origin_regex
    if origin_regex is None and settings.env.strip().lower() in NON_PROD_ENVS:
        origin_regex = LOCAL_ORIGIN_REGEX
    return {
        "allow_origins": ["*"] if wildcard else origins,
        "allow_origin_regex": origin_regex,
        # Browsers reject credentials with a wildcard origin.
        "allow_credentials": not wildcard,
        "allow_methods": ["*"],
        "allow_headers": ["*"],
    }


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description=API_DESCRIPTION,
    openapi_tags=OPENAPI_TAGS,
    lifespan=lifespan,
    swagger_ui_parameters={"persistAuthorization": True, "displayRequestDuration": True},
)
install_observability(app)
app.add_middleware(CORSMiddleware, **_cors_options())

for module in (auth, business, customers, review_requests, campaigns, feedback, webhooks):
    app.include_router(module.router)


@app.get("/", tags=["health"])
def root():
    return {"app": settings.app_name, "docs": "/docs", "health": "/health", "ready": "/ready"}


@app.get("/health", tags=["health"])
def health():
    return {"ok": True}


@app.get("/ready", tags=["health"])
def ready():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        log_event(logger, "readiness_failed", level=logging.WARNING, error=str(exc))
        return {"ok": False}
    return {"ok": True}

"""Payment Verification & Settlement API.

Weekly cash-back batches are created per business, scored for fraud, and
handed to the business to verify before a deadline. Sessions nobody finishes
are auto-approved or expired by the deadline sweep.

Run with:
    python3 -m uvicorn settlement.main:app --host 0.0.0.0 --port 8000
"""

import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from settlement.audit import AuditRecorder
from settlement.config import settings
from settlement.errors import SettlementError
from settlement.fraud.advisory import HttpAdvisoryClient
from settlement.fraud.engine import FraudScorer
from settlement.models import VerificationConfig
from settlement.notifications import NotificationDispatcher, OutboxSender
from settlement.observability.logging import setup_logging
from settlement.routes import audit, batches, businesses, fraud, items, rules, sessions, sweep
from settlement.storage.files import FileStore
from settlement.storage.memory import MemoryStore
from settlement.workflow.batches import BatchManager
from settlement.workflow.sessions import SessionWorkflow
from settlement.workflow.sweep import DeadlineSweeper

logger = structlog.get_logger(__name__)


def load_config() -> VerificationConfig:
    """Load tunable thresholds from RULES_CONFIG_PATH, or use defaults."""
    if settings.RULES_CONFIG_PATH:
        path = Path(settings.RULES_CONFIG_PATH)
        if path.exists():
            with open(path, "r") as f:
                return VerificationConfig(**json.load(f))
        logger.warning("rules_config_missing", path=str(path))
    return VerificationConfig()


def build_state(app: FastAPI, config: VerificationConfig) -> None:
    """Wire the store, workflow components and scorer onto app state."""
    store = MemoryStore()
    files = FileStore()
    recorder = AuditRecorder(store)
    outbox = OutboxSender()
    notifier = NotificationDispatcher(outbox, recorder)

    advisory = None
    if settings.ADVISORY_ENABLED:
        advisory = HttpAdvisoryClient(
            api_url=settings.ADVISORY_API_URL,
            api_key=settings.ADVISORY_API_KEY,
            model=settings.ADVISORY_MODEL,
            timeout=settings.ADVISORY_TIMEOUT_SECONDS,
        )
    scorer = FraudScorer(
        store,
        config,
        advisory=advisory,
        cache_ttl_seconds=settings.ASSESSMENT_CACHE_TTL_SECONDS,
    )
    workflow = SessionWorkflow(store, files, recorder, config)
    manager = BatchManager(store, files, recorder, scorer, notifier, config)
    sweeper = DeadlineSweeper(store, workflow, notifier, recorder, config)

    for business_id in filter(None, (b.strip() for b in settings.SEED_BUSINESSES.split(","))):
        store.register_business(business_id)

    app.state.store = store
    app.state.files = files
    app.state.audit = recorder
    app.state.outbox = outbox
    app.state.notifier = notifier
    app.state.advisory = advisory
    app.state.scorer = scorer
    app.state.workflow = workflow
    app.state.manager = manager
    app.state.sweeper = sweeper
    app.state.config = config


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    setup_logging()
    build_state(app, load_config())
    logger.info("service_started", version=settings.APP_VERSION, advisory=settings.ADVISORY_ENABLED)

    yield

    if app.state.advisory is not None:
        app.state.advisory.close()


app = FastAPI(
    title="Payment Verification & Settlement API",
    description=(
        "Weekly cash-back batch verification: fraud scoring, business "
        "review by CSV or per transaction, deadline-driven auto-approval "
        "and a full audit trail."
    ),
    version=settings.APP_VERSION,
    lifespan=lifespan,
)


@app.exception_handler(SettlementError)
async def settlement_error_handler(request: Request, exc: SettlementError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Mount all API routers
app.include_router(businesses.router)
app.include_router(batches.router)
app.include_router(sessions.router)
app.include_router(items.router)
app.include_router(sweep.router)
app.include_router(fraud.router)
app.include_router(rules.router)
app.include_router(audit.router)


@app.get("/health")
async def health_check() -> Dict[str, str]:
    """Simple health check endpoint."""
    return {"status": "healthy"}

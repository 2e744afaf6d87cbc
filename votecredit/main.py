import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import accounts, elections, payments, system
from .config import get_settings
from .core.database import Database
from .core.errors import register_exception_handlers
from .core.logging import configure_logging
from .services.elections import ensure_pricing_plans

logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(title="VoteCredit - election credit ledger")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)


@app.on_event("startup")
def startup() -> None:
    configure_logging(settings.log_level, json_output=settings.log_json)
    database = Database.from_settings(settings)
    # In dev we make sure tables exist. Alembic migrations should be used for real schema evolution.
    database.create_all()
    with database.session() as session:
        ensure_pricing_plans(session)
    app.state.database = database
    logger.info("Credit sources in priority order: %s", ", ".join(settings.credit_source_priority))


@app.on_event("shutdown")
def shutdown() -> None:
    database = getattr(app.state, "database", None)
    if database is not None:
        database.dispose()


app.include_router(accounts.router, prefix="/accounts", tags=["accounts"])
app.include_router(elections.router, prefix="/elections", tags=["elections"])
app.include_router(payments.router, prefix="/payments", tags=["payments"])
app.include_router(system.router, prefix="/system", tags=["system"])

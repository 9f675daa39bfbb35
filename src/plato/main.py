from dotenv import load_dotenv
load_dotenv()

from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from plato.api.routes.invitations import router as invitations_router
from plato.db.database import SessionLocal, create_db_and_tables
from plato.logging_config import configure_logging
from plato.services.pending_invitation_store import PendingInvitationStore
from plato.services.query_cache import QueryCacheRegistry
from plato.tracing import configure_tracing

# ------------------------------------------------------------------
# Configure Observability
# ------------------------------------------------------------------
configure_logging()
configure_tracing()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    create_db_and_tables()
    with SessionLocal() as db:
        PendingInvitationStore(db).purge_expired()
    yield


app = FastAPI(title="Plato Hiring Invitations", lifespan=lifespan)
app.state.query_caches = QueryCacheRegistry()

app.include_router(invitations_router)

# ------------------------------------------------------------------
# Observability
# ------------------------------------------------------------------
FastAPIInstrumentor.instrument_app(app)
Instrumentator().instrument(app).expose(app)

# ------------------------------------------------------------------
# Health Check
# ------------------------------------------------------------------
@app.get("/health")
def health_check():
    return {"status": "ok"}

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from atendimento.ai.openai_provider import build_llm_provider
from atendimento.ai.service import AssistantAI
from atendimento.core.config import ENV
from atendimento.core.database import Base, SessionLocal, engine
from atendimento.core.logging_setup import configure_logging
import atendimento.models  # garante que os models são importados antes do create_all
from atendimento.orders.saipos_provider import SaiposClient
from atendimento.orders.service import OrderProviderService
from atendimento.routers.admin_agent import router as admin_agent_router
from atendimento.routers.internal_metrics import router as internal_metrics_router
from atendimento.routers.simulator import router as simulator_router
from atendimento.routers.webhook import router as webhook_router
from atendimento.services.assistant import OrderAssistant
from atendimento.services.company_data import CachedCatalogSource, SaiposCatalogSource
from atendimento.services.snapshot_store import DebouncedSnapshotWriter, SqlAlchemySnapshotBackend, hydrate
from atendimento.services.tenants import AgentSettingsRegistry, TenantDirectory

configure_logging()

logger = logging.getLogger(__name__)


def build_assistant() -> OrderAssistant:
    settings = AgentSettingsRegistry()
    saipos_client = SaiposClient()
    return OrderAssistant(
        settings=settings,
        tenants=TenantDirectory(settings),
        ai=AssistantAI(llm=build_llm_provider()),
        providers=OrderProviderService(saipos_client=saipos_client),
        catalog_source=CachedCatalogSource(SaiposCatalogSource(saipos_client)),
    )


def _startup_tasks(app: FastAPI) -> None:
    try:
        Base.metadata.create_all(bind=engine)
        assistant = build_assistant()
        backend = SqlAlchemySnapshotBackend(SessionLocal)
        loaded = assistant.load_state(hydrate(backend))
        assistant.snapshots = DebouncedSnapshotWriter(backend, assistant.export_state)
        app.state.assistant = assistant
        logger.info("Startup concluído (env=%s, conversas restauradas=%s)", ENV, loaded)
    except Exception:
        logger.exception("Falha no startup")
        raise


@asynccontextmanager
async def lifespan(app: FastAPI):
    _startup_tasks(app)
    yield
    assistant = getattr(app.state, "assistant", None)
    if assistant is not None:
        await assistant.shutdown()


app = FastAPI(
    title="Atendimento WhatsApp",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Routers
app.include_router(webhook_router)
app.include_router(simulator_router)
app.include_router(admin_agent_router)
app.include_router(internal_metrics_router)


@app.get("/")
def root():
    return {"status": "ok"}


@app.get("/health")
def health():
    return {"status": "healthy"}

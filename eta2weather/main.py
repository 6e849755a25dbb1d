from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .core.config import settings
from .core.log import configure_logging

from .api.routes import router as api_router
import eta2weather.api.routes as routes_module

from .drivers.eta_client import EtaClient
from .drivers.ecowitt_client import EcowittClient
from .domain.controller import ModeController
from .services.orchestrator import Orchestrator
from .storage.config_file import JsonConfigProvider
from .storage.partitioned_repo import TimeSeriesStore


logger = logging.getLogger(__name__)


# --- Singletons ---
store = TimeSeriesStore(settings.data_dir)
config_provider = JsonConfigProvider(settings.config_path)
controller = ModeController()
orchestrator: Orchestrator | None = None


def build_orchestrator() -> Orchestrator:
    eta = EtaClient(
        host="localhost",  # replaced with s_eta once the config is loaded
        timeout=settings.http_timeout_seconds,
        chunk_delay=settings.fetch_chunk_delay_seconds,
    )
    weather = EcowittClient(
        server=settings.ecowitt_server,
        application_key=settings.ecowitt_application_key,
        api_key=settings.ecowitt_api_key,
        mac=settings.ecowitt_mac,
        timeout=settings.http_timeout_seconds,
    )
    return Orchestrator(
        eta=eta,
        weather=weather,
        store=store,
        config_provider=config_provider,
        controller=controller,
    )


def get_orchestrator() -> Orchestrator:
    assert orchestrator is not None
    return orchestrator


def get_store() -> TimeSeriesStore:
    return store


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info("Starting %s (config=%s, data=%s)", settings.app_name, settings.config_path, settings.data_dir)

    global orchestrator
    orchestrator = build_orchestrator()
    await orchestrator.start()

    try:
        yield
    finally:
        if orchestrator:
            await orchestrator.stop()
        logger.info("Shutdown complete")


app = FastAPI(title=settings.app_name, lifespan=lifespan)

# Make the dependency functions in routes resolve to the real ones
app.dependency_overrides[routes_module.get_orchestrator] = get_orchestrator
app.dependency_overrides[routes_module.get_store] = get_store

app.include_router(api_router, prefix="/api")

"""
Application wiring.

Run with:
    vota-server                       # uses HOST / PORT from the environment
    uvicorn vota.main:app --reload
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional, Union

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import Settings
from .cost_tracker import CostTracker
from .errors import ConfigurationError
from .faces import FaceStudio
from .fallback import FallbackSelector
from .lora import LoraTrainer
from .metrics import ProviderMetrics
from .notifications import EmailNotifier
from .pipeline.orchestrator import PipelineOrchestrator
from .pipeline.routes import admin_router, debug_router, upload_router, user_router, video_router
from .pipeline.store import JobStore, build_store
from .pipeline.tasks import TaskRunner
from .replicate import ReplicateClient
from .simulated import SimulatedProvider

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: JobStore
    ledger: CostTracker
    metrics: ProviderMetrics
    provider: Union[ReplicateClient, SimulatedProvider]
    notifier: EmailNotifier
    tasks: TaskRunner
    orchestrator: PipelineOrchestrator
    lora: Optional[LoraTrainer] = None


def configure_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_services(
    settings: Settings,
    store: Optional[JobStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Services:
    """
    Construct every component from `settings`.

    Raises ConfigurationError when REPLICATE_API_TOKEN is missing and providers
    are not simulated. A missing FAL_KEY only disables LoRA personalisation.
    """
    store = store or build_store(settings)
    ledger = CostTracker(store)
    metrics = ProviderMetrics()

    if settings.simulate_providers:
        logger.warning("SIMULATE_PROVIDERS is on: no external AI calls will be made")
        provider = SimulatedProvider(settings)
    else:
        provider = ReplicateClient(settings, ledger, metrics, transport=transport)

    lora = None
    try:
        lora = LoraTrainer(settings, ledger, metrics, transport=transport)
    except ConfigurationError as e:
        logger.warning(f"LoRA personalisation disabled: {e}")

    notifier = EmailNotifier(settings, transport=transport)
    tasks = TaskRunner(retries=settings.background_task_retries)
    orchestrator = PipelineOrchestrator(
        store=store,
        provider=provider,
        faces=FaceStudio(provider, settings),
        fallback=FallbackSelector(provider),
        notifier=notifier,
        settings=settings,
        tasks=tasks,
        ledger=ledger,
        lora=lora,
    )
    return Services(
        settings=settings,
        store=store,
        ledger=ledger,
        metrics=metrics,
        provider=provider,
        notifier=notifier,
        tasks=tasks,
        orchestrator=orchestrator,
        lora=lora,
    )


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the FastAPI app. Without `services`, they are built from the environment at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "services", None) is None:
            settings = Settings.from_env()
            configure_logging(settings.log_level)
            app.state.services = build_services(settings)
        logger.info("VOTA API starting up...")
        yield
        logger.info("VOTA API shutting down, waiting for background tasks...")
        await app.state.services.tasks.drain()

    app = FastAPI(title="VOTA", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"message": "Invalid input data", "errors": jsonable_encoder(exc.errors())},
        )

    @app.get("/health")
    def health_check():
        """Verify the API is running and report which integrations are configured."""
        settings = app.state.services.settings
        return {
            "status": "ok",
            "simulate_providers": settings.simulate_providers,
            "replicate_token_set": bool(settings.replicate_api_token),
            "fal_key_set": bool(settings.fal_key),
            "sendgrid_configured": bool(settings.sendgrid_api_key),
            "storage_backend": settings.storage_backend,
        }

    @app.get("/metrics")
    def metrics_endpoint():
        """Return a snapshot of provider metrics."""
        snapshot = app.state.services.metrics.snapshot()
        snapshot["background_tasks"] = app.state.services.tasks.pending
        return snapshot

    for router in (upload_router, video_router, user_router, admin_router, debug_router):
        app.include_router(router)

    return app


app = create_app()


def main():
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run("vota.main:app", host=settings.host, port=settings.port)

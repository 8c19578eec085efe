"""FastAPI 应用工厂 + lifespan。"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from toolsight.cache import ResultCache
from toolsight.config import Settings, load_settings
from toolsight.errors import ErrorKind, build_error_record, classify
from toolsight.maintenance import MaintenanceScheduler
from toolsight.models import AnalyzeRequest
from toolsight.pipeline.orchestrator import AnalysisOrchestrator
from toolsight.providers import create_provider
from toolsight.quota import QuotaTracker
from toolsight.training_log import TrainingLog

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """启动/关闭生命周期管理。"""
    settings: Settings = app.state.settings

    # 1. 日志
    logging.basicConfig(
        level=getattr(logging, settings.server.log_level),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    # 2. 有状态服务
    quota = QuotaTracker(settings.quota.daily_limit)
    cache = ResultCache(settings.cache.capacity)
    training_log = TrainingLog(settings.training_log.capacity, settings.training_log.path)
    training_log.load()

    # 3. Provider
    provider = create_provider(settings.provider)
    await provider.start()

    # 4. Orchestrator
    orchestrator = AnalysisOrchestrator(
        provider,
        quota,
        cache,
        training_log,
        max_payload_bytes=settings.analysis.max_payload_bytes,
        low_confidence_threshold=settings.analysis.low_confidence_threshold,
    )

    # 5. 维护任务
    maintenance = MaintenanceScheduler(settings.training_log, quota, training_log)
    await maintenance.start()

    # Store on app state
    app.state.provider = provider
    app.state.orchestrator = orchestrator
    app.state.maintenance = maintenance

    logger.info(
        "toolsight ready: provider=%s (%s), api key %s, daily limit %d",
        provider.name,
        provider.style.value,
        "set" if provider.has_api_key else "MISSING",
        settings.quota.daily_limit,
    )

    yield

    # Shutdown (reverse order)
    await maintenance.stop()
    await provider.close()


def create_app(settings: Settings | None = None) -> FastAPI:
    """创建 FastAPI 应用。"""
    if settings is None:
        settings = load_settings()

    app = FastAPI(title="toolsight", lifespan=lifespan)
    app.state.settings = settings
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    def _remaining() -> int | None:
        orchestrator = getattr(app.state, "orchestrator", None)
        return orchestrator.quota.remaining if orchestrator else None

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError):
        error = build_error_record(
            ErrorKind.INVALID_PAYLOAD,
            "Request body must be a JSON object with an 'image' field",
            requests_remaining=_remaining(),
        )
        return JSONResponse(status_code=error.http_status, content=error.to_body())

    @app.exception_handler(Exception)
    async def unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s", request.url.path)
        error = classify(exc, requests_remaining=_remaining())
        return JSONResponse(status_code=error.http_status, content=error.to_body())

    @app.post("/api/analyze-tool")
    async def analyze_tool(body: AnalyzeRequest):
        orchestrator: AnalysisOrchestrator = app.state.orchestrator
        outcome = await orchestrator.analyze(body.image)
        return JSONResponse(status_code=outcome.status_code, content=outcome.body)

    @app.get("/health")
    async def health():
        provider = app.state.provider if hasattr(app.state, "provider") else None
        return {
            "status": "ok",
            "provider": provider.name if provider else None,
            "style": provider.style.value if provider else None,
            "hasApiKey": provider.has_api_key if provider else False,
        }

    @app.get("/stats")
    async def stats():
        orchestrator: AnalysisOrchestrator = app.state.orchestrator
        return orchestrator.stats()

    return app

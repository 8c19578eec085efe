"""流水线编排 — 指纹 → 缓存 → 配额 → Provider → 解析 → 训练日志 → 缓存。"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from toolsight.errors import AnalysisError, ErrorKind, ErrorRecord, classify
from toolsight.fingerprint import AnalysisRequest, build_request
from toolsight.models import AnalyzeResponse, CacheInfo, CanonicalRecord
from toolsight.pipeline.parser import ResponseParser

if TYPE_CHECKING:
    from toolsight.cache import ResultCache
    from toolsight.providers.base import ProviderAdapter
    from toolsight.quota import QuotaTracker
    from toolsight.training_log import TrainingLog

logger = logging.getLogger(__name__)


@dataclass
class AnalysisOutcome:
    status_code: int
    body: dict[str, Any]
    record: CanonicalRecord
    cached: bool = False
    error: ErrorRecord | None = None


@dataclass
class _Flight:
    """同一指纹正在进行中的分析任务，后来的相同请求直接等待它。"""

    fingerprint: str
    task: asyncio.Task[CanonicalRecord]
    waiters: int = 0


class AnalysisOrchestrator:
    """图片分析流水线编排器。任何失败都转换为带兜底记录的结构化结果。"""

    def __init__(
        self,
        provider: ProviderAdapter,
        quota: QuotaTracker,
        cache: ResultCache,
        training_log: TrainingLog,
        parser: ResponseParser | None = None,
        *,
        max_payload_bytes: int = 10 * 1024 * 1024,
        low_confidence_threshold: float = 0.80,
    ) -> None:
        self.provider = provider
        self.quota = quota
        self.cache = cache
        self.training_log = training_log
        self.parser = parser or ResponseParser()
        self.max_payload_bytes = max_payload_bytes
        self.low_confidence_threshold = low_confidence_threshold
        self._inflight: dict[str, _Flight] = {}

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def analyze(self, payload: str | None) -> AnalysisOutcome:
        """处理一次 /api/analyze-tool 请求。"""
        try:
            request = build_request(payload, self.max_payload_bytes)
            record, cached = await self._resolve(request)
        except asyncio.CancelledError:
            logger.info("Analysis cancelled by caller")
            raise
        except Exception as e:
            if not isinstance(e, AnalysisError):
                logger.exception("Unexpected analysis failure")
            error = classify(e, requests_remaining=self.quota.remaining)
            logger.warning("Analysis failed: %s (%s)", error.kind.value, error.message)
            return AnalysisOutcome(
                status_code=error.http_status,
                body=error.to_body(),
                record=error.fallback,
                error=error,
            )

        response = AnalyzeResponse(
            **record.model_dump(),
            cache_info=CacheInfo(cached=cached, requests_remaining=self.quota.remaining),
        )
        return AnalysisOutcome(
            status_code=200,
            body=response.model_dump(mode="json", by_alias=True),
            record=record,
            cached=cached,
        )

    async def _resolve(self, request: AnalysisRequest) -> tuple[CanonicalRecord, bool]:
        fingerprint = request.fingerprint

        cached = self.cache.get(fingerprint)
        if cached is not None:
            logger.info("Cache hit for %s", fingerprint[:12])
            return cached, True

        flight = self._inflight.get(fingerprint)
        if flight is not None:
            logger.info("Joining in-flight analysis for %s", fingerprint[:12])
            return await self._join(flight), True

        flight = _Flight(fingerprint, asyncio.create_task(self._compute(request)))
        self._inflight[fingerprint] = flight

        def _release(_: asyncio.Task) -> None:
            if self._inflight.get(fingerprint) is flight:
                del self._inflight[fingerprint]

        flight.task.add_done_callback(_release)
        return await self._join(flight), False

    async def _join(self, flight: _Flight) -> CanonicalRecord:
        """等待共享任务。最后一个等待者取消时，连带取消任务本身。"""
        flight.waiters += 1
        try:
            return await asyncio.shield(flight.task)
        except asyncio.CancelledError:
            if flight.task.cancelled():
                # 共享任务在别处被取消，本请求并未被取消
                raise AnalysisError(
                    ErrorKind.PROVIDER_JOB_FAILED, "Analysis was cancelled before completing"
                ) from None
            if flight.waiters == 1 and not flight.task.done():
                self._abandon(flight)
            raise
        finally:
            flight.waiters -= 1

    def _abandon(self, flight: _Flight) -> None:
        """取消无人等待的任务，并立即让出指纹，之后的相同请求重新计算。"""
        if self._inflight.get(flight.fingerprint) is flight:
            del self._inflight[flight.fingerprint]
        flight.task.cancel()
        logger.info("Abandoned in-flight analysis for %s", flight.fingerprint[:12])

    async def _compute(self, request: AnalysisRequest) -> CanonicalRecord:
        decision = self.quota.try_reserve()
        if not decision.granted:
            raise AnalysisError(
                ErrorKind.QUOTA_EXCEEDED,
                "Daily request limit reached, try again after the reset",
                resets_at=decision.resets_at,
            )
        logger.info(
            "Analyzing %s via %s (%d requests left today)",
            request.fingerprint[:12], self.provider.name, decision.remaining,
        )

        raw = await self.provider.run(request)
        logger.debug("Raw model output: %s", raw[:200])

        result = self.parser.parse(raw)
        record = result.record
        if record.confidence < self.low_confidence_threshold:
            self.training_log.append(raw, record, request.fingerprint)

        self.cache.put(request.fingerprint, record)
        return record

    def stats(self) -> dict[str, Any]:
        window = self.quota.current_window()
        cache = self.cache.stats()
        return {
            "quota": {
                "used": window.count,
                "limit": window.limit,
                "remaining": window.remaining,
                "resetsAt": window.resets_at.isoformat(),
            },
            "cache": {
                "size": cache.size,
                "capacity": cache.capacity,
                "hits": cache.hits,
                "misses": cache.misses,
                "evictions": cache.evictions,
            },
            "inFlight": self.inflight_count,
            "trainingLog": {
                "entries": len(self.training_log),
                "capacity": self.training_log.capacity,
            },
        }

"""共享 fixtures — 测试配置、可控时钟、mock Provider、图片报文等。"""

from __future__ import annotations

import base64
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from toolsight.cache import ResultCache
from toolsight.config import Settings, load_settings
from toolsight.pipeline.orchestrator import AnalysisOrchestrator
from toolsight.providers.base import JobStyle
from toolsight.quota import QuotaTracker
from toolsight.training_log import TrainingLog

FIXTURES_DIR = Path(__file__).parent / "fixtures"

SCREWDRIVER_JSON = json.dumps(
    {
        "name": "Phillips screwdriver",
        "type": "hand",
        "confidence": 0.9,
        "details": {
            "features": ["Magnetic tip", "Cushioned grip"],
            "materials": ["chrome vanadium steel", "plastic"],
            "usage": ["Driving screws"],
            "precision": "medium",
        },
    }
)


# ────────────────────── 时钟 ──────────────────────


class FakeClock:
    """可手动推进的时钟。"""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


# ────────────────────── 图片报文 ──────────────────────


def make_image(seed: str = "tool") -> bytes:
    """伪造一段 JPEG 字节（只需内容稳定，不需要可解码）。"""
    return b"\xff\xd8\xff\xe0" + seed.encode("utf-8") * 64 + b"\xff\xd9"


def make_payload(seed: str = "tool", data_uri: bool = True) -> str:
    encoded = base64.b64encode(make_image(seed)).decode("ascii")
    return f"data:image/jpeg;base64,{encoded}" if data_uri else encoded


# ────────────────────── Fixtures ──────────────────────


@pytest.fixture
def test_config() -> Settings:
    """加载测试专用配置。"""
    return load_settings(FIXTURES_DIR / "test_config.toml")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def quota(clock) -> QuotaTracker:
    return QuotaTracker(daily_limit=3, clock=clock)


@pytest.fixture
def cache() -> ResultCache:
    return ResultCache(capacity=8)


@pytest.fixture
def training_log() -> TrainingLog:
    return TrainingLog(capacity=10)


@pytest.fixture
def image_payload() -> str:
    return make_payload()


@pytest.fixture
def mock_provider() -> MagicMock:
    """Mock Provider — run() 返回固定的 JSON 文本。"""
    provider = MagicMock()
    provider.name = "mock"
    provider.style = JobStyle.SYNCHRONOUS
    provider.has_api_key = True
    provider.start = AsyncMock()
    provider.close = AsyncMock()
    provider.run = AsyncMock(return_value=SCREWDRIVER_JSON)
    return provider


@pytest.fixture
def orchestrator(mock_provider, quota, cache, training_log) -> AnalysisOrchestrator:
    return AnalysisOrchestrator(
        mock_provider,
        quota,
        cache,
        training_log,
        max_payload_bytes=64 * 1024,
    )

"""对外数据模型 — Pydantic 定义的规范化工具记录与 HTTP 报文。"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

CONFIDENCE_MIN = 0.70
CONFIDENCE_MAX = 0.95
CONFIDENCE_DEFAULT = 0.85

DEFAULT_MATERIALS = ["Steel", "Plastic"]


def clamp_confidence(value: float | None) -> float:
    """将置信度夹到 [0.70, 0.95]。None / NaN 视为缺省值 0.85。"""
    if value is None or value != value:
        return CONFIDENCE_DEFAULT
    return round(min(CONFIDENCE_MAX, max(CONFIDENCE_MIN, float(value))), 4)


class ToolType(str, Enum):
    HAND = "hand"
    POWER = "power"
    MEASURING = "measuring"
    CUTTING = "cutting"
    STRIKING = "striking"
    CLAMPING = "clamping"


class Precision(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    BASIC = "basic"


# ────────────────────── 规范化记录 ──────────────────────


class ToolDetails(BaseModel):
    features: list[str]
    materials: list[str]
    usage: list[str]
    precision: Precision

    @field_validator("materials")
    @classmethod
    def _dedupe_materials(cls, value: list[str]) -> list[str]:
        # 保留首次出现顺序
        return list(dict.fromkeys(value))


class CanonicalRecord(BaseModel):
    """规范化后的工具描述。所有字段必有值。"""

    name: str = Field(min_length=1)
    type: ToolType
    confidence: float
    details: ToolDetails

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, value: float | None) -> float:
        return clamp_confidence(value)


# ────────────────────── HTTP 报文 ──────────────────────


class AnalyzeRequest(BaseModel):
    image: str | None = None


class CacheInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cached: bool
    requests_remaining: int = Field(alias="requestsRemaining")


class AnalyzeResponse(CanonicalRecord):
    model_config = ConfigDict(populate_by_name=True)

    cache_info: CacheInfo = Field(alias="cacheInfo")


class ErrorResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    error: str
    kind: str
    fallback: CanonicalRecord
    requests_remaining: int | None = Field(default=None, alias="requestsRemaining")
    resets_at: str | None = Field(default=None, alias="resetsAt")

"""错误分类 — 把任意失败映射到固定的 ErrorKind + HTTP 状态 + 兜底记录。"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime

import httpx

from toolsight.models import (
    CONFIDENCE_MIN,
    DEFAULT_MATERIALS,
    CanonicalRecord,
    ErrorResponse,
    Precision,
    ToolDetails,
    ToolType,
)

logger = logging.getLogger(__name__)


class ErrorKind(enum.Enum):
    INVALID_PAYLOAD = "InvalidPayload"
    QUOTA_EXCEEDED = "QuotaExceeded"
    PROVIDER_AUTH_ERROR = "ProviderAuthError"
    PROVIDER_INPUT_REJECTED = "ProviderInputRejected"
    PROVIDER_TIMEOUT = "ProviderTimeout"
    PROVIDER_JOB_FAILED = "ProviderJobFailed"
    UNPARSABLE_RESPONSE = "UnparsableResponse"
    INTERNAL_ERROR = "InternalError"


HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.INVALID_PAYLOAD: 400,
    ErrorKind.QUOTA_EXCEEDED: 429,
    ErrorKind.PROVIDER_AUTH_ERROR: 503,
    ErrorKind.PROVIDER_INPUT_REJECTED: 422,
    ErrorKind.PROVIDER_TIMEOUT: 504,
    ErrorKind.PROVIDER_JOB_FAILED: 502,
    ErrorKind.UNPARSABLE_RESPONSE: 502,
    ErrorKind.INTERNAL_ERROR: 500,
}

# 兜底记录 name 中嵌入的简短原因
_REASONS: dict[ErrorKind, str] = {
    ErrorKind.INVALID_PAYLOAD: "invalid image",
    ErrorKind.QUOTA_EXCEEDED: "request limit reached",
    ErrorKind.PROVIDER_AUTH_ERROR: "provider credentials rejected",
    ErrorKind.PROVIDER_INPUT_REJECTED: "image rejected by provider",
    ErrorKind.PROVIDER_TIMEOUT: "AI timeout",
    ErrorKind.PROVIDER_JOB_FAILED: "AI job failed",
    ErrorKind.UNPARSABLE_RESPONSE: "unreadable AI answer",
    ErrorKind.INTERNAL_ERROR: "internal error",
}


class AnalysisError(Exception):
    """流水线内部抛出的已分类错误。"""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        resets_at: datetime | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.resets_at = resets_at


@dataclass
class ErrorRecord:
    kind: ErrorKind
    http_status: int
    message: str
    fallback: CanonicalRecord
    requests_remaining: int | None = None
    resets_at: datetime | None = None

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            error=self.message,
            kind=self.kind.value,
            fallback=self.fallback,
            requests_remaining=self.requests_remaining,
            resets_at=self.resets_at.isoformat() if self.resets_at else None,
        )

    def to_body(self) -> dict:
        return self.to_response().model_dump(mode="json", by_alias=True, exclude_none=True)


def fallback_record(reason: str) -> CanonicalRecord:
    """构造兜底记录：name 带原因，其余字段用系统默认值。"""
    return CanonicalRecord(
        name=f"Unidentified tool ({reason})",
        type=ToolType.HAND,
        confidence=CONFIDENCE_MIN,
        details=ToolDetails(
            features=[reason],
            materials=list(DEFAULT_MATERIALS),
            usage=["General purpose"],
            precision=Precision.BASIC,
        ),
    )


def build_error_record(
    kind: ErrorKind,
    message: str,
    *,
    requests_remaining: int | None = None,
    resets_at: datetime | None = None,
) -> ErrorRecord:
    return ErrorRecord(
        kind=kind,
        http_status=HTTP_STATUS[kind],
        message=message,
        fallback=fallback_record(_REASONS[kind]),
        requests_remaining=requests_remaining,
        resets_at=resets_at,
    )


def classify(exc: BaseException, *, requests_remaining: int | None = None) -> ErrorRecord:
    """把异常归入 ErrorKind。未知异常一律 InternalError。"""
    if isinstance(exc, AnalysisError):
        kind, message = exc.kind, exc.message
        resets_at = exc.resets_at
    elif isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        kind, message, resets_at = ErrorKind.PROVIDER_TIMEOUT, "Timed out waiting for the AI result", None
    elif isinstance(exc, httpx.HTTPError):
        kind, message, resets_at = ErrorKind.PROVIDER_JOB_FAILED, f"Provider transport error: {exc}", None
    else:
        kind, message, resets_at = ErrorKind.INTERNAL_ERROR, str(exc) or "Internal server error", None

    if kind is ErrorKind.QUOTA_EXCEEDED:
        requests_remaining = 0

    logger.info("Classified %s as %s: %s", type(exc).__name__, kind.value, message)
    return build_error_record(
        kind, message, requests_remaining=requests_remaining, resets_at=resets_at
    )

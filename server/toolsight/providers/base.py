"""视觉模型 Provider 适配层 — 同步 / 异步轮询两种任务形态。"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from toolsight.errors import AnalysisError, ErrorKind

if TYPE_CHECKING:
    from toolsight.config import ProviderConfig
    from toolsight.fingerprint import AnalysisRequest

logger = logging.getLogger(__name__)

TOOL_PROMPT = (
    "You are a workshop tool recognition system. Identify the single tool shown in the image.\n"
    "Answer with ONLY a JSON object, no markdown, in exactly this shape:\n"
    '{"name": "<tool name>", "type": "hand|power|measuring|cutting|striking|clamping", '
    '"confidence": <0.0-1.0>, "details": {"features": ["..."], "materials": ["..."], '
    '"usage": ["..."], "precision": "high|medium|low"}}\n'
    "If you cannot produce JSON, answer with one line in this format instead:\n"
    "name | type | materials | confidence | features | usage | precision"
)


class JobStyle(enum.Enum):
    SYNCHRONOUS = "synchronous"
    ASYNC_POLLED = "async_polled"


class JobState(enum.Enum):
    CREATED = "created"
    SUBMITTED = "submitted"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = frozenset(
    {JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELED, JobState.TIMED_OUT}
)

_ABORT = {JobState.FAILED, JobState.CANCELED, JobState.TIMED_OUT}
_VALID_TRANSITIONS: dict[JobState, set[JobState]] = {
    JobState.CREATED: {JobState.SUBMITTED} | _ABORT,
    JobState.SUBMITTED: {JobState.RUNNING, JobState.SUCCEEDED} | _ABORT,
    JobState.RUNNING: {JobState.RUNNING, JobState.SUCCEEDED} | _ABORT,
}


@dataclass
class ProviderJob:
    """一次外部推理尝试。只在适配器内部存活，不做持久化。"""

    style: JobStyle
    deadline: float
    created_at: float = field(default_factory=time.monotonic)
    state: JobState = JobState.CREATED
    attempts: int = 0
    handle: str | None = None
    history: list[JobState] = field(default_factory=lambda: [JobState.CREATED])

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.created_at

    def transition_to(self, new_state: JobState) -> None:
        """状态机转换，校验合法路径。"""
        allowed = _VALID_TRANSITIONS.get(self.state, set())
        if new_state not in allowed:
            raise ValueError(
                f"Invalid job transition: {self.state.value} → {new_state.value}"
            )
        self.state = new_state
        self.history.append(new_state)


@dataclass(frozen=True)
class PollResult:
    state: JobState
    output: str | None = None
    error: str | None = None


def _error_detail(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:300]
    if isinstance(data, dict):
        for key in ("detail", "error", "message"):
            value = data.get(key)
            if isinstance(value, dict):
                value = value.get("message")
            if value:
                return str(value)[:300]
    return resp.text[:300]


def check_response(resp: httpx.Response, provider: str) -> None:
    """非 2xx 响应 → 已分类的 AnalysisError。"""
    if resp.is_success:
        return
    detail = _error_detail(resp)
    status = resp.status_code
    logger.warning("%s: HTTP %d: %s", provider, status, detail)
    lowered = detail.lower()

    if status in (401, 403):
        raise AnalysisError(ErrorKind.PROVIDER_AUTH_ERROR, f"{provider} rejected the API credentials")
    rejected = status in (400, 413, 415, 422)
    if status == 429 or (not rejected and "limit" in lowered):
        raise AnalysisError(
            ErrorKind.QUOTA_EXCEEDED,
            f"{provider} request limit reached, wait and try again",
        )
    if rejected or "invalid version" in lowered:
        raise AnalysisError(ErrorKind.PROVIDER_INPUT_REJECTED, f"{provider} rejected the request: {detail}")
    raise AnalysisError(ErrorKind.PROVIDER_JOB_FAILED, f"{provider} error {status}: {detail}")


class ProviderAdapter(ABC):
    """Provider 协议：run() 在总截止时间内返回模型原始文本。"""

    name: str = "provider"
    style: JobStyle

    def __init__(self, config: ProviderConfig) -> None:
        self.config = config
        self._client: httpx.AsyncClient | None = None

    @property
    def deadline(self) -> float:
        return float(self.config.deadline or 60.0)

    @property
    def has_api_key(self) -> bool:
        return self.config.has_api_key

    @property
    def prompt(self) -> str:
        return self.config.prompt or TOOL_PROMPT

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self.config.base_url,
            headers=self._headers(),
            timeout=httpx.Timeout(self.deadline),
        )
        if not self.has_api_key:
            logger.warning("%s: API key not set, requests will fail with ProviderAuthError", self.name)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("Provider client not started")
        return self._client

    async def run(self, request: AnalysisRequest) -> str:
        """执行一次推理任务。超时 / 取消时任务进入终态，不遗留轮询。"""
        if not self.has_api_key:
            raise AnalysisError(ErrorKind.PROVIDER_AUTH_ERROR, f"{self.name} API key is not configured")

        job = ProviderJob(style=self.style, deadline=time.monotonic() + self.deadline)
        try:
            return await asyncio.wait_for(self._execute(job, request), timeout=self.deadline)
        except asyncio.TimeoutError as e:
            self._finish(job, JobState.TIMED_OUT)
            raise AnalysisError(
                ErrorKind.PROVIDER_TIMEOUT,
                f"Timed out waiting for the AI result (over {self.deadline:.0f}s)",
            ) from e
        except httpx.TimeoutException as e:
            self._finish(job, JobState.TIMED_OUT)
            raise AnalysisError(ErrorKind.PROVIDER_TIMEOUT, f"{self.name} request timed out") from e
        except httpx.HTTPError as e:
            self._finish(job, JobState.FAILED)
            raise AnalysisError(ErrorKind.PROVIDER_JOB_FAILED, f"{self.name} transport error: {e}") from e
        except asyncio.CancelledError:
            self._finish(job, JobState.CANCELED)
            raise
        except AnalysisError:
            self._finish(job, JobState.FAILED)
            raise
        finally:
            logger.debug(
                "%s job finished: %s after %d polls (%.1fs)",
                self.name, " → ".join(s.value for s in job.history), job.attempts, job.elapsed,
            )

    def _finish(self, job: ProviderJob, state: JobState) -> None:
        if not job.is_terminal:
            job.transition_to(state)

    @abstractmethod
    async def _execute(self, job: ProviderJob, request: AnalysisRequest) -> str:
        ...  # pragma: no cover


class SynchronousAdapter(ProviderAdapter):
    """一次请求直接拿到最终输出。"""

    style = JobStyle.SYNCHRONOUS

    async def _execute(self, job: ProviderJob, request: AnalysisRequest) -> str:
        job.transition_to(JobState.SUBMITTED)
        output = await self._complete(request)
        job.transition_to(JobState.SUCCEEDED)
        return output

    @abstractmethod
    async def _complete(self, request: AnalysisRequest) -> str:
        ...  # pragma: no cover


class AsyncPolledAdapter(ProviderAdapter):
    """提交任务拿到句柄，再按固定间隔轮询，最多 poll_attempts 次。"""

    style = JobStyle.ASYNC_POLLED

    async def _execute(self, job: ProviderJob, request: AnalysisRequest) -> str:
        job.handle = await self._submit(request)
        job.transition_to(JobState.SUBMITTED)
        logger.info("%s: job submitted, waiting for result", self.name)

        for _ in range(self.config.poll_attempts):
            await asyncio.sleep(self.config.poll_interval)
            job.attempts += 1
            result = await self._poll(job.handle)

            if result.state is JobState.SUCCEEDED:
                job.transition_to(JobState.SUCCEEDED)
                logger.info("%s: result ready after %.1fs", self.name, job.elapsed)
                return result.output or ""

            if result.state in (JobState.FAILED, JobState.CANCELED):
                job.transition_to(result.state)
                raise AnalysisError(
                    ErrorKind.PROVIDER_JOB_FAILED,
                    f"Prediction {result.state.value}: {result.error or 'unknown error'}",
                )

            job.transition_to(JobState.RUNNING)

        job.transition_to(JobState.TIMED_OUT)
        raise AnalysisError(
            ErrorKind.PROVIDER_TIMEOUT,
            f"No result after {job.attempts} polls "
            f"({self.config.poll_attempts * self.config.poll_interval:.0f}s)",
        )

    @abstractmethod
    async def _submit(self, request: AnalysisRequest) -> str:
        """提交任务，返回轮询句柄。"""
        ...  # pragma: no cover

    @abstractmethod
    async def _poll(self, handle: str) -> PollResult:
        ...  # pragma: no cover


def json_body(resp: httpx.Response, provider: str) -> Any:
    try:
        return resp.json()
    except ValueError as e:
        raise AnalysisError(
            ErrorKind.PROVIDER_JOB_FAILED, f"{provider} returned a non-JSON body"
        ) from e

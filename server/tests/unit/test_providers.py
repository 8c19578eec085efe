"""测试 providers — 任务状态机、Replicate 轮询、OpenAI 同步调用、错误映射。"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from toolsight.config import ProviderConfig
from toolsight.errors import AnalysisError, ErrorKind
from toolsight.fingerprint import build_request
from toolsight.providers import base, create_provider
from toolsight.providers.base import JobState, JobStyle, ProviderJob
from toolsight.providers.openai_compat import OpenAICompatibleProvider
from toolsight.providers.replicate import ReplicateProvider

from ..conftest import SCREWDRIVER_JSON, make_payload

PREDICTION_URL = "https://api.replicate.com/v1/predictions/p1"


def _response(status: int, data: object, method: str = "GET", url: str = PREDICTION_URL) -> httpx.Response:
    return httpx.Response(status, json=data, request=httpx.Request(method, url))


def _prediction(status: str, **extra) -> httpx.Response:
    return _response(200, {"id": "p1", "status": status, **extra})


@pytest.fixture
def analysis_request():
    return build_request(make_payload(), 64 * 1024)


@pytest.fixture
def replicate_config() -> ProviderConfig:
    return ProviderConfig(
        kind="replicate",
        api_key="r8_test",
        model_version="llava-version",
        poll_interval=0.0,
        poll_attempts=3,
        deadline=5.0,
    )


@pytest.fixture
def replicate(replicate_config) -> ReplicateProvider:
    provider = ReplicateProvider(replicate_config)
    provider._client = AsyncMock()
    provider._client.post = AsyncMock(
        return_value=_response(201, {"id": "p1", "urls": {"get": PREDICTION_URL}}, "POST")
    )
    return provider


@pytest.fixture
def openai() -> OpenAICompatibleProvider:
    provider = OpenAICompatibleProvider(ProviderConfig(kind="openai", api_key="sk-test"))
    provider._client = AsyncMock()
    return provider


class TestProviderJob:
    """任务状态机。"""

    def test_async_path(self):
        job = ProviderJob(style=JobStyle.ASYNC_POLLED, deadline=0)
        for state in (JobState.SUBMITTED, JobState.RUNNING, JobState.RUNNING, JobState.SUCCEEDED):
            job.transition_to(state)
        assert job.is_terminal
        assert job.history[0] is JobState.CREATED
        assert job.history[-1] is JobState.SUCCEEDED

    def test_cannot_skip_submission(self):
        job = ProviderJob(style=JobStyle.ASYNC_POLLED, deadline=0)
        with pytest.raises(ValueError):
            job.transition_to(JobState.RUNNING)

    def test_terminal_is_final(self):
        job = ProviderJob(style=JobStyle.SYNCHRONOUS, deadline=0)
        job.transition_to(JobState.SUBMITTED)
        job.transition_to(JobState.SUCCEEDED)
        with pytest.raises(ValueError):
            job.transition_to(JobState.FAILED)

    def test_abort_from_created(self):
        job = ProviderJob(style=JobStyle.SYNCHRONOUS, deadline=0)
        job.transition_to(JobState.CANCELED)
        assert job.is_terminal


class TestReplicate:
    """异步轮询型 Provider。"""

    async def test_success_joins_token_stream(self, replicate, analysis_request):
        """轮询到 succeeded，拼接流式输出。"""
        replicate._client.get = AsyncMock(
            side_effect=[
                _prediction("starting"),
                _prediction("processing"),
                _prediction("succeeded", output=["A claw ", "hammer"]),
            ]
        )
        assert await replicate.run(analysis_request) == "A claw hammer"

        path = replicate._client.post.await_args.args[0]
        body = replicate._client.post.await_args.kwargs["json"]
        assert path == "/predictions"
        assert body["version"] == "llava-version"
        assert body["input"]["image"].startswith("data:image/jpeg;base64,")
        assert body["input"]["prompt"].startswith("USER: <image>")
        replicate._client.get.assert_awaited_with(PREDICTION_URL)

    async def test_failed_prediction(self, replicate, analysis_request):
        """submitted → running → running → failed。"""
        replicate._client.get = AsyncMock(
            side_effect=[
                _prediction("starting"),
                _prediction("processing"),
                _prediction("failed", error="CUDA out of memory"),
            ]
        )
        job = ProviderJob(style=JobStyle.ASYNC_POLLED, deadline=0)
        with pytest.raises(AnalysisError) as exc_info:
            await replicate._execute(job, analysis_request)

        assert exc_info.value.kind is ErrorKind.PROVIDER_JOB_FAILED
        assert "CUDA out of memory" in exc_info.value.message
        assert job.history == [
            JobState.CREATED,
            JobState.SUBMITTED,
            JobState.RUNNING,
            JobState.RUNNING,
            JobState.FAILED,
        ]
        assert job.attempts == 3

    async def test_poll_limit_times_out(self, replicate, analysis_request):
        """一直 running，轮询次数用尽即超时。"""
        replicate._client.get = AsyncMock(return_value=_prediction("processing"))
        job = ProviderJob(style=JobStyle.ASYNC_POLLED, deadline=0)
        with pytest.raises(AnalysisError) as exc_info:
            await replicate._execute(job, analysis_request)

        assert exc_info.value.kind is ErrorKind.PROVIDER_TIMEOUT
        assert job.state is JobState.TIMED_OUT
        assert replicate._client.get.await_count == 3

    async def test_unknown_status_treated_as_running(self, replicate, analysis_request):
        replicate._client.get = AsyncMock(
            side_effect=[_prediction("queued"), _prediction("succeeded", output="Hacksaw")]
        )
        assert await replicate.run(analysis_request) == "Hacksaw"

    async def test_model_path_without_version(self, analysis_request):
        provider = ReplicateProvider(
            ProviderConfig(kind="replicate", api_key="k", model="yorickvp/llava-13b", poll_interval=0.0)
        )
        provider._client = AsyncMock()
        provider._client.post = AsyncMock(
            return_value=_response(201, {"urls": {"get": PREDICTION_URL}}, "POST")
        )
        provider._client.get = AsyncMock(return_value=_prediction("succeeded", output="ok"))
        await provider.run(analysis_request)

        path = provider._client.post.await_args.args[0]
        body = provider._client.post.await_args.kwargs["json"]
        assert path == "/models/yorickvp/llava-13b/predictions"
        assert "version" not in body

    @pytest.mark.parametrize("body", [b'["not", "an", "object"]', b"null"])
    async def test_non_object_poll_body(self, replicate, analysis_request, body):
        """轮询返回非对象 JSON → ProviderJobFailed。"""
        replicate._client.get = AsyncMock(
            return_value=httpx.Response(200, content=body, request=httpx.Request("GET", PREDICTION_URL))
        )
        with pytest.raises(AnalysisError) as exc_info:
            await replicate.run(analysis_request)
        assert exc_info.value.kind is ErrorKind.PROVIDER_JOB_FAILED

    async def test_missing_status_url(self, replicate, analysis_request):
        replicate._client.post = AsyncMock(return_value=_response(201, {"id": "p1"}, "POST"))
        with pytest.raises(AnalysisError) as exc_info:
            await replicate.run(analysis_request)
        assert exc_info.value.kind is ErrorKind.PROVIDER_JOB_FAILED


class TestErrorMapping:
    """HTTP 响应 → ErrorKind。"""

    @pytest.mark.parametrize(
        "status, data, kind",
        [
            (401, {"detail": "Unauthenticated"}, ErrorKind.PROVIDER_AUTH_ERROR),
            (403, {"detail": "Forbidden"}, ErrorKind.PROVIDER_AUTH_ERROR),
            (422, {"detail": "Invalid version or not permitted"}, ErrorKind.PROVIDER_INPUT_REJECTED),
            (413, {"detail": "Payload too large"}, ErrorKind.PROVIDER_INPUT_REJECTED),
            (400, {"detail": "Input image exceeds the size limit of 5MB"}, ErrorKind.PROVIDER_INPUT_REJECTED),
            (422, {"detail": "prompt exceeds the token limit"}, ErrorKind.PROVIDER_INPUT_REJECTED),
            (429, {"detail": "Request was throttled"}, ErrorKind.QUOTA_EXCEEDED),
            (402, {"detail": "Monthly spend limit reached"}, ErrorKind.QUOTA_EXCEEDED),
            (500, {"detail": "Internal error"}, ErrorKind.PROVIDER_JOB_FAILED),
        ],
    )
    async def test_submit_errors(self, replicate, analysis_request, status, data, kind):
        replicate._client.post = AsyncMock(return_value=_response(status, data, "POST"))
        with pytest.raises(AnalysisError) as exc_info:
            await replicate.run(analysis_request)
        assert exc_info.value.kind is kind

    async def test_non_json_error_body(self, replicate, analysis_request):
        replicate._client.post = AsyncMock(
            return_value=httpx.Response(
                502, text="<html>Bad gateway</html>", request=httpx.Request("POST", PREDICTION_URL)
            )
        )
        with pytest.raises(AnalysisError) as exc_info:
            await replicate.run(analysis_request)
        assert exc_info.value.kind is ErrorKind.PROVIDER_JOB_FAILED

    async def test_transport_timeout(self, replicate, analysis_request):
        replicate._client.post = AsyncMock(side_effect=httpx.ReadTimeout("read timed out"))
        with pytest.raises(AnalysisError) as exc_info:
            await replicate.run(analysis_request)
        assert exc_info.value.kind is ErrorKind.PROVIDER_TIMEOUT

    async def test_connection_error(self, replicate, analysis_request):
        replicate._client.post = AsyncMock(side_effect=httpx.ConnectError("connection refused"))
        with pytest.raises(AnalysisError) as exc_info:
            await replicate.run(analysis_request)
        assert exc_info.value.kind is ErrorKind.PROVIDER_JOB_FAILED


class TestDeadlineAndCancel:
    """总截止时间与取消。"""

    async def test_deadline_exceeded(self, analysis_request):
        """超过总截止时间 → ProviderTimeout。"""
        provider = ReplicateProvider(ProviderConfig(kind="replicate", api_key="k", deadline=0.05))
        provider._client = AsyncMock()

        async def slow_post(*args, **kwargs):
            await asyncio.sleep(5)

        provider._client.post = AsyncMock(side_effect=slow_post)
        with pytest.raises(AnalysisError) as exc_info:
            await provider.run(analysis_request)
        assert exc_info.value.kind is ErrorKind.PROVIDER_TIMEOUT

    async def test_cancel_leaves_job_canceled(self, replicate, analysis_request):
        """取消后任务进入 CANCELED，不再轮询。"""
        started = asyncio.Event()

        async def hang(*args, **kwargs):
            started.set()
            await asyncio.Event().wait()

        replicate._client.post = AsyncMock(side_effect=hang)
        replicate._client.get = AsyncMock()

        jobs: list[ProviderJob] = []
        real_job = base.ProviderJob

        def record_job(*args, **kwargs):
            job = real_job(*args, **kwargs)
            jobs.append(job)
            return job

        with patch("toolsight.providers.base.ProviderJob", side_effect=record_job):
            task = asyncio.create_task(replicate.run(analysis_request))
            await started.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert jobs[0].state is JobState.CANCELED
        replicate._client.get.assert_not_awaited()


class TestOpenAI:
    """同步型 Provider。"""

    async def test_success(self, openai, analysis_request):
        openai._client.post = AsyncMock(
            return_value=_response(
                200,
                {"choices": [{"message": {"content": f"  {SCREWDRIVER_JSON}\n"}}]},
                "POST",
            )
        )
        output = await openai.run(analysis_request)
        assert json.loads(output)["name"] == "Phillips screwdriver"

        path = openai._client.post.await_args.args[0]
        body = openai._client.post.await_args.kwargs["json"]
        assert path == "/chat/completions"
        assert body["model"] == "gpt-4o-mini"
        content = body["messages"][0]["content"]
        assert content[0]["image_url"]["url"].startswith("data:image/jpeg;base64,")

    async def test_missing_content(self, openai, analysis_request):
        openai._client.post = AsyncMock(return_value=_response(200, {"choices": []}, "POST"))
        with pytest.raises(AnalysisError) as exc_info:
            await openai.run(analysis_request)
        assert exc_info.value.kind is ErrorKind.PROVIDER_JOB_FAILED


class TestLifecycle:
    """凭证、客户端生命周期、工厂。"""

    async def test_missing_api_key(self, analysis_request):
        """未配置 API key 时不发请求。"""
        provider = OpenAICompatibleProvider(ProviderConfig(kind="openai"))
        provider._client = AsyncMock()
        with pytest.raises(AnalysisError) as exc_info:
            await provider.run(analysis_request)
        assert exc_info.value.kind is ErrorKind.PROVIDER_AUTH_ERROR
        provider._client.post.assert_not_awaited()

    def test_client_before_start(self, replicate_config):
        provider = ReplicateProvider(replicate_config)
        with pytest.raises(RuntimeError):
            provider.client

    async def test_start_and_close(self, replicate_config):
        provider = ReplicateProvider(replicate_config)
        await provider.start()
        assert str(provider.client.base_url).startswith("https://api.replicate.com/v1")
        assert provider.client.headers["Authorization"] == "Bearer r8_test"
        await provider.close()
        assert provider._client is None

    def test_factory(self, replicate_config):
        assert isinstance(create_provider(replicate_config), ReplicateProvider)
        assert isinstance(
            create_provider(ProviderConfig(kind="openai", api_key="k")), OpenAICompatibleProvider
        )

    def test_factory_unknown_kind(self):
        with pytest.raises(ValueError):
            create_provider(MagicMock(kind="mystery"))

    def test_style(self, replicate, openai):
        assert replicate.style is JobStyle.ASYNC_POLLED
        assert openai.style is JobStyle.SYNCHRONOUS

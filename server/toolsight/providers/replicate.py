"""Replicate 预测接口 — 提交 prediction 后轮询 urls.get。"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from toolsight.errors import AnalysisError, ErrorKind
from toolsight.providers.base import (
    AsyncPolledAdapter,
    JobState,
    PollResult,
    check_response,
    json_body,
)

if TYPE_CHECKING:
    from toolsight.fingerprint import AnalysisRequest

logger = logging.getLogger(__name__)

# Replicate 状态 → 任务状态
_STATUS_MAP: dict[str, JobState] = {
    "starting": JobState.RUNNING,
    "processing": JobState.RUNNING,
    "succeeded": JobState.SUCCEEDED,
    "failed": JobState.FAILED,
    "canceled": JobState.CANCELED,
}


class ReplicateProvider(AsyncPolledAdapter):
    """LLaVA 等 Replicate 托管模型。"""

    name = "replicate"

    def _prediction_path(self) -> str:
        if not self.config.model_version and self.config.model:
            return f"/models/{self.config.model}/predictions"
        return "/predictions"

    def _build_payload(self, request: AnalysisRequest) -> dict:
        body: dict = {
            "input": {
                "image": request.to_data_uri(),
                "prompt": f"USER: <image>\n{self.prompt}\nASSISTANT:",
                "max_tokens": self.config.max_tokens,
                "temperature": self.config.temperature,
                "top_p": 0.9,
            }
        }
        if self.config.model_version:
            body["version"] = self.config.model_version
        return body

    async def _submit(self, request: AnalysisRequest) -> str:
        resp = await self.client.post(self._prediction_path(), json=self._build_payload(request))
        check_response(resp, self.name)
        prediction = json_body(resp, self.name)
        try:
            return prediction["urls"]["get"]
        except (KeyError, TypeError) as e:
            raise AnalysisError(
                ErrorKind.PROVIDER_JOB_FAILED, "replicate prediction has no status URL"
            ) from e

    async def _poll(self, handle: str) -> PollResult:
        resp = await self.client.get(handle)
        check_response(resp, self.name)
        data = json_body(resp, self.name)
        if not isinstance(data, dict):
            raise AnalysisError(
                ErrorKind.PROVIDER_JOB_FAILED, "replicate prediction status is not a JSON object"
            )
        status = str(data.get("status", "")).lower()
        state = _STATUS_MAP.get(status, JobState.RUNNING)
        if status not in _STATUS_MAP:
            logger.debug("replicate: unknown status %r, treating as running", status)

        if state is JobState.SUCCEEDED:
            return PollResult(state, output=self._join_output(data.get("output")))
        if state in (JobState.FAILED, JobState.CANCELED):
            return PollResult(state, error=data.get("error"))
        return PollResult(state)

    @staticmethod
    def _join_output(output: object) -> str:
        # 语言模型按 token 流式输出，结果是字符串列表
        if output is None:
            return ""
        if isinstance(output, list):
            return "".join(str(part) for part in output if part is not None)
        return str(output)

"""OpenAI 兼容的 chat completions 视觉接口（OpenAI / Moonshot / OpenRouter 等）。"""

from __future__ import annotations

from typing import TYPE_CHECKING

from toolsight.errors import AnalysisError, ErrorKind
from toolsight.providers.base import SynchronousAdapter, check_response, json_body

if TYPE_CHECKING:
    from toolsight.fingerprint import AnalysisRequest


class OpenAICompatibleProvider(SynchronousAdapter):
    name = "openai"

    def _build_payload(self, request: AnalysisRequest) -> dict:
        return {
            "model": self.config.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "image_url", "image_url": {"url": request.to_data_uri()}},
                        {"type": "text", "text": self.prompt},
                    ],
                }
            ],
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
        }

    async def _complete(self, request: AnalysisRequest) -> str:
        resp = await self.client.post("/chat/completions", json=self._build_payload(request))
        check_response(resp, self.name)
        data = json_body(resp, self.name)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise AnalysisError(
                ErrorKind.PROVIDER_JOB_FAILED, "openai response has no message content"
            ) from e
        return content.strip() if content else ""

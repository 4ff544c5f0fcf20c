"""OpenAI 兼容 Provider 适配器。

- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>

流式调用只负责交出原始文本片段（response.aiter_text），SSE 帧的切分与解析
交给 StreamDecoder；非流式调用（生成标题）在这里直接解析为 ChatResult。
"""

import json
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from ask_core.config.settings import settings
from ask_core.domain.exceptions import ApiError, ConfigurationError, NetworkError, RateLimitError
from ask_core.domain.models import (
    ChatChoice,
    ChatMessage,
    ChatRequest,
    ChatResult,
    ChatUsage,
)
from ask_core.providers.registry import get_provider_config, resolve_model


class OpenAIClient:
    """OpenAI chat/completions 客户端实现。"""

    name = "openai"

    def __init__(self, cfg=settings):
        self._settings = cfg
        self._provider_config = get_provider_config(self.name)

    def ensure_configured(self) -> None:
        if not getattr(self._settings, "api_key", None):
            raise ConfigurationError(code="MISSING_API_KEY", message="ASK_API_KEY not set")

    # ---- 流式 ----

    async def stream_chat(self, req: ChatRequest) -> AsyncIterator[str]:
        self.ensure_configured()
        payload = self._build_payload(req, stream=True)
        try:
            async with httpx.AsyncClient(timeout=self._settings.request_timeout, trust_env=False) as client:
                async with client.stream(
                    "POST",
                    self._url(),
                    json=payload,
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code >= 400:
                        body = await resp.aread()
                        raise self._error_from_response(resp.status_code, body)
                    async for text in resp.aiter_text():
                        if text:
                            yield text
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or type(e).__name__) from e

    # ---- 非流式 ----

    async def chat(self, req: ChatRequest) -> ChatResult:
        self.ensure_configured()
        payload = self._build_payload(req, stream=False)
        try:
            async with httpx.AsyncClient(timeout=self._settings.request_timeout, trust_env=False) as client:
                resp = await client.post(self._url(), json=payload, headers=self._headers())
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or type(e).__name__) from e
        if resp.status_code >= 400:
            raise self._error_from_response(resp.status_code, resp.content)
        return self._parse_response(resp.json(), req)

    # ---- 辅助方法 ----

    def _url(self) -> str:
        base = getattr(self._settings, "base_url", None) or self._provider_config.base_url
        return f"{base.rstrip('/')}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.api_key}",
            "Content-Type": "application/json",
        }

    def _build_payload(self, req: ChatRequest, stream: bool) -> dict:
        payload: Dict[str, Any] = {
            "model": resolve_model(self._provider_config, req.model),
            "messages": [{"role": m.role, "content": m.content} for m in req.messages],
            "temperature": req.temperature,
            "stream": stream,
            "n": req.n,
        }
        if req.max_tokens:
            payload["max_tokens"] = req.max_tokens
        return payload

    def _parse_response(self, data: dict, req: ChatRequest) -> ChatResult:
        choices: list[ChatChoice] = []
        for i, ch in enumerate(data.get("choices", [])):
            msg = ch.get("message") or {}
            cm = ChatMessage(role=msg.get("role") or "assistant", content=msg.get("content") or "")
            choices.append(ChatChoice(index=ch.get("index", i), message=cm, finish_reason=ch.get("finish_reason")))
        usage_raw = data.get("usage") or {}
        usage = None
        if usage_raw:
            usage = ChatUsage(
                prompt_tokens=usage_raw.get("prompt_tokens", 0),
                completion_tokens=usage_raw.get("completion_tokens", 0),
                total_tokens=usage_raw.get("total_tokens", 0),
            )
        return ChatResult(provider=self.name, model=req.model, choices=choices, usage=usage, raw=data)

    @staticmethod
    def _upstream_message(body: bytes) -> Optional[str]:
        """提取上游 JSON 中的 error.message。"""
        try:
            data = json.loads(body or b"null")
        except ValueError:
            return None
        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        return None

    def _error_from_response(self, status: int, body: bytes) -> ApiError:
        upstream = self._upstream_message(body)
        text = upstream or (body or b"").decode("utf-8", errors="replace")[:500] or f"HTTP {status}"
        if status == 429:
            return RateLimitError(code="RATE_LIMIT", message=text, http_status=status, upstream_message=upstream)
        return ApiError(code="API_ERROR", message=text, http_status=status, upstream_message=upstream)

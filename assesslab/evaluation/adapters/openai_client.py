"""
Bearer-token chat-completions client.

Intent:
    Alternative backend for deployments without AWS access. Accepts the same
    Anthropic-style message list as the Bedrock client and translates it into
    chat-completions messages; images travel as data URLs.
"""
from __future__ import annotations

import logging
from typing import Optional, Sequence

import httpx

from assesslab.evaluation.config import EvaluationConfig
from assesslab.evaluation.ports import (
    ConfigurationError,
    ImageContent,
    ModelResponseError,
    ModelTimeoutError,
)

LOG = logging.getLogger(__name__)


def _translate_content(content):
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if block.get("type") == "text":
            parts.append({"type": "text", "text": block.get("text", "")})
        elif block.get("type") == "image":
            source = block.get("source") or {}
            parts.append(
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{source.get('media_type')};base64,{source.get('data')}"},
                }
            )
    return parts


class OpenAIModelClient:
    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str,
        timeout: float = 120,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._base_url = base_url
        self._timeout = timeout
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def model_id(self) -> str:
        return self._model

    async def invoke_text(
        self,
        messages: Sequence[dict],
        *,
        max_tokens: int = 4000,
        temperature: float = 0.5,
        system: Optional[str] = None,
    ) -> dict:
        chat: list[dict] = []
        if system:
            chat.append({"role": "system", "content": system})
        for message in messages:
            chat.append({"role": message.get("role", "user"), "content": _translate_content(message.get("content", ""))})
        body: dict = {"model": self._model, "messages": chat, "max_tokens": max_tokens, "temperature": temperature}
        return await self._post(body)

    async def invoke_vision(
        self,
        prompt: str,
        images: Sequence[ImageContent],
        *,
        max_tokens: int = 4000,
        temperature: float = 0.2,
        system: Optional[str] = None,
    ) -> dict:
        content: list[dict] = [{"type": "text", "text": prompt}]
        for image in images:
            content.append(
                {"type": "image", "source": {"type": "base64", "media_type": image.media_type, "data": image.base64}}
            )
        return await self.invoke_text(
            [{"role": "user", "content": content}], max_tokens=max_tokens, temperature=temperature, system=system
        )

    async def _post(self, body: dict) -> dict:
        headers = {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}
        try:
            response = await self._client.post(self._base_url, json=body, headers=headers, timeout=self._timeout)
        except httpx.TimeoutException as exc:
            LOG.warning("evaluation.model.openai action=timeout model=%s", self._model)
            raise ModelTimeoutError(f"Model request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ModelResponseError(f"Model request failed: {exc}", body=str(exc)) from exc
        if not response.is_success:
            LOG.warning("evaluation.model.openai action=http_error model=%s status=%s", self._model, response.status_code)
            raise ModelResponseError(
                f"OpenAI API error ({response.status_code}): {response.text}",
                status=response.status_code,
                body=response.text,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ModelResponseError("OpenAI API returned a non-JSON body", status=response.status_code, body=response.text) from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build(config: EvaluationConfig, *, http_client: Optional[httpx.AsyncClient] = None) -> OpenAIModelClient:
    if not config.openai_api_key:
        raise ConfigurationError("Missing API key: OPENAI_API_KEY")
    return OpenAIModelClient(
        api_key=config.openai_api_key,
        model=config.openai_model,
        base_url=config.openai_base_url,
        timeout=config.timeout_model_seconds,
        http_client=http_client,
    )

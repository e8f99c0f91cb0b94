"""
Bedrock model client (Anthropic messages API behind SigV4).

Intent:
    Send text and vision requests to the regional Bedrock runtime endpoint,
    signing every request with `sigv4.sign_request`, and return the raw JSON
    body. Text extraction is left to `responses.extract_text`.

Behavior:
    - Non-2xx answers raise `ModelResponseError` carrying status and body.
    - Transport timeouts raise `ModelTimeoutError`; other transport failures
      raise `ModelResponseError` without a status.
    - Request bodies are never logged; only model id, status and sizes.
"""
from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from typing import Callable, Optional, Sequence
from urllib.parse import quote

import httpx

from assesslab.evaluation.adapters.sigv4 import sign_request
from assesslab.evaluation.config import EvaluationConfig
from assesslab.evaluation.ports import (
    ConfigurationError,
    ImageContent,
    ModelResponseError,
    ModelTimeoutError,
)

LOG = logging.getLogger(__name__)

ANTHROPIC_VERSION = "bedrock-2023-05-31"
DEFAULT_MAX_TOKENS = 4000


def vision_content(prompt: str, images: Sequence[ImageContent]) -> list[dict]:
    """One text block followed by one base64 image block per image."""
    blocks: list[dict] = [{"type": "text", "text": prompt}]
    for image in images:
        blocks.append(
            {
                "type": "image",
                "source": {"type": "base64", "media_type": image.media_type, "data": image.base64},
            }
        )
    return blocks


class BedrockModelClient:
    """Invoke an Anthropic model hosted on Bedrock."""

    def __init__(
        self,
        *,
        access_key_id: str,
        secret_access_key: str,
        region: str,
        model_id: str,
        signing_service: str = "bedrock",
        host: Optional[str] = None,
        timeout: float = 120,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._region = region
        self._model_id = model_id
        self._signing_service = signing_service
        self._host = host or f"bedrock-runtime.{region}.amazonaws.com"
        self._timeout = timeout
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def model_id(self) -> str:
        return self._model_id

    def invoke_path(self) -> str:
        return f"/model/{quote(self._model_id, safe='')}/invoke"

    async def invoke_text(
        self,
        messages: Sequence[dict],
        *,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = 0.5,
        system: Optional[str] = None,
    ) -> dict:
        body: dict = {
            "anthropic_version": ANTHROPIC_VERSION,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": list(messages),
        }
        if system:
            body["system"] = system
        return await self._post(body)

    async def invoke_vision(
        self,
        prompt: str,
        images: Sequence[ImageContent],
        *,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = 0.2,
        system: Optional[str] = None,
    ) -> dict:
        messages = [{"role": "user", "content": vision_content(prompt, images)}]
        return await self.invoke_text(messages, max_tokens=max_tokens, temperature=temperature, system=system)

    async def _post(self, body: dict) -> dict:
        path = self.invoke_path()
        payload = json.dumps(body)
        headers = sign_request(
            "POST",
            path,
            payload,
            self._region,
            self._signing_service,
            self._access_key_id,
            self._secret_access_key,
            host=self._host,
            now=self._clock(),
        )
        url = f"https://{self._host}{path}"
        try:
            response = await self._client.post(url, content=payload.encode("utf-8"), headers=headers, timeout=self._timeout)
        except httpx.TimeoutException as exc:
            LOG.warning("evaluation.model.bedrock action=timeout model=%s", self._model_id)
            raise ModelTimeoutError(f"Bedrock request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            LOG.warning("evaluation.model.bedrock action=transport_error model=%s error=%s", self._model_id, type(exc).__name__)
            raise ModelResponseError(f"Bedrock request failed: {exc}", body=str(exc)) from exc

        if not response.is_success:
            text = response.text
            LOG.warning(
                "evaluation.model.bedrock action=http_error model=%s status=%s", self._model_id, response.status_code
            )
            raise ModelResponseError(
                f"Bedrock API error ({response.status_code}): {text}", status=response.status_code, body=text
            )
        LOG.info(
            "evaluation.model.bedrock action=ok model=%s status=%s bytes=%s",
            self._model_id,
            response.status_code,
            len(response.content),
        )
        try:
            return response.json()
        except ValueError as exc:
            raise ModelResponseError("Bedrock API returned a non-JSON body", status=response.status_code, body=response.text) from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build(config: EvaluationConfig, *, http_client: Optional[httpx.AsyncClient] = None) -> BedrockModelClient:
    """Factory used by `build_model_client`; requires AWS credentials."""
    if not config.aws_access_key_id or not config.aws_secret_access_key:
        raise ConfigurationError("Missing AWS credentials: AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY")
    return BedrockModelClient(
        access_key_id=config.aws_access_key_id,
        secret_access_key=config.aws_secret_access_key,
        region=config.aws_region,
        model_id=config.bedrock_model_id,
        signing_service=config.signing_service,
        host=config.bedrock_host,
        timeout=config.timeout_model_seconds,
        http_client=http_client,
    )

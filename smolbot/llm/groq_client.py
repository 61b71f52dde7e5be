from __future__ import annotations

import os
from typing import Optional

import httpx

from ..errors import CapacityError, ProviderError
from ..logger_factory import get_logger, is_full_enabled
from ..utils.logfmt import fmt
from .base import CompletionProvider, GenerationKind

# 503 is what Groq returns when a model is over capacity
CAPACITY_STATUS_CODES = (429, 503)


class GroqClient(CompletionProvider):
    """OpenAI-compatible chat completions client for the Groq API.

    Makes exactly one HTTP attempt per call; retry and tier policy belong to the
    fallback router.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = "https://api.groq.com/openai/v1/chat/completions",
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.log = get_logger("GroqClient")
        self.api_key = api_key or os.getenv("GROQ_API_KEY")
        if not self.api_key:
            raise RuntimeError("Missing GROQ_API_KEY in environment or constructor")
        self.base_url = base_url
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def complete(
        self,
        model: str,
        prompt: list[dict],
        kind: GenerationKind = "chat",
        *,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        context_fields: Optional[dict] = None,
    ) -> str:
        payload: dict = {"model": model, "messages": prompt}
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if temperature is not None:
            payload["temperature"] = temperature
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        cf = context_fields or {}
        if is_full_enabled():
            self.log.debug(f"[groq-request] {fmt('model', model)} {fmt('kind', kind)} {fmt('messages', len(prompt))}")
        try:
            r = await self._client.post(self.base_url, json=payload, headers=headers)
            r.raise_for_status()
            data = r.json()
        except httpx.HTTPStatusError as e:
            code = e.response.status_code if e.response is not None else 0
            body = e.response.text[:500] if e.response is not None else "<no body>"
            self.log.info(
                f"[groq-http-error] {fmt('model', model)} {fmt('status', code)} "
                f"{fmt('correlation', cf.get('correlation'))}"
            )
            if code in CAPACITY_STATUS_CODES:
                raise CapacityError(f"Groq capacity error {code}: {body}", status=code) from e
            raise ProviderError(f"Groq HTTP error {code}: {body}", status=code) from e
        except httpx.TransportError as e:
            raise ProviderError(f"Groq transport error: {e!r}") from e
        except ValueError as e:
            raise ProviderError(f"Groq returned non-JSON body: {e}") from e

        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"Groq response parse error: {str(data)[:500]}") from e
        if not isinstance(text, str) or not text.strip():
            raise ProviderError(f"Groq returned an empty completion for {model}")
        usage = data.get("usage") or {}
        self.log.debug(
            f"[groq-usage] {fmt('model', model)} {fmt('tokens_in', usage.get('prompt_tokens'))} "
            f"{fmt('tokens_out', usage.get('completion_tokens'))} {fmt('correlation', cf.get('correlation'))}"
        )
        return text.strip()

    async def aclose(self) -> None:
        await self._client.aclose()

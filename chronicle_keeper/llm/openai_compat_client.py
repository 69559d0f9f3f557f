from __future__ import annotations

from typing import Optional

import httpx

from .base import LLMClient, LLMHTTPError, LLMResponseError, LLMTransportError
from ..logger_factory import get_logger
from ..utils.logfmt import fmt, truncate_detail


def resolve_chat_url(base_url: str) -> str:
    """Accept a host, `/v1`, `/v1/chat` or the full `/v1/chat/completions` URL."""
    u = base_url.strip().rstrip("/")
    if u.endswith("/v1/chat/completions"):
        return u
    if u.endswith("/v1/chat"):
        return u + "/completions"
    if u.endswith("/v1"):
        return u + "/chat/completions"
    return u + "/v1/chat/completions"


def _extract_text(data) -> str:
    try:
        mc = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as e:
        raise LLMResponseError(f"missing choices[0].message.content in {truncate_detail(data)}") from e
    if isinstance(mc, list):
        # some servers return content parts
        parts = [str(it.get("text")) for it in mc if isinstance(it, dict) and it.get("type") == "text" and it.get("text")]
        text = "\n".join(parts).strip()
    else:
        text = str(mc or "").strip()
    if not text:
        raise LLMResponseError("provider returned empty text")
    return text


class OpenAICompatClient(LLMClient):
    """OpenAI-compatible chat completions client (one non-streaming request, no retries)."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.log = get_logger("OpenAICompat")
        self.chat_url = resolve_chat_url(base_url)
        self.api_key = api_key
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def generate_chat(
        self,
        messages: list[dict],
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        context_fields: Optional[dict] = None,
    ) -> dict:
        payload: dict = {
            "model": model,
            "messages": messages,
            "stream": False,
        }
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            r = await self._client.post(self.chat_url, json=payload, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            # InvalidURL is not an HTTPError; a bad base URL surfaces here
            raise LLMTransportError(f"{type(e).__name__}: {truncate_detail(e)}") from e
        if not r.is_success:
            raise LLMHTTPError(r.status_code, truncate_detail(r.text))
        try:
            data = r.json()
        except ValueError as e:
            raise LLMResponseError(f"non-JSON body: {truncate_detail(r.text)}") from e

        text = _extract_text(data)
        usage = data.get("usage") or {}
        cf = context_fields or {}
        self.log.debug(
            f"[llm-provider-finish] {fmt('provider', 'openai')} {fmt('model', model)} "
            f"{fmt('correlation', cf.get('correlation'))} {fmt('output_tokens', usage.get('completion_tokens'))}"
        )
        return {
            "text": text,
            "usage": {
                "input_tokens": usage.get("prompt_tokens") or usage.get("input_tokens"),
                "output_tokens": usage.get("completion_tokens") or usage.get("output_tokens"),
                "total_tokens": usage.get("total_tokens"),
            },
            "provider": "openai",
            "model": model,
        }

    async def aclose(self) -> None:
        await self._client.aclose()

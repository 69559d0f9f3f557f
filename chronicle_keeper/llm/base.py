from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional


class LLMError(RuntimeError):
    """Provider call failed; the message is for logs only, never for the client."""


class LLMHTTPError(LLMError):
    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"provider HTTP {status_code}: {body}")


class LLMResponseError(LLMError):
    pass


class LLMTransportError(LLMError):
    pass


class LLMClient(ABC):
    @abstractmethod
    async def generate_chat(
        self,
        messages: list[dict],
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        context_fields: Optional[dict] = None,
    ) -> dict:
        ...

    async def aclose(self) -> None:
        return None

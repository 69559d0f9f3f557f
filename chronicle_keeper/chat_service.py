from __future__ import annotations

from dataclasses import dataclass
import uuid
from typing import Any, Sequence

from .attachments import (
    AttachmentLimits,
    AttachmentsTooLarge,
    MalformedAttachments,
    NormalizedAttachments,
    normalize_attachments,
)
from .config_service import ConfigService, LLMSettings
from .context_pack import ContextPackBuilder
from .llm.base import LLMClient, LLMError
from .llm.openai_compat_client import OpenAICompatClient
from .logger_factory import get_logger, is_full_enabled
from .prompt_assembler import PromptAssembler
from .utils.logfmt import fmt, truncate_detail
from .world_store import WorldStore, build_world_store

FALLBACK_TEXT = "档案馆暂时无法回应，请稍后再试。"
METHOD_NOT_ALLOWED_TEXT = "仅支持 POST 请求"
NOT_CONFIGURED_TEXT = "后端未配置 LLM 环境变量"
MISSING_INPUT_TEXT = "缺少 message 或附件"
MALFORMED_ATTACHMENTS_TEXT = "附件格式不正确"
UNAUTHORIZED_TEXT = "未授权的请求"


def too_large_text(limits: AttachmentLimits) -> str:
    return f"附件过大：单个附件不超过 {_mb(limits.max_item_bytes)}，总计不超过 {_mb(limits.max_total_bytes)}。"


def _mb(n: int) -> str:
    mb = n / (1024 * 1024)
    return f"{mb:g}MB"


def warnings_suffix(warnings: Sequence[str]) -> str:
    if not warnings:
        return ""
    return "\n\n（附件提示：" + "；".join(warnings) + "）"


@dataclass(frozen=True)
class ChatOutcome:
    status_code: int
    text: str
    degraded: bool = False


def normalize_history(history: Any, limit: int = 6) -> list[dict]:
    """Keep only well-formed turns; anything not 'assistant' is treated as the user."""
    if not isinstance(history, list) or limit <= 0:
        return []
    out: list[dict] = []
    for h in history:
        if not isinstance(h, dict):
            continue
        role = "assistant" if h.get("role") == "assistant" else "user"
        content = h.get("content")
        content = "" if content is None else str(content)
        if not content:
            continue
        out.append({"role": role, "content": content})
    return out[-limit:]


class ChatService:
    """Runs one chat request: validate, gather lore, ask the provider, degrade on failure.

    Holds no per-request state; collaborators are passed in so tests can swap
    the store and the provider for fakes.
    """

    def __init__(
        self,
        *,
        llm: LLMClient | None,
        llm_settings: LLMSettings,
        context_builder: ContextPackBuilder,
        assembler: PromptAssembler,
        attachment_limits: AttachmentLimits | None = None,
        history_limit: int = 6,
        log_prompts: bool = False,
    ):
        self.llm = llm
        self.llm_settings = llm_settings
        self.context_builder = context_builder
        self.assembler = assembler
        self.attachment_limits = attachment_limits or AttachmentLimits()
        self.history_limit = history_limit
        self.log_prompts = log_prompts
        self.log = get_logger("ChatService")

    @property
    def store(self) -> WorldStore | None:
        return self.context_builder.store

    async def handle(self, payload: dict) -> ChatOutcome:
        correlation = f"chat-{uuid.uuid4().hex[:12]}"
        payload = payload if isinstance(payload, dict) else {}

        if self.llm is None or not self.llm_settings.configured:
            self.log.error(f"chat-misconfigured {fmt('correlation', correlation)} reason=missing-llm-env")
            return ChatOutcome(500, NOT_CONFIGURED_TEXT)

        message = payload.get("message")
        message = message if isinstance(message, str) else ""
        raw_attachments = payload.get("attachments")
        if not message.strip() and not raw_attachments:
            return ChatOutcome(400, MISSING_INPUT_TEXT)

        try:
            attachments = normalize_attachments(raw_attachments, self.attachment_limits)
        except AttachmentsTooLarge as e:
            self.log.info(f"chat-rejected {fmt('correlation', correlation)} {fmt('reason', e.code)} {fmt('scope', e.scope)} {fmt('size', e.size)}")
            return ChatOutcome(400, too_large_text(self.attachment_limits))
        except MalformedAttachments as e:
            self.log.info(f"chat-rejected {fmt('correlation', correlation)} {fmt('reason', e.code)}")
            return ChatOutcome(400, MALFORMED_ATTACHMENTS_TEXT)

        if not message.strip() and not attachments:
            # every attachment was dropped and nothing is left to answer
            return ChatOutcome(400, MISSING_INPUT_TEXT + warnings_suffix(attachments.warnings))

        location = payload.get("context")
        location = location if isinstance(location, str) else ("" if location is None else str(location))
        history = normalize_history(payload.get("history"), self.history_limit)

        context_pack = await self._context_pack(message, attachments, correlation)
        messages = self.assembler.build_messages(
            message=message,
            location_context=location,
            context_pack=context_pack,
            history=history,
            texts=attachments.texts,
            images=attachments.images,
        )
        self.log.info(
            f"chat-request {fmt('correlation', correlation)} {fmt('history', len(history))} "
            f"{fmt('images', len(attachments.images))} {fmt('texts', len(attachments.texts))} "
            f"{fmt('context_chars', len(context_pack))}"
        )
        if self.log_prompts or is_full_enabled():
            self.log.debug(f"chat-prompt {fmt('correlation', correlation)} {fmt('system', messages[0]['content'])}")

        s = self.llm_settings
        try:
            result = await self.llm.generate_chat(
                messages,
                model=s.model,
                temperature=s.temperature,
                max_tokens=s.max_tokens,
                context_fields={"correlation": correlation},
            )
        except LLMError as e:
            self.log.error(f"chat-provider-error {fmt('correlation', correlation)} {fmt('type', type(e).__name__)} {fmt('detail', truncate_detail(e))}")
            return ChatOutcome(200, FALLBACK_TEXT, degraded=True)
        except Exception as e:
            self.log.error(f"chat-provider-unexpected {fmt('correlation', correlation)} {fmt('type', type(e).__name__)} {fmt('detail', truncate_detail(repr(e)))}")
            return ChatOutcome(200, FALLBACK_TEXT, degraded=True)

        text = str((result or {}).get("text") or "").strip()
        if not text:
            self.log.error(f"chat-provider-empty {fmt('correlation', correlation)}")
            return ChatOutcome(200, FALLBACK_TEXT, degraded=True)
        usage = (result or {}).get("usage") or {}
        self.log.info(f"[llm-finish] {fmt('correlation', correlation)} {fmt('model', s.model)} {fmt('output_tokens', usage.get('output_tokens'))}")
        return ChatOutcome(200, text + warnings_suffix(attachments.warnings))

    async def _context_pack(self, message: str, attachments: NormalizedAttachments, correlation: str) -> str:
        result = await self.context_builder.build(message, [t.text for t in attachments.texts], correlation=correlation)
        if not result.ok:
            # lore is optional; answer without it
            self.log.info(f"context-degraded {fmt('correlation', correlation)}")
            return ""
        return result.text

    async def aclose(self) -> None:
        if self.llm is not None:
            await self.llm.aclose()
        if self.store is not None:
            await self.store.aclose()


def build_chat_service(cfg: ConfigService) -> ChatService:
    settings = cfg.llm_settings()
    llm = None
    if settings.configured:
        llm = OpenAICompatClient(base_url=str(settings.base_url), api_key=str(settings.api_key), timeout=settings.timeout)
        get_logger("ChatService").info(f"llm-client-enabled {fmt('url', llm.chat_url)} {fmt('model', settings.model)}")
    store = build_world_store(cfg.supabase_settings(), timeout=cfg.store_timeout())
    return ChatService(
        llm=llm,
        llm_settings=settings,
        context_builder=ContextPackBuilder(store, cfg.context_budgets()),
        assembler=PromptAssembler(template_path=cfg.system_template_path(), location_limit=cfg.location_context_limit()),
        attachment_limits=cfg.attachment_limits(),
        history_limit=cfg.history_limit(),
        log_prompts=cfg.log_prompts(),
    )

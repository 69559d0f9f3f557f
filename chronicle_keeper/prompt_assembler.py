from __future__ import annotations

from pathlib import Path
from typing import Sequence

from jinja2 import BaseLoader, Environment, TemplateError

from .attachments import ImageAttachment, TextAttachment
from .context_pack import clip_text
from .logger_factory import get_logger

ATTACHMENT_PLACEHOLDER = "请阅读附件并回答。"
CONTEXT_PACK_HEADER = "【世界资料】"
NO_LOCATION = "无"

DEFAULT_SYSTEM_TEMPLATE = """\
你是「编年史守护者」，一位栖居在奇幻大陆地图中的古老智能。
口吻睿智、略带史诗感，但保持友好与简洁。

当前选中地点信息（如有）：{{ location }}。
{% if context_pack %}
{{ context_header }}
以下是与用户提问相关的设定资料，回答时以此为准，不要逐字复述：
{{ context_pack }}
{% endif %}
回答要求：
- 80 字以内，中文输出。
- 若被问及地点/角色，结合已知信息进行沉浸式扩写，但不要胡编完全违背设定的事实。
- 如果用户附带了图片或文本附件，先理解附件内容再作答。
- 如果用户想继续探索，引导其查看地图或英雄群像。"""


def attachment_section(att: TextAttachment) -> str:
    return f"【附件：{att.filename}】\n{att.text}"


class PromptAssembler:
    def __init__(self, system_template: str | None = None, *, template_path: str | None = None, location_limit: int = 1200):
        self._template_path = template_path or ""
        self._default_template = system_template or DEFAULT_SYSTEM_TEMPLATE
        self._file_template: str | None = None
        self._mtime_ns = 0
        self.location_limit = location_limit
        self.env = Environment(loader=BaseLoader(), keep_trailing_newline=False)
        self._maybe_reload_template()

    def _maybe_reload_template(self) -> None:
        if not self._template_path:
            return
        p = Path(self._template_path)
        try:
            m = p.stat().st_mtime_ns
        except OSError:
            if self._file_template is not None:
                get_logger("PromptAssembler").warning(f"system-template-missing path={p}")
            self._file_template = None
            self._mtime_ns = 0
            return
        if m != self._mtime_ns:
            try:
                self._file_template = p.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                get_logger("PromptAssembler").warning(f"system-template-unreadable path={p} error={e!r}")
                self._file_template = None
            self._mtime_ns = m

    @property
    def system_template(self) -> str:
        self._maybe_reload_template()
        return self._file_template or self._default_template

    def build_system_message(self, location_context: str | None, context_pack: str = "") -> str:
        location = clip_text(" ".join(str(location_context or "").split()), self.location_limit) or NO_LOCATION
        fields = {
            "location": location,
            "context_pack": (context_pack or "").strip(),
            "context_header": CONTEXT_PACK_HEADER,
        }
        try:
            out = self.env.from_string(self.system_template).render(**fields)
        except TemplateError as e:
            get_logger("PromptAssembler").warning(f"system-template-error error={e!r}; using built-in template")
            out = self.env.from_string(DEFAULT_SYSTEM_TEMPLATE).render(**fields)
        # collapse the blank lines left behind by an omitted block
        lines = out.strip().splitlines()
        compact: list[str] = []
        for line in lines:
            if not line.strip() and compact and not compact[-1].strip():
                continue
            compact.append(line)
        return "\n".join(compact)

    @staticmethod
    def compose_user_text(message: str | None, texts: Sequence[TextAttachment] = (), has_attachments: bool = False) -> str:
        effective = (message or "").strip()
        if not effective and (has_attachments or texts):
            effective = ATTACHMENT_PLACEHOLDER
        sections = [attachment_section(t) for t in texts]
        return "\n\n".join([effective, *sections]) if sections else effective

    def build_user_content(self, message: str | None, texts: Sequence[TextAttachment] = (), images: Sequence[ImageAttachment] = ()):
        text = self.compose_user_text(message, texts, has_attachments=bool(texts or images))
        if not images:
            return text
        parts: list[dict] = [{"type": "text", "text": text}]
        for img in images:
            parts.append({"type": "image_url", "image_url": {"url": img.data_uri()}})
        return parts

    def build_messages(
        self,
        *,
        message: str | None,
        location_context: str | None = None,
        context_pack: str = "",
        history: Sequence[dict] = (),
        texts: Sequence[TextAttachment] = (),
        images: Sequence[ImageAttachment] = (),
    ) -> list[dict]:
        messages: list[dict] = [{"role": "system", "content": self.build_system_message(location_context, context_pack)}]
        for turn in history:
            messages.append({"role": turn["role"], "content": turn["content"]})
        messages.append({"role": "user", "content": self.build_user_content(message, texts, images)})
        return messages

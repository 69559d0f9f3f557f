from __future__ import annotations

from dataclasses import dataclass, field
import re
from typing import Any, Union

ATTACHMENTS_TOO_LARGE = "ATTACHMENTS_TOO_LARGE"
MALFORMED_ATTACHMENTS = "MALFORMED_ATTACHMENTS"

IMAGE_CONTENT_TYPES = frozenset({"image/jpeg", "image/png", "image/webp"})
TEXT_CONTENT_TYPES = frozenset({"text/plain", "text/markdown", "application/json"})

MIB = 1024 * 1024

_DATA_URI_RE = re.compile(r"^\s*data:[^,]*?;base64,", re.IGNORECASE)
_BARE_MARKER_RE = re.compile(r"^\s*base64,", re.IGNORECASE)
_WS_RE = re.compile(r"\s+")


class AttachmentError(Exception):
    """Base class for attachment failures that reject the whole chat request."""

    code = "ATTACHMENT_ERROR"


class AttachmentsTooLarge(AttachmentError):
    code = ATTACHMENTS_TOO_LARGE

    def __init__(self, filename: str, size: int, limit: int, scope: str):
        self.filename = filename
        self.size = size
        self.limit = limit
        self.scope = scope  # 'item' | 'total'
        super().__init__(f"{self.code} scope={scope} file={filename} size={size} limit={limit}")


class MalformedAttachments(AttachmentError):
    code = MALFORMED_ATTACHMENTS


@dataclass(frozen=True)
class AttachmentLimits:
    max_item_bytes: int = 2 * MIB
    max_total_bytes: int = 4 * MIB
    max_text_chars: int = 8000


@dataclass(frozen=True)
class ImageAttachment:
    filename: str
    content_type: str
    base64: str
    size: int
    kind: str = field(default="image", init=False)

    def data_uri(self) -> str:
        return f"data:{self.content_type};base64,{self.base64}"


@dataclass(frozen=True)
class TextAttachment:
    filename: str
    content_type: str
    text: str
    size: int
    kind: str = field(default="text", init=False)


Attachment = Union[ImageAttachment, TextAttachment]


@dataclass(frozen=True)
class NormalizedAttachments:
    images: tuple[ImageAttachment, ...] = ()
    texts: tuple[TextAttachment, ...] = ()
    warnings: tuple[str, ...] = ()
    total_bytes: int = 0

    def __bool__(self) -> bool:
        return bool(self.images or self.texts)


def strip_base64_prefix(payload: str) -> str:
    """Drop a `data:...;base64,` or bare `base64,` prefix and all whitespace."""
    s = _DATA_URI_RE.sub("", payload, count=1)
    s = _BARE_MARKER_RE.sub("", s, count=1)
    return _WS_RE.sub("", s)


def estimate_base64_bytes(payload: str) -> int:
    s = _WS_RE.sub("", payload).rstrip("=")
    return (len(s) * 3) // 4


def normalize_content_type(value: Any) -> str:
    ct = str(value or "").strip().lower()
    # ignore parameters such as "; charset=utf-8"
    return ct.split(";", 1)[0].strip()


def _display_name(raw: dict, index: int) -> str:
    name = raw.get("filename")
    if isinstance(name, str) and name.strip():
        return name.strip()
    return f"附件{index + 1}"


def normalize_attachments(raw: Any, limits: AttachmentLimits | None = None) -> NormalizedAttachments:
    """Validate and bound client-submitted attachments.

    Unsupported or empty items are dropped with a warning; exceeding the
    per-item or per-request byte cap raises AttachmentsTooLarge and nothing
    is returned. Images and texts keep their relative input order.
    """
    limits = limits or AttachmentLimits()
    if raw is None:
        return NormalizedAttachments()
    if not isinstance(raw, (list, tuple)):
        raise MalformedAttachments("attachments must be a list")

    images: list[ImageAttachment] = []
    texts: list[TextAttachment] = []
    warnings: list[str] = []
    total = 0

    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            warnings.append(f"已忽略第 {index + 1} 个附件：格式无法识别")
            continue
        name = _display_name(item, index)
        kind = str(item.get("kind") or "").strip().lower()
        ctype = normalize_content_type(item.get("contentType"))

        if kind == "image":
            if ctype not in IMAGE_CONTENT_TYPES:
                warnings.append(f"已忽略附件 {name}：不支持的图片类型 {ctype or '未知'}")
                continue
            data = item.get("base64")
            data = strip_base64_prefix(data) if isinstance(data, str) else ""
            size = estimate_base64_bytes(data)
            if size <= 0:
                warnings.append(f"已忽略附件 {name}：内容为空")
                continue
            total = _account(name, size, total, limits)
            images.append(ImageAttachment(filename=name, content_type=ctype, base64=data, size=size))
        elif kind == "text":
            if ctype not in TEXT_CONTENT_TYPES:
                warnings.append(f"已忽略附件 {name}：不支持的文本类型 {ctype or '未知'}")
                continue
            body = item.get("text")
            body = body if isinstance(body, str) else ""
            body = body[: limits.max_text_chars]
            size = len(body.encode("utf-8"))
            if size <= 0:
                warnings.append(f"已忽略附件 {name}：内容为空")
                continue
            total = _account(name, size, total, limits)
            texts.append(TextAttachment(filename=name, content_type=ctype, text=body, size=size))
        else:
            warnings.append(f"已忽略附件 {name}：未知的附件类型")

    return NormalizedAttachments(images=tuple(images), texts=tuple(texts), warnings=tuple(warnings), total_bytes=total)


def _account(name: str, size: int, total: int, limits: AttachmentLimits) -> int:
    if size > limits.max_item_bytes:
        raise AttachmentsTooLarge(name, size, limits.max_item_bytes, "item")
    total += size
    if total > limits.max_total_bytes:
        raise AttachmentsTooLarge(name, total, limits.max_total_bytes, "total")
    return total

from __future__ import annotations

from dataclasses import dataclass, fields
import os
from pathlib import Path

import yaml

from .attachments import AttachmentLimits
from .context_pack import ContextBudgets
from .world_store import SupabaseSettings


@dataclass
class Config:
    raw: dict


@dataclass(frozen=True)
class LLMSettings:
    base_url: str | None
    api_key: str | None
    model: str | None
    temperature: float = 0.7
    max_tokens: int = 180
    timeout: float = 60.0

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key and self.model)


def _env(*names: str) -> str | None:
    for n in names:
        v = os.getenv(n)
        if v is not None and v.strip():
            return v.strip()
    return None


def _overlay(cls, base, section: dict):
    """Build a frozen dataclass from its defaults plus the integer keys present in a config section."""
    values = {}
    for f in fields(cls):
        if not f.init:
            continue
        v = section.get(f.name) if isinstance(section, dict) else None
        if v is None:
            values[f.name] = getattr(base, f.name)
            continue
        try:
            values[f.name] = int(v)
        except (TypeError, ValueError):
            values[f.name] = getattr(base, f.name)
    return cls(**values)


class ConfigService:
    """YAML settings plus environment secrets.

    A missing config file is not an error: every accessor has a default, and
    the provider/store credentials come from the environment anyway.
    """

    def __init__(self, path: str | Path = "config.yaml"):
        self._path = Path(path)
        self._mtime_ns = 0
        self._cfg = Config(raw={})
        self._maybe_reload()

    def _maybe_reload(self) -> None:
        try:
            m = self._path.stat().st_mtime_ns
        except OSError:
            return
        if m != self._mtime_ns:
            try:
                with self._path.open("r", encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError):
                # keep the previous config on a bad edit
                return
            self._cfg = Config(raw=data if isinstance(data, dict) else {})
            self._mtime_ns = m

    @property
    def raw(self) -> dict:
        self._maybe_reload()
        return self._cfg.raw

    def _section(self, *keys: str) -> dict:
        node = self.raw
        for k in keys:
            node = node.get(k) if isinstance(node, dict) else None
        return node if isinstance(node, dict) else {}

    # ---------- Provider / store ----------
    def model(self) -> dict:
        return self._section("model")

    def llm_settings(self) -> LLMSettings:
        m = self.model()
        try:
            temperature = float(m.get("temperature", 0.7))
        except (TypeError, ValueError):
            temperature = 0.7
        try:
            max_tokens = int(m.get("max_tokens", 180))
        except (TypeError, ValueError):
            max_tokens = 180
        try:
            timeout = float(m.get("timeout", 60.0))
        except (TypeError, ValueError):
            timeout = 60.0
        return LLMSettings(
            base_url=_env("LLM_BASE_URL") or (str(m["base_url"]) if m.get("base_url") else None),
            api_key=_env("LLM_API_KEY"),
            model=_env("LLM_MODEL") or (str(m["name"]) if m.get("name") else None),
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )

    def supabase_settings(self) -> SupabaseSettings:
        return SupabaseSettings(
            url=_env("SUPABASE_URL", "VITE_SUPABASE_URL"),
            service_key=_env("SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_SECRET_KEY", "SUPABASE_KEY"),
        )

    def store_timeout(self) -> float:
        try:
            return float(self._section("world_store").get("timeout", 15.0))
        except (TypeError, ValueError):
            return 15.0

    # ---------- Chat pipeline limits ----------
    def attachment_limits(self) -> AttachmentLimits:
        return _overlay(AttachmentLimits, AttachmentLimits(), self._section("chat", "attachments"))

    def context_budgets(self) -> ContextBudgets:
        return _overlay(ContextBudgets, ContextBudgets(), self._section("chat", "context"))

    def history_limit(self) -> int:
        try:
            return max(0, int(self._section("chat").get("history_limit", 6)))
        except (TypeError, ValueError):
            return 6

    def location_context_limit(self) -> int:
        try:
            return int(self._section("chat").get("location_context_chars", 1200))
        except (TypeError, ValueError):
            return 1200

    def system_template_path(self) -> str | None:
        v = self._section("prompt").get("system_template_path")
        return str(v) if isinstance(v, str) and v.strip() else None

    # ---------- HTTP ----------
    def html_host(self) -> str:
        v = self._section("http").get("host")
        return str(v) if v else "127.0.0.1"

    def html_port(self) -> int:
        try:
            return int(self._section("http").get("port", 8005))
        except (TypeError, ValueError):
            return 8005

    def shared_secret(self) -> str | None:
        """Optional token for /api/chat, checked against the X-Chat-Token header."""
        v = _env("CHAT_SHARED_SECRET") or self._section("http").get("shared_secret")
        v = str(v).strip() if v else None
        return v or None

    # ---------- Logging ----------
    def log_level(self) -> str:
        return str(self.raw.get("LOG_LEVEL", "INFO")).upper()

    def lib_log_level(self) -> str | None:
        v = self.raw.get("LIB_LOG_LEVEL")
        return str(v).upper() if v else None

    def log_tz(self) -> str | None:
        v = self.raw.get("LOG_TZ")
        return str(v) if v else None

    def log_console(self) -> bool:
        return bool(self.raw.get("LOG_CONSOLE", False))

    def log_errors(self) -> bool:
        return bool(self.raw.get("LOG_ERRORS", False))

    def log_prompts(self) -> bool:
        return bool(self.raw.get("LOG_PROMPTS", False))

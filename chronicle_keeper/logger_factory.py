import logging
from logging.handlers import RotatingFileHandler
import os
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_CONFIGURED = False
_FULL_ENABLED = False

# Libraries that log every request at INFO; kept at WARNING unless LIB_LOG_LEVEL says otherwise
_NOISY_LIBS = (
    "httpx",
    "httpcore",
    "uvicorn.access",
)

_PATTERN = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S%z"


class _TzFormatter(logging.Formatter):
    def __init__(self, *args, tz: Optional[str] = None, **kwargs):
        super().__init__(*args, **kwargs)
        # tz == "UTC" forces UTC, None/"system" uses the host zone, anything else is an IANA name
        import datetime as _dt
        if tz == "UTC":
            self._tz = _dt.timezone.utc
        elif tz is None or tz == "system":
            self._tz = _dt.datetime.now().astimezone().tzinfo
        else:
            try:
                self._tz = ZoneInfo(tz)
            except ZoneInfoNotFoundError:
                self._tz = _dt.datetime.now().astimezone().tzinfo

    def formatTime(self, record, datefmt=None):
        import datetime as _dt
        dt = _dt.datetime.fromtimestamp(record.created, tz=self._tz or _dt.datetime.now().astimezone().tzinfo)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat()


def _rotating_file(path: str, level: int, tz: Optional[str]) -> RotatingFileHandler:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    handler = RotatingFileHandler(
        filename=path,
        mode="a",
        maxBytes=1_000_000,
        backupCount=5,
        encoding="utf-8",
        delay=False,
    )
    handler.setLevel(level)
    handler.setFormatter(_TzFormatter(_PATTERN, tz=tz, datefmt=_DATEFMT))
    return handler


def configure_logging(level: Optional[str] = None, tz: Optional[str] = None, lib_log_level: Optional[str] = None, console_to_file: bool | None = None, error_file: bool | None = None) -> None:
    global _CONFIGURED, _FULL_ENABLED
    if _CONFIGURED:
        return
    lvl = (level or "INFO").upper()
    if lvl not in ("INFO", "DEBUG", "FULL"):
        lvl = "INFO"
    py_level = logging.DEBUG if lvl in ("DEBUG", "FULL") else logging.INFO
    _FULL_ENABLED = (lvl == "FULL")

    root = logging.getLogger()
    root.setLevel(py_level)
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler()
    handler.setLevel(py_level)
    handler.setFormatter(_TzFormatter(_PATTERN, tz=tz, datefmt=_DATEFMT))
    root.addHandler(handler)

    # Mirror console output to logs/log.log when LOG_CONSOLE is on
    mirror_enabled = console_to_file
    env_console = os.getenv("LOG_CONSOLE")
    if env_console is not None:
        mirror_enabled = str(env_console).lower() in ("1", "true", "yes", "on")
    if mirror_enabled:
        try:
            root.addHandler(_rotating_file("logs/log.log", py_level, tz))
        except OSError:
            root.warning("log-file-unavailable path=logs/log.log")

    errors_enabled = str(os.getenv("LOG_ERRORS", "")).lower() in ("1", "true", "yes", "on")
    if error_file is not None:
        errors_enabled = bool(error_file)
    if errors_enabled:
        try:
            root.addHandler(_rotating_file("logs/errors.log", logging.ERROR, tz))
        except OSError:
            root.warning("log-file-unavailable path=logs/errors.log")

    lib_level_name = lib_log_level or os.getenv("LIB_LOG_LEVEL")
    if lib_level_name:
        lib_level = getattr(logging, lib_level_name.upper(), logging.WARNING)
    else:
        lib_level = logging.WARNING
    for name in _NOISY_LIBS:
        logging.getLogger(name).setLevel(lib_level)

    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    # Not configured explicitly: INFO, host timezone
    if not _CONFIGURED:
        configure_logging(level="INFO", tz=None)
    return logging.getLogger(name)


def is_full_enabled() -> bool:
    return _FULL_ENABLED

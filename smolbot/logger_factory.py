import logging
from logging.handlers import RotatingFileHandler
import os
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_CONFIGURED = False
_FULL_ENABLED = False

_PATTERN = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S%z"
_NOISY_LIBS = (
    "discord",
    "discord.http",
    "discord.gateway",
    "discord.client",
    "httpx",
    "httpcore",
    "uvicorn",
    "uvicorn.access",
)


class _TzFormatter(logging.Formatter):
    def __init__(self, *args, tz: Optional[str] = None, **kwargs):
        super().__init__(*args, **kwargs)
        # "UTC" forces UTC, None/"system" uses the host zone, anything else is an IANA name
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
        dt = _dt.datetime.fromtimestamp(record.created, tz=self._tz)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat()


def _env_flag(name: str) -> bool | None:
    v = os.getenv(name)
    if v is None:
        return None
    return str(v).lower() in ("1", "true", "yes", "on")


def _rotating(path: str, level: int, tz: Optional[str]) -> logging.Handler:
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


def configure_logging(
    level: Optional[str] = None,
    tz: Optional[str] = None,
    lib_log_level: Optional[str] = None,
    console_to_file: bool | None = None,
    error_file: bool | None = None,
    log_dir: str = "logs",
) -> None:
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

    console = logging.StreamHandler()
    console.setLevel(py_level)
    console.setFormatter(_TzFormatter(_PATTERN, tz=tz, datefmt=_DATEFMT))
    root.addHandler(console)

    # LOG_CONSOLE in the environment wins over the config flag
    mirror_enabled = _env_flag("LOG_CONSOLE")
    if mirror_enabled is None:
        mirror_enabled = bool(console_to_file)
    if mirror_enabled:
        try:
            root.addHandler(_rotating(os.path.join(log_dir, "log.log"), py_level, tz))
        except OSError as e:
            root.warning(f"[log-mirror-disabled] {e}")

    errors_enabled = _env_flag("LOG_ERRORS")
    if error_file is not None:
        errors_enabled = bool(error_file)
    if errors_enabled:
        try:
            root.addHandler(_rotating(os.path.join(log_dir, "errors.log"), logging.ERROR, tz))
        except OSError as e:
            root.warning(f"[log-errors-disabled] {e}")

    lib_level_name = lib_log_level or os.getenv("LIB_LOG_LEVEL")
    lib_level = getattr(logging, lib_level_name.upper(), logging.WARNING) if lib_level_name else logging.WARNING
    for name in _NOISY_LIBS:
        logging.getLogger(name).setLevel(lib_level)

    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    # Unconfigured callers (tests, scripts) get INFO on the system timezone
    if not _CONFIGURED:
        configure_logging(level="INFO", tz="system")
    return logging.getLogger(name)


def is_full_enabled() -> bool:
    return _FULL_ENABLED


def set_log_levels(level: Optional[str] = None, lib_log_level: Optional[str] = None) -> None:
    """Adjust root and library logger levels at runtime without rebuilding handlers.

    - level: "INFO" | "DEBUG" | "FULL" (FULL behaves like DEBUG and also logs payloads)
    - lib_log_level: applied to discord/httpx/httpcore/uvicorn loggers
    """
    global _FULL_ENABLED
    lvl = (level or "INFO").upper()
    if lvl not in ("INFO", "DEBUG", "FULL"):
        lvl = "INFO"
    py_level = logging.DEBUG if lvl in ("DEBUG", "FULL") else logging.INFO
    _FULL_ENABLED = (lvl == "FULL")

    root = logging.getLogger()
    root.setLevel(py_level)
    for h in root.handlers:
        # The error file stays at ERROR regardless of the root level
        if isinstance(h, RotatingFileHandler) and h.level >= logging.ERROR:
            continue
        h.setLevel(py_level)

    if lib_log_level:
        lib_level = getattr(logging, lib_log_level.upper(), logging.WARNING)
        for name in _NOISY_LIBS:
            logging.getLogger(name).setLevel(lib_level)

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import re
import yaml

from .llm.fallback_router import ModelConfig

DEFAULT_CHAT_MODELS = ("mixtral-8x7b-32768", "llama-70b-4096", "llama-13b-4096")
DEFAULT_VISION_MODEL = "llama-3.2-11b-vision-preview"
DEFAULT_INTERJECTION_PROMPT = (
    "Based on this conversation, generate a short, playful observation that teases or banters with "
    "someone to get their attention. Use <@userid> when appropriate to draw them into the discussion:"
)


@dataclass
class Config:
    raw: dict


@dataclass(frozen=True)
class LimiterSettings:
    max_requests: int = 30
    window_seconds: float = 60.0
    max_wait_seconds: float = 300.0


@dataclass(frozen=True)
class SchedulerSettings:
    max_concurrent: int = 3
    min_delay_seconds: float = 2.0
    job_timeout_seconds: float = 30.0
    response_timeout_seconds: float = 24.0
    mention_priority: int = 10
    reply_priority: int = 5
    interjection_priority: int = 0


@dataclass(frozen=True)
class CacheSettings:
    max_size: int = 20
    backend: str = "none"
    data_dir: str = "data"
    sqlite_path: str | None = None
    sync_interval_seconds: float = 300.0


@dataclass(frozen=True)
class InterjectionSettings:
    enabled: bool = False
    interval_seconds: float = 3600.0
    max_tokens: int = 256
    temperature: float = 0.8
    prompt: str = DEFAULT_INTERJECTION_PROMPT


def _as_int(v, default: int) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


def _as_float(v, default: float) -> float:
    try:
        return float(v)
    except (TypeError, ValueError):
        return default


class ConfigService:
    def __init__(self, path: str | Path):
        self._path = Path(path)
        with self._path.open("r", encoding="utf-8") as f:
            self._cfg = Config(raw=yaml.safe_load(f) or {})
        try:
            self._mtime_ns = self._path.stat().st_mtime_ns
        except OSError:
            self._mtime_ns = 0

    def _maybe_reload(self) -> None:
        try:
            m = self._path.stat().st_mtime_ns
        except OSError:
            return
        if m != getattr(self, "_mtime_ns", 0):
            try:
                with self._path.open("r", encoding="utf-8") as f:
                    self._cfg = Config(raw=yaml.safe_load(f) or {})
                self._mtime_ns = m
            except (OSError, yaml.YAMLError):
                # On read error, keep previous config
                pass

    def _section(self, name: str) -> dict:
        self._maybe_reload()
        v = self._cfg.raw.get(name)
        return v if isinstance(v, dict) else {}

    # ---------- Logging ----------
    def log_level(self) -> str:
        self._maybe_reload()
        return str(self._cfg.raw.get("LOG_LEVEL", "INFO")).upper()

    def lib_log_level(self) -> str | None:
        v = self._cfg.raw.get("LIB_LOG_LEVEL")
        return str(v).upper() if v else None

    def log_console(self) -> bool:
        """Mirror console output to logs/log.log."""
        self._maybe_reload()
        return bool(self._cfg.raw.get("LOG_CONSOLE", False))

    def log_errors(self) -> bool:
        """Always write ERROR-and-above to logs/errors.log, independent of LOG_LEVEL."""
        self._maybe_reload()
        return bool(self._cfg.raw.get("LOG_ERRORS", False))

    def log_timezone(self) -> str | None:
        v = self._cfg.raw.get("LOG_TZ")
        return str(v) if v else None

    # ---------- Persona ----------
    def persona_name(self) -> str:
        """Return the selected persona folder name, default 'default'.

        Only allows safe folder names (alnum, dash, underscore).
        """
        self._maybe_reload()
        name = self._cfg.raw.get("persona")
        if not isinstance(name, str) or not re.match(r"^[A-Za-z0-9_-]+$", name.strip()):
            return "default"
        return name.strip()

    def _persona_root(self) -> Path:
        return Path("personas") / self.persona_name()

    def system_prompt_path(self) -> str:
        root = self._persona_root()
        cand = root / "system.txt"
        if cand.exists():
            return str(cand)
        return str(Path("personas") / "default" / "system.txt")

    def persona_path(self) -> str:
        root = self._persona_root()
        for cand in (root / "persona.md", Path("personas") / "default" / "persona.md"):
            if cand.exists():
                return str(cand)
        return str(root / "persona.md")

    def assistant_label(self) -> str:
        v = self._section("discord").get("assistant_label")
        return str(v) if v else "SmolBot"

    # ---------- Discord ----------
    def discord_intents(self) -> dict:
        return self._section("discord").get("intents", {}) or {}

    def discord_admin_user_ids(self) -> set[str]:
        """Return admin user IDs from config as strings.

        Config path: discord.admin_user_ids: ["123", "456"]
        """
        ids = self._section("discord").get("admin_user_ids", [])
        if isinstance(ids, (list, tuple)):
            return {str(v) for v in ids}
        return {str(ids)} if ids else set()

    def discord_message_char_limit(self) -> int:
        return _as_int(self._section("discord").get("message_char_limit", 2000), 2000)

    def ignore_bots(self) -> bool:
        return bool(self._section("discord").get("ignore_bots", True))

    # ---------- Cache ----------
    def cache(self) -> CacheSettings:
        c = self._section("cache")
        sqlite_path = c.get("sqlite_path")
        return CacheSettings(
            max_size=max(1, _as_int(c.get("max_size", 20), 20)),
            backend=str(c.get("backend", "none")).lower(),
            data_dir=str(c.get("data_dir", "data")),
            sqlite_path=str(sqlite_path) if sqlite_path else None,
            sync_interval_seconds=_as_float(c.get("sync_interval_seconds", 300), 300.0),
        )

    # ---------- Context ----------
    def window_size(self) -> int:
        return _as_int(self._section("context").get("window_size", 15), 15)

    def mention_window_size(self) -> int:
        return _as_int(self._section("context").get("mention_window_size", 20), 20)

    # ---------- Rate limits / scheduler ----------
    def rate_limits(self) -> LimiterSettings:
        r = self._section("rate_limits")
        return LimiterSettings(
            max_requests=max(1, _as_int(r.get("max_requests", 30), 30)),
            window_seconds=_as_float(r.get("window_seconds", 60), 60.0),
            max_wait_seconds=_as_float(r.get("max_wait_seconds", 300), 300.0),
        )

    def scheduler(self) -> SchedulerSettings:
        s = self._section("scheduler")
        job_timeout = _as_float(s.get("job_timeout_seconds", 30.0), 30.0)
        # Response budget must fit inside the job budget
        response_timeout = _as_float(s.get("response_timeout_seconds", job_timeout * 0.8), job_timeout * 0.8)
        return SchedulerSettings(
            max_concurrent=max(1, _as_int(s.get("max_concurrent", 3), 3)),
            min_delay_seconds=_as_float(s.get("min_delay_seconds", 2.0), 2.0),
            job_timeout_seconds=job_timeout,
            response_timeout_seconds=min(response_timeout, job_timeout) if job_timeout > 0 else response_timeout,
            mention_priority=_as_int(s.get("mention_priority", 10), 10),
            reply_priority=_as_int(s.get("reply_priority", 5), 5),
            interjection_priority=_as_int(s.get("interjection_priority", 0), 0),
        )

    # ---------- Models ----------
    def model(self) -> dict:
        return self._section("model")

    def _tier_config(self, kind: str, defaults: tuple[str, str, str], max_retries: int, max_tokens: int) -> ModelConfig:
        m = self.model().get(kind) or {}
        if not isinstance(m, dict):
            m = {}
        return ModelConfig(
            primary=str(m.get("primary") or defaults[0]),
            fallback=str(m.get("fallback") or defaults[1]),
            instant_fallback=str(m.get("instant_fallback") or defaults[2]),
            max_retries=max(0, _as_int(m.get("max_retries", max_retries), max_retries)),
            max_tokens=_as_int(m.get("max_tokens", max_tokens), max_tokens),
            temperature=_as_float(m.get("temperature", 0.7), 0.7),
        )

    def model_configs(self) -> dict[str, ModelConfig]:
        return {
            "chat": self._tier_config("chat", DEFAULT_CHAT_MODELS, 3, 256),
            "vision": self._tier_config("vision", (DEFAULT_VISION_MODEL,) * 3, 2, 512),
        }

    def use_fallback(self) -> bool:
        return bool(self.model().get("use_fallback", True))

    def use_instant_fallback(self) -> bool:
        return bool(self.model().get("use_instant_fallback", True))

    def model_base_url(self) -> str:
        return str(self.model().get("base_url") or "https://api.groq.com/openai/v1/chat/completions")

    def model_timeout(self) -> float:
        return _as_float(self.model().get("timeout", 60.0), 60.0)

    def vision_enabled(self) -> bool:
        return bool(self.model().get("vision_enabled", True))

    # ---------- Interjections ----------
    def interjections(self) -> InterjectionSettings:
        i = self._section("interjections")
        return InterjectionSettings(
            enabled=bool(i.get("enabled", False)),
            interval_seconds=_as_float(i.get("interval_seconds", 3600), 3600.0),
            max_tokens=_as_int(i.get("max_tokens", 256), 256),
            temperature=_as_float(i.get("temperature", 0.8), 0.8),
            prompt=str(i.get("prompt") or DEFAULT_INTERJECTION_PROMPT),
        )

    # ---------- HTTP status surface ----------
    def http_enabled(self) -> bool:
        return bool(self._section("http").get("enabled", False))

    def html_host(self) -> str:
        """Host interface for the HTTP server. Default to 127.0.0.1 (safe)."""
        v = self._section("http").get("host")
        return str(v) if v else "127.0.0.1"

    def html_port(self) -> int:
        return _as_int(self._section("http").get("port", 8005), 8005)

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import re
import yaml

from .logger_factory import get_logger


_FRONTMATTER_RE = re.compile(r"^---\n(.*?)\n---\n(.*)$", re.DOTALL)


@dataclass
class Persona:
    meta: dict
    body: str


class PersonaService:
    """Persona markdown with optional YAML front matter, reloaded when the file changes."""

    def __init__(self, path: str):
        self.path = Path(path) if path else Path("personas/default/persona.md")
        self.log = get_logger("PersonaService")
        self._persona = self._load()
        self._mtime_ns = self._stat()

    def _stat(self) -> int:
        try:
            return self.path.stat().st_mtime_ns
        except OSError:
            return 0

    def set_path(self, path: str) -> None:
        p = Path(path)
        if p != self.path:
            self.path = p
            self._persona = self._load()
            self._mtime_ns = self._stat()

    def _load(self) -> Persona:
        try:
            text = self.path.read_text(encoding="utf-8") if self.path.exists() else ""
        except OSError as e:
            self.log.warning(f"[persona-read-error] path={self.path} {e!r}")
            text = ""
        m = _FRONTMATTER_RE.match(text)
        if m:
            fm, body = m.group(1), m.group(2)
            try:
                meta = yaml.safe_load(fm) or {}
            except yaml.YAMLError:
                meta = {}
        else:
            meta, body = {}, text
        return Persona(meta=meta if isinstance(meta, dict) else {}, body=body.strip())

    def _maybe_reload(self) -> None:
        m = self._stat()
        if m and m != self._mtime_ns:
            self._persona = self._load()
            self._mtime_ns = m

    def meta(self) -> dict:
        self._maybe_reload()
        return self._persona.meta

    def body(self) -> str:
        self._maybe_reload()
        return self._persona.body

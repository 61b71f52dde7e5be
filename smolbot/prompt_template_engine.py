from __future__ import annotations

from pathlib import Path
from typing import Optional

from jinja2 import Environment, BaseLoader

from .models import CachedMessage
from .persona_service import PersonaService

DEFAULT_SYSTEM_TEMPLATE = (
    "You are {{ assistant_label }} (<@{{ assistant_id }}>), a participant in a Discord chat. "
    "Messages are shown as <@id> (name): content. Mention people as <@id>. "
    "Keep replies short and conversational."
)

HISTORY_TEMPLATE = "CONVERSATION HISTORY (for context):\n{{ history }}"

CURRENT_TEMPLATE = """CURRENT MESSAGE TO RESPOND TO:
User {{ author_name }} (<@{{ author_id }}>) {% if is_reply %}is replying to a previous message{% else %}has directly mentioned you{% endif %}
Their message is: "{{ content }}"
{%- if image_context %}

Image Context: {{ image_context }}
{%- endif %}

Please respond directly to this message while keeping the conversation history in mind.
Focus primarily on the current message but reference previous context when relevant."""


class PromptTemplateEngine:
    def __init__(
        self,
        system_prompt_path: str,
        persona_service: PersonaService,
        *,
        assistant_id: str,
        assistant_label: str = "SmolBot",
    ):
        self._system_path = system_prompt_path or ""
        sp = Path(self._system_path) if self._system_path else None
        self.system_prompt = sp.read_text(encoding="utf-8") if (sp and sp.exists()) else DEFAULT_SYSTEM_TEMPLATE
        self._sys_mtime_ns = sp.stat().st_mtime_ns if (sp and sp.exists()) else 0
        self.persona = persona_service
        self.assistant_id = str(assistant_id)
        self.assistant_label = assistant_label
        self.env = Environment(loader=BaseLoader())

    def _maybe_reload_templates(self) -> None:
        sp = Path(self._system_path) if self._system_path else None
        if not sp or not sp.exists():
            return
        sm = sp.stat().st_mtime_ns
        if sm != self._sys_mtime_ns:
            self.system_prompt = sp.read_text(encoding="utf-8")
            self._sys_mtime_ns = sm

    def build_system_message(self) -> str:
        self._maybe_reload_templates()
        tmpl = self.env.from_string(self.system_prompt or DEFAULT_SYSTEM_TEMPLATE)
        base = tmpl.render(assistant_id=self.assistant_id, assistant_label=self.assistant_label)
        persona_block = self.persona.body()
        if not persona_block:
            return base
        return f"{base}\n\n[Persona]\n{persona_block}"

    def render_history(self, history: str) -> str:
        return self.env.from_string(HISTORY_TEMPLATE).render(history=history or "(no earlier messages)")

    def render_current(self, current: CachedMessage, image_context: Optional[str] = None) -> str:
        return self.env.from_string(CURRENT_TEMPLATE).render(
            author_name=current.author_name,
            author_id=current.author_id,
            is_reply=bool(current.referenced_message_id),
            content=current.content,
            image_context=image_context or "",
        )

    def reply_prompt(self, history: str, current: CachedMessage, image_context: Optional[str] = None) -> list[dict]:
        return [
            {"role": "system", "content": self.build_system_message()},
            {"role": "system", "content": self.render_history(history)},
            {"role": "system", "content": self.render_current(current, image_context)},
        ]

    def interjection_prompt(self, instruction: str, history: str) -> list[dict]:
        return [
            {"role": "system", "content": self.build_system_message()},
            {"role": "user", "content": f"{instruction}\n\n{history}"},
        ]

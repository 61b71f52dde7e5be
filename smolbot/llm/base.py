from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Literal, Optional

GenerationKind = Literal["chat", "vision"]


class CompletionProvider(ABC):
    """A single generation backend.

    Implementations raise :class:`smolbot.errors.CapacityError` when the remote side is
    throttling and :class:`smolbot.errors.ProviderError` for anything else.
    """

    @abstractmethod
    async def complete(
        self,
        model: str,
        prompt: list[dict],
        kind: GenerationKind = "chat",
        *,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        context_fields: Optional[dict] = None,
    ) -> str:
        ...

    async def aclose(self) -> None:
        return None

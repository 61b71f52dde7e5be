from __future__ import annotations

import re
from typing import List, Optional

from .errors import RateLimitTimeout, SmolBotError
from .llm.fallback_router import ModelFallbackRouter
from .logger_factory import get_logger
from .models import ImageAnnotation, RawMessage
from .utils.logfmt import fmt

IMG_EXT_RE = re.compile(r"\.(png|jpe?g|gif|webp)(\?.*)?$", re.IGNORECASE)

LIGHT_PROMPT = (
    "Provide a brief, 1-2 sentence description (max 25 words) of this image. "
    "Focus on the main subject and notable visual elements."
)
DETAILED_PROMPT = (
    "Provide a detailed analysis (max 75 words) of this image, covering subjects, composition, "
    "context, emotions, and notable details. Be descriptive but concise."
)
ANALYSIS_FAILED = "Error analyzing image"


def _maybe_add(urls: List[str], seen: set, url: Optional[str]) -> None:
    if not url or url in seen:
        return
    seen.add(url)
    urls.append(url)


def extract_image_urls(message) -> List[str]:
    """Return a de-duplicated list of image URLs from a Discord message.

    Sources:
    - Attachments with content_type starting with image/ (or an image file extension)
    - Embeds with image or thumbnail URLs
    """
    urls: List[str] = []
    seen: set = set()
    for att in getattr(message, "attachments", []) or []:
        ctype = getattr(att, "content_type", "") or ""
        name = getattr(att, "filename", "") or ""
        if ctype.startswith("image/") or IMG_EXT_RE.search(name):
            _maybe_add(urls, seen, getattr(att, "url", None))
    for emb in getattr(message, "embeds", []) or []:
        for obj in (getattr(emb, "image", None), getattr(emb, "thumbnail", None)):
            if obj is not None:
                _maybe_add(urls, seen, getattr(obj, "url", None))
    return urls


def vision_prompt(instruction: str, image_url: str) -> list[dict]:
    return [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": instruction},
                {"type": "image_url", "image_url": {"url": image_url}},
            ],
        }
    ]


class ImageProcessor:
    """Describes image attachments through the vision tier of the fallback router."""

    def __init__(
        self,
        router: ModelFallbackRouter,
        *,
        light_max_tokens: int = 128,
        detailed_max_tokens: int = 512,
        use_fallback: bool = True,
        use_instant_fallback: bool = True,
    ):
        self.router = router
        self.light_max_tokens = light_max_tokens
        self.detailed_max_tokens = detailed_max_tokens
        self.use_fallback = use_fallback
        self.use_instant_fallback = use_instant_fallback
        self.log = get_logger("ImageProcessor")

    async def _describe(self, instruction: str, url: str, max_tokens: int, corr: Optional[str]) -> str:
        result = await self.router.complete(
            vision_prompt(instruction, url),
            "vision",
            use_fallback=self.use_fallback,
            use_instant_fallback=self.use_instant_fallback,
            max_tokens=max_tokens,
            context_fields={"correlation": corr},
        )
        return result.text

    async def annotate(self, raw: RawMessage, *, correlation: Optional[str] = None) -> List[ImageAnnotation]:
        """Light description for every image on ``raw``; failed images get a placeholder."""
        out: List[ImageAnnotation] = []
        for url in raw.image_urls:
            try:
                light = await self._describe(LIGHT_PROMPT, url, self.light_max_tokens, correlation)
            except (SmolBotError, ValueError) as e:
                self.log.error(f"[image-light-error] {fmt('message', raw.id)} {fmt('url', url)} {e!r}")
                light = ANALYSIS_FAILED
            out.append(ImageAnnotation(url=url, light_description=light))
        if out:
            self.log.debug(f"[image-annotated] {fmt('message', raw.id)} {fmt('count', len(out))}")
        return out

    async def analyze_detailed(self, url: str, *, correlation: Optional[str] = None) -> str:
        try:
            text = await self._describe(DETAILED_PROMPT, url, self.detailed_max_tokens, correlation)
        except RateLimitTimeout:
            raise
        except SmolBotError as e:
            self.log.error(f"[image-detailed-error] {fmt('url', url)} {e!r}")
            return ANALYSIS_FAILED
        self.log.debug(f"[image-detailed] {fmt('url', url)} {fmt('chars', len(text))}")
        return text

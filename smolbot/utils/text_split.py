from __future__ import annotations

CONT_MARKER = " ....."
LEAD_MARKER = "..... "


def split_for_discord(text: str, limit: int = 2000, max_parts: int = 2) -> list[str]:
    """Split ``text`` into at most ``max_parts`` chunks of at most ``limit`` characters.

    Cuts prefer the last whitespace in the window; continuation markers are added
    between chunks and the final chunk is truncated if the text still does not fit.
    """
    limit = max(len(CONT_MARKER) + 1, int(limit))
    max_parts = max(1, int(max_parts))
    if not text or len(text) <= limit:
        return [text]
    parts: list[str] = []
    remaining = text
    for i in range(max_parts):
        lead = LEAD_MARKER if i > 0 else ""
        room = limit - len(lead)
        if len(remaining) <= room:
            parts.append(lead + remaining)
            break
        if i == max_parts - 1:
            parts.append((lead + remaining)[:limit])
            break
        window = room - len(CONT_MARKER)
        cut = remaining.rfind(" ", 0, window)
        if cut < int(window * 0.6):
            cut = window
        parts.append(lead + remaining[:cut].rstrip() + CONT_MARKER)
        remaining = remaining[cut:].lstrip()
    return parts

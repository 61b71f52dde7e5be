from __future__ import annotations


def make_correlation_id(channel_id: str | int, message_id: str | int | None = None) -> str:
    """Return a correlation id tying enqueue → generation → send.

    Format: "<channelId>-<messageId>"; jobs without a triggering message (interjections)
    use "<channelId>-auto".
    """
    return f"{channel_id}-{message_id if message_id is not None else 'auto'}"

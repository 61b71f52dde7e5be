from __future__ import annotations


class SmolBotError(Exception):
    """Base class for every error raised by the conversation core."""


class RateLimitTimeout(SmolBotError):
    """A caller waited longer than the limiter's ceiling for a token."""

    def __init__(self, waited_seconds: float, max_wait_seconds: float):
        super().__init__(
            f"Rate limit exceeded: waited {waited_seconds:.1f}s (max {max_wait_seconds:.1f}s)"
        )
        self.waited_seconds = waited_seconds
        self.max_wait_seconds = max_wait_seconds


class ProviderError(SmolBotError):
    """The completion provider failed for a reason other than remote throttling."""

    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.status = status


class CapacityError(ProviderError):
    """The completion provider signalled capacity exhaustion (HTTP 429/503)."""


class GenerationFailed(SmolBotError):
    """Every model tier (and its retry budget) has been exhausted."""

    def __init__(self, kind: str, models: list[str], last_error: BaseException | None):
        super().__init__(f"All {kind} tiers failed ({', '.join(models) or 'none'}): {last_error}")
        self.kind = kind
        self.models = models
        self.last_error = last_error


class ReferenceUnavailable(SmolBotError):
    """A reply target could neither be found in the cache nor fetched."""

    def __init__(self, channel_id: str, message_id: str, reason: str | None = None):
        super().__init__(f"Referenced message {message_id} in channel {channel_id} unavailable: {reason}")
        self.channel_id = channel_id
        self.message_id = message_id


class PersistenceFailure(SmolBotError):
    """A cache store save/load/delete failed."""

    def __init__(self, op: str, channel_id: str, cause: BaseException):
        super().__init__(f"Cache store {op} failed for channel {channel_id}: {cause}")
        self.op = op
        self.channel_id = channel_id
        self.cause = cause

"""Exception hierarchy for flowlet.

Retries swallow individual attempt failures; only exhaustion surfaces, as a
NodeExecutionError (or FallbackError when the fallback itself fails). Every
other error propagates through flows unchanged.
"""
from typing import Optional


class FlowletError(Exception):
    """Base exception for all flowlet errors."""


class NodeExecutionError(FlowletError):
    """A node's exec stage failed on every attempt and no fallback recovered it."""

    def __init__(self, message: str, node_name: str = "", attempts: int = 0):
        super().__init__(message)
        self.node_name = node_name
        self.attempts = attempts


class FallbackError(NodeExecutionError):
    """The fallback callback raised. Never retried."""


class ValidationError(FlowletError, ValueError):
    """A stage received or produced malformed input."""

    def __init__(self, message: str, field_name: str = "", invalid_value: Optional[str] = None):
        super().__init__(message)
        self.field_name = field_name
        self.invalid_value = invalid_value


class FlowTimeoutError(FlowletError, TimeoutError):
    """A TimeoutNode's timer fired before the wrapped node finished."""

    def __init__(self, message: str, timeout: float = 0.0):
        super().__init__(message)
        self.timeout = timeout


class LLMError(FlowletError):
    """Error returned by (or while reaching) an LLM provider."""

    def __init__(self, message: str, provider: str = "", status_code: int = 0, response_body: str = ""):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.response_body = response_body


class RateLimitError(LLMError):
    """Provider answered HTTP 429."""

    def __init__(self, message: str, provider: str = "", retry_after: float = 60, response_body: str = ""):
        super().__init__(message, provider=provider, status_code=429, response_body=response_body)
        self.retry_after = retry_after


class CacheError(FlowletError):
    def __init__(self, message: str, cache_key: str = ""):
        super().__init__(message)
        self.cache_key = cache_key


class RAGError(FlowletError):
    pass


class PersistenceError(FlowletError):
    pass

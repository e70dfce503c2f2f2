"""
Exception hierarchy for the copy trading bot

Policy rejections (blacklist, size limits) are not errors; the executor
skips those diffs and logs them.
"""

from typing import Any, Optional


class PolycopyError(Exception):
    """Base class for all bot errors"""


class TransportError(PolycopyError):
    """Network failure or non-2xx HTTP response"""

    def __init__(self, message: str, status: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.status = status
        self.payload = payload

    @property
    def transient(self) -> bool:
        """Network errors (no status) and 5xx responses are worth one retry"""
        return self.status is None or 500 <= self.status < 600


class ExchangeRejectionError(PolycopyError):
    """The exchange refused an order"""

    def __init__(self, message: str, payload: Any = None):
        super().__init__(message)
        self.payload = payload


class AuthenticationError(PolycopyError):
    """Signing credentials are missing or unusable"""


class ConfigurationError(PolycopyError):
    """Required configuration is missing or invalid"""

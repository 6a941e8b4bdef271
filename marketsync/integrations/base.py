"""Platform adapter contract.

Adapters are the only place that talks to a marketplace. They expose one
capability, ``perform_request(platform, payload)``; retries, circuit breaking
and bookkeeping happen around them.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class PlatformRequestError(Exception):
    """A marketplace call failed with an explicit status and/or error code."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        retry_after: Optional[float] = None,
        platform: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.retry_after = retry_after
        self.platform = platform

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": str(self),
            "status_code": self.status_code,
            "error_code": self.error_code,
            "retry_after": self.retry_after,
            "platform": self.platform,
        }


class UnsupportedPlatformError(ValueError):
    error_code = "VALIDATION_ERROR"

    def __init__(self, platform: str, supported: Optional[list[str]] = None) -> None:
        self.platform = platform
        self.supported = supported or []
        super().__init__(f"Unsupported platform '{platform}'. Supported: {', '.join(self.supported) or 'none'}")


class PlatformAdapter(ABC):
    @abstractmethod
    async def perform_request(self, platform: str, payload: Any) -> Dict[str, Any]:
        """Push one payload to ``platform`` and return the platform's response."""

    async def close(self) -> None:
        return None

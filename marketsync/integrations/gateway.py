"""
HTTP gateway adapter.
Posts each payload as JSON to ``{base_url}/{platform}/sync``; the gateway owns
platform-specific signing. Non-2xx replies become ``PlatformRequestError``
carrying status, error code and Retry-After.
"""
import asyncio
from typing import Any, Dict, Optional

import aiohttp

from marketsync.config import PLATFORM_GATEWAY
from marketsync.utils.logger import get_logger
from .base import PlatformAdapter, PlatformRequestError

logger = get_logger(__name__)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class HttpPlatformAdapter(PlatformAdapter):
    def __init__(self, base_url: Optional[str] = None, *, timeout_seconds: Optional[float] = None) -> None:
        self.base_url = str(base_url or PLATFORM_GATEWAY["base_url"]).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=float(timeout_seconds or PLATFORM_GATEWAY["timeout_seconds"]))
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(timeout=self.timeout)
            return self._session

    async def perform_request(self, platform: str, payload: Any) -> Dict[str, Any]:
        url = f"{self.base_url}/{platform}/sync"
        session = await self._get_session()
        logger.debug("Gateway request", platform=platform, url=url)
        async with session.post(url, json={"platform": platform, "payload": payload}) as response:
            try:
                body = await response.json(content_type=None)
            except ValueError:
                body = {"message": await response.text()}
            if not isinstance(body, dict):
                body = {"data": body}
            if response.status >= 400:
                raise PlatformRequestError(
                    str(body.get("message") or body.get("error") or f"Gateway returned {response.status}"),
                    status_code=response.status,
                    error_code=body.get("error_code") or body.get("code"),
                    retry_after=_parse_retry_after(response.headers.get("Retry-After")),
                    platform=platform,
                )
            return body

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

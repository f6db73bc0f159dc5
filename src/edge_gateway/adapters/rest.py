# adapters/rest_adapter.py
import asyncio
import json
from typing import Any, Optional

import aiohttp

from .base import CommunicationAdapter
from ..utils.exceptions import CommunicationError
from ..utils.logging import get_logger

logger = get_logger(__name__)


class RestAPIAdapter(CommunicationAdapter):
    """
    Generic REST API communication adapter.
    Shared by the prediction client, the export pipeline and config sync.

    Every request carries a caller-side timeout; a timeout, a connection
    error or a non-2xx status all surface as CommunicationError.
    """
    def __init__(self, timeout: float = 10.0, retries: int = 0, retry_delay: float = 0.5):
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None
        self.is_connected = False
        self._retry_count = retries
        self._retry_delay = retry_delay

    async def connect(self) -> None:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        self.is_connected = True
        logger.info("Created REST API session")

    async def disconnect(self) -> None:
        if self.session:
            try:
                await self.session.close()
                logger.info("Closed REST API session")
            except Exception as e:
                logger.error(f"Error closing REST API session: {e}")
                raise
            finally:
                self.is_connected = False
                self.session = None

    @staticmethod
    def _parse(body: str) -> Any:
        if not body:
            return None
        try:
            return json.loads(body)
        except ValueError:
            return body

    async def _request(self, method: str, url: str, timeout: Optional[float] = None, **kwargs) -> Any:
        if not self.is_connected or self.session is None:
            raise CommunicationError("REST API session not created")

        request_timeout = aiohttp.ClientTimeout(total=timeout or self.timeout)
        for attempt in range(self._retry_count + 1):
            try:
                async with self.session.request(method, url, timeout=request_timeout, **kwargs) as response:
                    response.raise_for_status()
                    return self._parse(await response.text())
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if attempt < self._retry_count:
                    logger.warning(f"Attempt {attempt + 1}/{self._retry_count + 1} to {method} {url} failed: {e}")
                    await asyncio.sleep(self._retry_delay)
                else:
                    raise CommunicationError(f"{method} {url} failed: {e!r}") from e

    async def get(self, url: str, params: Optional[dict] = None, timeout: Optional[float] = None) -> Any:
        return await self._request("GET", url, timeout=timeout, params=params)

    async def post(self, url: str, data: Any, timeout: Optional[float] = None) -> Any:
        return await self._request("POST", url, timeout=timeout, json=data)

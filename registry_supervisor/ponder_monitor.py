"""
Readiness and status checks against a ponder app's HTTP API.

ponder answers `/ready` with 200 once historical indexing is complete, and
with 503 and a "Historical indexing is not complete" body before that.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional

import aiohttp

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 5
NOT_READY_MARKER = "not complete"


class PonderMonitor:
    def __init__(self, api_url: str, request_timeout: float = REQUEST_TIMEOUT):
        self.api_url = api_url.rstrip("/")
        self.request_timeout = request_timeout
        self.last_known_status: Dict = {}

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.request_timeout)

    async def is_ready(self) -> bool:
        """
        Check whether historical indexing is complete.

        Connection failures and timeouts count as not ready.
        """
        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as session:
                async with session.get(f"{self.api_url}/ready") as response:
                    body = await response.text()
                    return response.status == 200 and NOT_READY_MARKER not in body
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Ready check against {self.api_url} failed: {e}")
            return False

    async def get_indexing_status(self) -> Optional[Dict]:
        """
        Get the per-chain indexing status.

        Returns:
            dict: chain name -> {id, block}, or None if the API is unavailable
        """
        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as session:
                async with session.get(f"{self.api_url}/status") as response:
                    response.raise_for_status()
                    status = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.debug(f"Failed to get indexing status from {self.api_url}: {e}")
            return None

        self.last_known_status = status
        return status

    async def get_ready_chains(self) -> List[str]:
        """Get the chains listed by /status, i.e. those past their historical sync."""
        status = await self.get_indexing_status()
        if not status:
            return []
        return sorted(status)

    async def is_api_healthy(self) -> bool:
        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as session:
                async with session.get(f"{self.api_url}/health") as response:
                    return response.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError):
            return False

    async def wait_until_ready(self, timeout: float, interval: float) -> bool:
        """
        Poll /ready until it reports complete or the timeout runs out.

        Args:
            timeout: Overall deadline in seconds
            interval: Delay between polls in seconds

        Returns:
            bool: True if ready before the deadline
        """
        deadline = time.monotonic() + timeout

        while True:
            if await self.is_ready():
                logger.info(f"{self.api_url} reports ready, all events processed")
                return True

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.error(f"Timed out after {timeout}s waiting for {self.api_url}")
                return False

            ready_chains = await self.get_ready_chains()
            logger.info(
                f"Waiting for historical sync at {self.api_url} "
                f"({len(ready_chains)} chains reporting status)"
            )
            await asyncio.sleep(min(interval, remaining))

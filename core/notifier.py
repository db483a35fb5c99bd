"""
Best-effort DM notifications to the /vibe messaging endpoint.

Never blocks a payment response and never fails one: each message is a
background task whose errors are only logged.
"""

import asyncio
import logging
from typing import Optional

import aiohttp

logger = logging.getLogger("vibe.notifier")


class Notifier:

    def __init__(self, url: str = ""):
        self.url = url
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = aiohttp.ClientTimeout(total=10)
        self._tasks: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def send(self, to: str, text: str) -> bool:
        """POST one message. Returns False on any failure."""
        if not self.enabled:
            return False
        payload = {"from": "system", "to": to, "text": text}
        try:
            session = await self._get_session()
            async with session.post(self.url, json=payload) as resp:
                if resp.status >= 400:
                    logger.warning(f"DM notification to {to} failed: HTTP {resp.status}")
                    return False
                return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"DM notification to {to} failed: {e}")
            return False

    def notify(self, to: str, text: str) -> Optional[asyncio.Task]:
        """Fire and forget. Must be called from a running event loop."""
        if not self.enabled:
            return None
        task = asyncio.get_running_loop().create_task(self.send(to, text))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def close(self):
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._session and not self._session.closed:
            await self._session.close()

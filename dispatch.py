import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import httpx

from utils.notifier import Notifier

logger = logging.getLogger(__name__)


class BackgroundDispatcher:
    """
    Owns fire-and-forget work spawned from a request.

    Every spawned coroutine becomes a tracked asyncio task; its outcome is
    logged from a done-callback and never reaches the request path. ``drain``
    waits for outstanding tasks (used on shutdown and in tests).
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, name: str, coro: Awaitable[Any]) -> Optional[asyncio.Task]:
        try:
            task = asyncio.ensure_future(coro)
        except Exception as e:
            logger.error(f"Could not start background task {name}: {e}")
            return None
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._finished(name, t))
        return task

    def _finished(self, name: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Background task {name} cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background task {name} failed: {error}")
        else:
            logger.debug(f"Background task {name} finished")

    async def drain(self, timeout: Optional[float] = None) -> None:
        # Tasks may spawn further tasks while we wait
        while self._tasks:
            done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
            if pending:
                logger.warning(f"{len(pending)} background task(s) still running after drain timeout")
                return

    def notify_success(self, notifier: Notifier, stage_name: str, result: Any) -> None:
        self.spawn(f"notify-success:{stage_name}", notifier.notify_success(stage_name, result))

    def notify_failure(self, notifier: Notifier, stage_name: str, error: Any) -> None:
        self.spawn(f"notify-failure:{stage_name}", notifier.notify_failure(stage_name, error))


class StageTrigger:
    """Fire-and-forget POST to another stage's endpoint."""

    def __init__(self, dispatcher: BackgroundDispatcher, base_url: Optional[str], api_key: Optional[str],
                 client_factory: Callable[[], httpx.AsyncClient], api_key_name: str = "access_token",
                 timeout: float = 90.0):
        self.dispatcher = dispatcher
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.api_key_name = api_key_name
        self.client_factory = client_factory
        # Long enough to outlive the called stage's own time budget
        self.timeout = timeout

    def stage_url(self, stage: str) -> str:
        return f"{self.base_url}/{stage}"

    def headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers[self.api_key_name] = self.api_key
        return headers

    async def _post(self, stage: str, payload: Dict[str, Any]) -> None:
        url = self.stage_url(stage)
        try:
            async with self.client_factory() as client:
                response = await client.post(url, json=payload, headers=self.headers(), timeout=self.timeout)
            logger.info(f"Triggered {stage}: {response.status_code}")
        except Exception as e:
            logger.error(f"Failed to trigger {stage} at {url}: {e}")

    def fire(self, stage: str, payload: Dict[str, Any]) -> None:
        """Dispatch the call without waiting for its response."""
        if not self.base_url:
            logger.error(f"Cannot trigger {stage}: FUNCTIONS_BASE_URL is not configured")
            return
        self.dispatcher.spawn(f"trigger:{stage}", self._post(stage, payload))

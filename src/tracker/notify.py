import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Set

logger = logging.getLogger(__name__)


class NotificationPort(ABC):
    """Publish-only channel for finalized usage records."""

    @abstractmethod
    async def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        ...


class NullNotifier(NotificationPort):
    async def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        return None


class BackgroundPublisher:
    """Schedules publishes as tasks so a slow or failing observer never blocks the caller."""

    def __init__(self, port: NotificationPort) -> None:
        self._port = port
        self._tasks: Set[asyncio.Task] = set()

    def fire(self, event_type: str, payload: Dict[str, Any]) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._publish(event_type, payload))
        except RuntimeError:
            logger.warning("No running event loop; dropping %s notification", event_type)
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        try:
            await self._port.publish(event_type, payload)
        except Exception as e:
            logger.warning("Notification %s failed: %s", event_type, e)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

"""
Fetch Coordination

Single-flight guard shared by the catalog rebuild and the guide refresh.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable


logger = logging.getLogger(__name__)


class FetchCoordinator:
    """
    Ensures at most one run of a refresh routine at a time.

    The lock state is checked before the first suspension point, so a caller
    arriving while a run is active returns immediately instead of queueing.
    """

    def __init__(self, name: str):
        self.name = name
        self._lock = asyncio.Lock()

    async def execute(self, func: Callable[[], Awaitable[Any]], *, skipped: Any = None) -> Any:
        """
        Run func unless another run is in progress.

        Args:
            func: Coroutine function performing the refresh
            skipped: Value returned when the call is dropped

        Returns:
            Result of func, or `skipped` if a run was already active

        Raises:
            Any exception raised by func
        """
        if self._lock.locked():
            logger.warning("%s already in progress, skipping this request", self.name)
            return skipped

        async with self._lock:
            return await func()

    def is_running(self) -> bool:
        """True while a run is active"""
        return self._lock.locked()

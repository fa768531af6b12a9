"""Running per-app execution statistics."""

import asyncio
import logging
from collections import defaultdict
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from appflow.storage.base import EntityStore

if TYPE_CHECKING:
    from appflow.runtime.event_bus import EventBus

logger = logging.getLogger(__name__)


def running_average(avg: int, count: int, duration: int) -> int:
    """Fold ``duration`` into an average over ``count`` samples, rounding half up."""
    if count <= 0:
        return int(duration)
    total = Decimal(avg) * count + Decimal(duration)
    return int((total / (count + 1)).quantize(Decimal(1), rounding=ROUND_HALF_UP))


class StatisticsAggregator:
    """
    Maintains ``execution_count`` and ``avg_execution_time`` on each app.

    The read-modify-write runs under a lock per app, so concurrent
    executions of the same app never lose an update while different apps
    never wait on each other.
    """

    def __init__(self, store: EntityStore, event_bus: "EventBus | None" = None):
        self._store = store
        self._event_bus = event_bus
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def lock(self, app_id: str) -> asyncio.Lock:
        """The lock guarding an app record; hold it for any read-modify-write of the app."""
        return self._locks[app_id]

    async def record(self, app_id: str, duration_ms: int) -> tuple[int, int] | None:
        """
        Add one execution to an app's statistics.

        Returns:
            (execution_count, avg_execution_time), or None if the app no longer exists
        """
        async with self._locks[app_id]:
            app = await self._store.get_app(app_id)
            if app is None:
                logger.warning(f"Statistics skipped: app {app_id} no longer exists")
                return None

            app.avg_execution_time = running_average(
                app.avg_execution_time, app.execution_count, duration_ms
            )
            app.execution_count += 1
            await self._store.save_app(app)

        logger.debug(
            f"App {app_id} stats: count={app.execution_count} avg={app.avg_execution_time}ms"
        )
        if self._event_bus:
            await self._event_bus.emit_stats_updated(
                app_id=app_id,
                execution_count=app.execution_count,
                avg_execution_time=app.avg_execution_time,
            )
        return app.execution_count, app.avg_execution_time

    def forget(self, app_id: str) -> None:
        """Drop the lock for a deleted app."""
        self._locks.pop(app_id, None)

"""Periodic yield display refresh."""
import asyncio
import time
from typing import Callable, Dict, Optional, Sequence

from loguru import logger

from .registry import StakeRegistry


class YieldTicker:
    """Recomputes displayed yield from cached snapshots every ``refresh_interval``.

    The ticker never talks to the ledger or indexer; keeping the cache warm
    is the registry's job. Stakes with nothing cached are reported as ``None``.
    """

    def __init__(
        self,
        registry: StakeRegistry,
        account: str,
        stake_ids: Sequence[int],
        on_tick: Callable[[Dict[int, Optional[int]]], None],
        refresh_interval: float = 1.0,
        wall_clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.account = account
        self.stake_ids = list(stake_ids)
        self.on_tick = on_tick
        self.refresh_interval = refresh_interval
        self._wall_clock = wall_clock
        self._task: Optional[asyncio.Task] = None

    def tick(self) -> Dict[int, Optional[int]]:
        schedule = self.registry.cached_schedule()
        now = int(self._wall_clock())
        values = {}
        for stake_id in self.stake_ids:
            if schedule is None:
                values[stake_id] = None
            else:
                values[stake_id] = self.registry.cached_yield(self.account, stake_id, schedule, now)
        self.on_tick(values)
        return values

    async def run(self, ticks: Optional[int] = None) -> None:
        """Tick until cancelled, or ``ticks`` times when given."""
        count = 0
        while ticks is None or count < ticks:
            self.tick()
            count += 1
            await asyncio.sleep(self.refresh_interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.ensure_future(self.run())
            logger.debug(f"Yield ticker started for {len(self.stake_ids)} stakes")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

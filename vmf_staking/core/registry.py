"""Read-through cache of stake state.

One ``StakeRegistry`` is created per session and handed to the
orchestrator. Creation facts (principal at creation, start time, lock
period) come from the indexer and never change, so they are kept without
expiry. Live fields come from the ledger and are refreshed once an entry is
older than the staleness window. When a refresh fails the last known value
is served instead of failing the caller.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, List, Optional, Tuple, TypeVar

from loguru import logger

from .accrual import RateSchedule, yield_for_stake
from .errors import IndexerError, LedgerError, UpstreamUnavailable
from .ledger import Indexer, LedgerReader, LedgerStakeInfo
from .stake import IndexedStake, Stake, StakeCapPolicy

DEFAULT_STALENESS_WINDOW = 5 * 60

T = TypeVar("T")
StakeKey = Tuple[str, int]


@dataclass
class _Entry(Generic[T]):
    value: T
    fetched_at: float
    invalidated: bool = False


class StakeRegistry:
    """Cache mapping ``(account, stake_id)`` to the last known ``Stake``."""

    def __init__(
        self,
        ledger: LedgerReader,
        indexer: Indexer,
        staleness_window: float = DEFAULT_STALENESS_WINDOW,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        fallback_schedule: Optional[RateSchedule] = None,
    ):
        """Initialize the registry.

        Args:
            ledger: Source of live stake fields, caps and rate
            indexer: Source of stake listings and creation facts
            staleness_window: Seconds a fetched value stays fresh
            clock: Monotonic clock used for freshness
            wall_clock: Unix clock used for yield as of "now"
            fallback_schedule: Rate used when the ledger rate cannot be read
                and nothing is cached
        """
        self.ledger = ledger
        self.indexer = indexer
        self.staleness_window = staleness_window
        self._clock = clock
        self._wall_clock = wall_clock
        self._fallback_schedule = fallback_schedule

        self._stakes: Dict[StakeKey, _Entry[Stake]] = {}
        self._facts: Dict[StakeKey, IndexedStake] = {}
        self._schedule: Optional[_Entry[RateSchedule]] = None
        self._caps: Optional[_Entry[StakeCapPolicy]] = None

    def _is_fresh(self, entry: Optional[_Entry]) -> bool:
        if entry is None or entry.invalidated:
            return False
        return self._clock() - entry.fetched_at < self.staleness_window

    # -- stakes -------------------------------------------------------------

    async def get(self, account: str, stake_id: int) -> Stake:
        """Return the stake, refreshing it from upstream if stale or invalidated."""
        key = (account, stake_id)
        cached = self._stakes.get(key)
        if self._is_fresh(cached):
            return cached.value

        try:
            stake = await self._fetch(account, stake_id)
        except (LedgerError, IndexerError, UpstreamUnavailable) as e:
            if cached is not None:
                logger.warning(f"Serving stale stake {stake_id} for {account}: {e}")
                return cached.value
            raise UpstreamUnavailable(f"stake {stake_id} of {account}: {e}") from e

        self._stakes[key] = _Entry(stake, self._clock())
        return stake

    def peek(self, account: str, stake_id: int) -> Optional[Stake]:
        """Last known snapshot without touching upstream."""
        entry = self._stakes.get((account, stake_id))
        return entry.value if entry else None

    def invalidate(self, account: str, stake_id: int) -> None:
        """Force the next ``get`` to read through. Called after a settled mutation."""
        entry = self._stakes.get((account, stake_id))
        if entry is not None:
            entry.invalidated = True
        logger.debug(f"Invalidated stake {stake_id} for {account}")

    async def list_for_account(self, account: str) -> List[Stake]:
        """All stakes of ``account`` known to the indexer, with live fields."""
        try:
            indexed = await self.indexer.list_stakes_for_account(account)
        except IndexerError as e:
            raise UpstreamUnavailable(f"stake listing for {account}: {e}") from e

        for facts in indexed:
            self._facts[(account, facts.stake_id)] = facts

        results = await asyncio.gather(
            *(self.get(account, facts.stake_id) for facts in indexed),
            return_exceptions=True,
        )
        stakes = []
        for facts, result in zip(indexed, results):
            if isinstance(result, UpstreamUnavailable):
                logger.warning(f"Skipping stake {facts.stake_id}: {result}")
                continue
            if isinstance(result, BaseException):
                raise result
            stakes.append(result)
        return sorted(stakes, key=lambda s: s.stake_id)

    async def _creation_facts(self, account: str, stake_id: int) -> Optional[IndexedStake]:
        key = (account, stake_id)
        if key not in self._facts:
            for facts in await self.indexer.list_stakes_for_account(account):
                self._facts[(account, facts.stake_id)] = facts
        return self._facts.get(key)

    async def _fetch(self, account: str, stake_id: int) -> Stake:
        info: LedgerStakeInfo = await self.ledger.read_stake_info(account, stake_id)

        start_time, staking_period = info.start_time, info.staking_period
        if start_time is None or staking_period is None:
            facts = await self._creation_facts(account, stake_id)
            if facts is None:
                raise UpstreamUnavailable(f"no creation facts for stake {stake_id} yet")
            start_time, staking_period = facts.start_time, facts.staking_period

        # the contract reports 0 until the first claim
        last_claim = max(info.last_yield_claim_at, start_time)
        return Stake(
            account=account,
            stake_id=stake_id,
            principal=info.principal,
            start_time=start_time,
            staking_period=staking_period,
            last_yield_claim_at=last_claim,
            status=info.status,
        )

    # -- contract configuration --------------------------------------------

    async def rate_schedule(self) -> RateSchedule:
        """Accrual rate from the ledger configuration."""
        if self._is_fresh(self._schedule):
            return self._schedule.value
        try:
            rate = await self.ledger.read_rate_per_second()
        except LedgerError as e:
            if self._schedule is not None:
                logger.warning(f"Serving stale accrual rate: {e}")
                return self._schedule.value
            if self._fallback_schedule is not None:
                logger.warning(f"Using configured fallback rate: {e}")
                return self._fallback_schedule
            raise UpstreamUnavailable(f"accrual rate: {e}") from e
        schedule = RateSchedule.constant(rate)
        self._schedule = _Entry(schedule, self._clock())
        return schedule

    async def cap_policy(self) -> StakeCapPolicy:
        if self._is_fresh(self._caps):
            return self._caps.value
        try:
            caps = await self.ledger.read_cap_policy()
        except LedgerError as e:
            if self._caps is not None:
                logger.warning(f"Serving stale stake caps: {e}")
                return self._caps.value
            raise UpstreamUnavailable(f"stake caps: {e}") from e
        self._caps = _Entry(caps, self._clock())
        return caps

    # -- accrual -------------------------------------------------------------

    async def current_yield(self, account: str, stake_id: int, now: Optional[int] = None) -> int:
        """Yield accrued on a stake as of ``now`` (defaults to the wall clock)."""
        stake = await self.get(account, stake_id)
        schedule = await self.rate_schedule()
        if now is None:
            now = int(self._wall_clock())
        return yield_for_stake(stake, schedule, now)

    def cached_yield(self, account: str, stake_id: int, schedule: RateSchedule, now: int) -> Optional[int]:
        """Yield from the cached snapshot only; ``None`` when nothing is cached."""
        stake = self.peek(account, stake_id)
        if stake is None:
            return None
        return yield_for_stake(stake, schedule, now)

    def cached_schedule(self) -> Optional[RateSchedule]:
        if self._schedule is not None:
            return self._schedule.value
        return self._fallback_schedule

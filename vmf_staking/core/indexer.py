"""Subgraph client for stake history."""
import asyncio
from typing import Any, Dict, List, Optional

import aiohttp
from loguru import logger

from .errors import IndexerError
from .ledger import Indexer
from .stake import IndexedStake, YieldWithdrawal

DEFAULT_INDEXER_URL = "https://api.studio.thegraph.com/query/107901/vmf_staking/version/latest"

GET_USER_STAKES = """
query GetUserStakes($userAddress: Bytes!) {
  stakes(where: { user: $userAddress }) {
    id
    internal_id
    user
    stakedAmount
    stakingPeriod
    startTime
    blockTimestamp
    transactionHash
  }
}
"""

GET_USER_YIELD_WITHDRAWALS = """
query GetUserYieldWithdrawals($userAddress: Bytes!) {
  stakeYieldWithdraws(where: { user: $userAddress }) {
    id
    internal_id
    stakedAmount
    yieldWithdrawalAmount
    stakingPeriod
    startTime
    endTime
  }
}
"""


class SubgraphIndexer(Indexer):
    """Queries the staking subgraph over GraphQL."""

    def __init__(self, url: str = DEFAULT_INDEXER_URL, session: Optional[aiohttp.ClientSession] = None,
                 timeout: float = 15.0):
        self.url = url
        self._session = session
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def _query(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        """Run a GraphQL query and return its ``data`` member.

        Raises:
            IndexerError: Transport failure, non-200 status or GraphQL errors
        """
        payload = {"query": query, "variables": variables}
        try:
            if self._session is not None:
                return await self._post(self._session, payload)
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                return await self._post(session, payload)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise IndexerError(f"subgraph request failed: {e}") from e

    async def _post(self, session: aiohttp.ClientSession, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with session.post(self.url, json=payload) as response:
            if response.status != 200:
                text = await response.text()
                raise IndexerError(f"subgraph returned {response.status}: {text[:200]}")
            result = await response.json()

        if result.get("errors"):
            messages = "; ".join(err.get("message", str(err)) for err in result["errors"])
            raise IndexerError(f"subgraph error: {messages}")
        return result.get("data") or {}

    async def list_stakes_for_account(self, account: str) -> List[IndexedStake]:
        data = await self._query(GET_USER_STAKES, {"userAddress": account.lower()})
        stakes = [
            IndexedStake(
                stake_id=int(row["internal_id"]),
                principal=int(row["stakedAmount"]),
                start_time=int(row["startTime"]),
                staking_period=int(row["stakingPeriod"]),
                creation_ref=row.get("transactionHash"),
            )
            for row in data.get("stakes", [])
        ]
        logger.debug(f"Indexer returned {len(stakes)} stakes for {account}")
        return stakes

    async def list_yield_withdrawals(self, account: str) -> List[YieldWithdrawal]:
        data = await self._query(GET_USER_YIELD_WITHDRAWALS, {"userAddress": account.lower()})
        return [
            YieldWithdrawal(
                stake_id=int(row["internal_id"]),
                principal=int(row["stakedAmount"]),
                amount=int(row["yieldWithdrawalAmount"]),
                staking_period=int(row["stakingPeriod"]),
                start_time=int(row["startTime"]),
                end_time=int(row["endTime"]),
            )
            for row in data.get("stakeYieldWithdraws", [])
        ]

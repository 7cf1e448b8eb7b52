"""Ledger adapter for the VMF staking contract on an EVM chain.

Transactions are sent with ``eth_sendTransaction`` from the configured
account, so the RPC endpoint (a wallet provider or a node with the account
unlocked) does the signing.
"""
import asyncio
from typing import Any, Dict, List, Optional

import aiohttp
from loguru import logger
from pydantic import ValidationError
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception
from web3.logs import DISCARD

from .errors import LedgerError
from .ledger import (
    Confirmation,
    ConfirmationStatus,
    LedgerOperation,
    LedgerReader,
    LedgerStakeInfo,
    LedgerWriter,
    SimulationResult,
)
from .stake import OperationKind, StakeCapPolicy, StakeStatus


def _fn(name: str, inputs: List[tuple], outputs: List[tuple], mutability: str = "view") -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in outputs],
    }


STAKING_ABI = [
    {
        "type": "function",
        "name": "getUserStakingInfo",
        "stateMutability": "view",
        "inputs": [{"name": "user", "type": "address"}, {"name": "stakeId", "type": "uint256"}],
        "outputs": [{
            "name": "",
            "type": "tuple",
            "components": [
                {"name": "stakedAmount", "type": "uint256"},
                {"name": "startTime", "type": "uint256"},
                {"name": "stakingPeriod", "type": "uint256"},
                {"name": "lastYieldClaimAt", "type": "uint256"},
            ],
        }],
    },
    _fn("minimumStakeCap", [], [("", "uint256")]),
    _fn("maximumStakeCap", [], [("", "uint256")]),
    _fn("_minimumAPRRate", [], [("", "uint256")]),
    _fn("stake", [("amount", "uint256"), ("stakingPeriod", "uint256")], [], "nonpayable"),
    _fn("stakeBatch", [("amounts", "uint256[]"), ("stakingPeriods", "uint256[]")], [], "nonpayable"),
    _fn("withdraw", [("stakeId", "uint256"), ("amount", "uint256")], [], "nonpayable"),
    _fn("withdrawAll", [("stakeId", "uint256")], [], "nonpayable"),
    _fn("withdrawYield", [("stakeId", "uint256")], [], "nonpayable"),
    {
        "type": "event",
        "name": "Staked",
        "anonymous": False,
        "inputs": [
            {"name": "user", "type": "address", "indexed": True},
            {"name": "stakeId", "type": "uint256", "indexed": False},
            {"name": "stakedAmount", "type": "uint256", "indexed": False},
            {"name": "stakingPeriod", "type": "uint256", "indexed": False},
            {"name": "startTime", "type": "uint256", "indexed": False},
        ],
    },
]

ERC20_ABI = [
    _fn("balanceOf", [("account", "address")], [("", "uint256")]),
    _fn("allowance", [("owner", "address"), ("spender", "address")], [("", "uint256")]),
    _fn("approve", [("spender", "address"), ("amount", "uint256")], [("", "bool")], "nonpayable"),
]

TRANSPORT_ERRORS = (Web3Exception, aiohttp.ClientError, asyncio.TimeoutError, ValueError)


class StakingContract(LedgerReader, LedgerWriter):
    """Reads and writes the staking and token contracts through web3."""

    def __init__(
        self,
        rpc_url: str,
        staking_address: str,
        token_address: str,
        poll_interval: float = 2.0,
        web3: Optional[AsyncWeb3] = None,
    ):
        self.w3 = web3 or AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.staking_address = AsyncWeb3.to_checksum_address(staking_address)
        self.token_address = AsyncWeb3.to_checksum_address(token_address)
        self.poll_interval = poll_interval
        self.staking = self.w3.eth.contract(address=self.staking_address, abi=STAKING_ABI)
        self.token = self.w3.eth.contract(address=self.token_address, abi=ERC20_ABI)

    @property
    def spender(self) -> str:
        return self.staking_address

    async def _call(self, fn, what: str):
        try:
            return await fn.call()
        except TRANSPORT_ERRORS as e:
            raise LedgerError(f"{what}: {e}") from e

    # -- reads -----------------------------------------------------------------

    async def read_stake_info(self, account: str, stake_id: int) -> LedgerStakeInfo:
        user = AsyncWeb3.to_checksum_address(account)
        info = await self._call(self.staking.functions.getUserStakingInfo(user, stake_id), "getUserStakingInfo")
        principal, start_time, staking_period, last_claim = info
        return LedgerStakeInfo(
            principal=principal,
            last_yield_claim_at=last_claim,
            status=StakeStatus.ACTIVE if principal > 0 else StakeStatus.WITHDRAWN,
            # a withdrawn stake reads back zeroed, creation facts then come from the indexer
            start_time=start_time or None,
            staking_period=staking_period or None,
        )

    async def read_allowance(self, account: str, spender: str) -> int:
        owner = AsyncWeb3.to_checksum_address(account)
        spender = AsyncWeb3.to_checksum_address(spender)
        return await self._call(self.token.functions.allowance(owner, spender), "allowance")

    async def read_cap_policy(self) -> StakeCapPolicy:
        minimum = await self._call(self.staking.functions.minimumStakeCap(), "minimumStakeCap")
        maximum = await self._call(self.staking.functions.maximumStakeCap(), "maximumStakeCap")
        try:
            return StakeCapPolicy(minimum_stake=minimum, maximum_stake=maximum)
        except ValidationError as e:
            raise LedgerError(f"contract reported invalid stake caps {minimum}..{maximum}: {e}") from e

    async def read_token_balance(self, account: str) -> int:
        owner = AsyncWeb3.to_checksum_address(account)
        return await self._call(self.token.functions.balanceOf(owner), "balanceOf")

    async def read_rate_per_second(self) -> int:
        return await self._call(self.staking.functions._minimumAPRRate(), "_minimumAPRRate")

    # -- writes ----------------------------------------------------------------

    def _build(self, operation: LedgerOperation):
        args = operation.args
        if operation.kind == OperationKind.APPROVE:
            return self.token.functions.approve(AsyncWeb3.to_checksum_address(args["spender"]), args["amount"])
        if operation.kind == OperationKind.STAKE:
            return self.staking.functions.stake(args["amount"], args["period"])
        if operation.kind == OperationKind.STAKE_BATCH:
            return self.staking.functions.stakeBatch(list(args["amounts"]), list(args["periods"]))
        if operation.kind == OperationKind.WITHDRAW_YIELD:
            return self.staking.functions.withdrawYield(args["stake_id"])
        if operation.kind == OperationKind.WITHDRAW_STAKE:
            return self.staking.functions.withdrawAll(args["stake_id"])
        if operation.kind == OperationKind.WITHDRAW:
            return self.staking.functions.withdraw(args["stake_id"], args["amount"])
        raise ValueError(f"Unsupported operation: {operation.kind}")

    async def simulate(self, operation: LedgerOperation) -> SimulationResult:
        fn = self._build(operation)
        sender = AsyncWeb3.to_checksum_address(operation.account)
        try:
            await fn.call({"from": sender})
        except ContractLogicError as e:
            logger.debug(f"Simulation of {operation.kind.value} reverted: {e}")
            return SimulationResult.rejected(getattr(e, "message", None) or str(e))
        except TRANSPORT_ERRORS as e:
            raise LedgerError(f"simulate {operation.kind.value}: {e}") from e
        return SimulationResult.success()

    async def submit(self, operation: LedgerOperation) -> str:
        fn = self._build(operation)
        sender = AsyncWeb3.to_checksum_address(operation.account)
        try:
            tx_hash = await fn.transact({"from": sender})
        except TRANSPORT_ERRORS as e:
            raise LedgerError(f"submit {operation.kind.value}: {e}") from e
        handle = AsyncWeb3.to_hex(tx_hash)
        logger.info(f"Submitted {operation.kind.value}: {handle}")
        return handle

    async def await_confirmation(self, handle: str, timeout: float) -> Confirmation:
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                handle, timeout=timeout, poll_latency=self.poll_interval
            )
        except TimeExhausted:
            logger.warning(f"No receipt for {handle} after {timeout}s")
            return Confirmation(status=ConfirmationStatus.TIMED_OUT, handle=handle)
        except TRANSPORT_ERRORS as e:
            raise LedgerError(f"receipt for {handle}: {e}") from e

        if receipt["status"] != 1:
            return Confirmation(status=ConfirmationStatus.REVERTED, handle=handle, reason="execution reverted")

        try:
            block = await self.w3.eth.get_block(receipt["blockNumber"])
        except TRANSPORT_ERRORS as e:
            raise LedgerError(f"block for {handle}: {e}") from e
        events = self.staking.events.Staked().process_receipt(receipt, errors=DISCARD)
        return Confirmation(
            status=ConfirmationStatus.CONFIRMED,
            handle=handle,
            confirmed_at=block["timestamp"],
            created_stake_ids=[event["args"]["stakeId"] for event in events],
        )

"""VMF staking CLI."""
import asyncio
import functools
import json
import sys
import time
from datetime import datetime
from typing import Optional, Tuple

import click
from loguru import logger

from .core import StakingSession
from .core.accrual import display_apr, display_yield, total_yield, yield_for_stake
from .core.errors import OperationFailed, StakingError
from .core.stake import OperationKind, StakeStatus
from .core.ticker import YieldTicker
from .core.units import days_to_seconds, format_amount, format_duration, parse_units

LOG_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}"


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Replace loguru's default sink, optionally adding a rotating file."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)
    if log_file:
        logger.add(log_file, level="DEBUG", rotation="10 MB", retention=5)


def staking_errors(f):
    """Turn engine errors into a one-line CLI failure."""
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except StakingError as e:
            raise click.ClickException(str(e)) from e
    return wrapper


def parse_amount(value: str) -> int:
    try:
        return parse_units(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


def parse_entry(value: str) -> Tuple[int, int]:
    """Parse a batch entry of the form ``AMOUNT:DAYS``."""
    amount, sep, days = value.partition(":")
    if not sep or not days.strip().isdigit():
        raise click.BadParameter(f"Expected AMOUNT:DAYS, got {value!r}")
    return parse_amount(amount.strip()), days_to_seconds(int(days))


def format_time(timestamp: Optional[int]) -> str:
    if not timestamp:
        return "-"
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M")


async def with_retry(orchestrator, first, account: str, stake_id: Optional[int], kind: OperationKind,
                     retry: bool):
    """Await ``first``; on a retryable failure keep retrying until the attempt limit."""
    try:
        return await first
    except OperationFailed as e:
        if not retry or not e.retryable:
            raise
        logger.warning(f"{e}, retrying")
    while True:
        try:
            return await orchestrator.retry(account, stake_id, kind)
        except OperationFailed as e:
            if not e.retryable:
                raise
            logger.warning(f"{e}, retrying")


def echo_result(result) -> None:
    click.echo(f"\n{result.kind.value} confirmed: {result.confirmation_id}")
    if result.created_stake_ids:
        click.echo(f"New stake id(s): {', '.join(str(i) for i in result.created_stake_ids)}")


@click.group()
@click.version_option(package_name="vmf-staking")
@click.option('--network', type=click.Choice(["base", "base-sepolia"]), help='Override the configured network')
@click.option('--log-level', default=None, help='Log level (DEBUG, INFO, WARNING, ...)')
@click.option('--log-file', type=click.Path(dir_okay=False), help='Also write debug logs to this file')
@click.pass_context
def cli(ctx, network: Optional[str], log_level: Optional[str], log_file: Optional[str]):
    """Stake VMF tokens and manage yield from the command line."""
    if ctx.obj is None:
        ctx.obj = StakingSession(network=network)
    level = log_level or ctx.obj.get_wallet().config.log_level
    configure_logging(level, log_file)


# -- wallet ------------------------------------------------------------------

@cli.group(name="wallet")
def wallet_cmd():
    """Manage the staking account."""


@wallet_cmd.command()
@click.argument('account')
@click.pass_obj
def login(session: StakingSession, account: str):
    """Use ACCOUNT (an 0x address) for all operations.

    Transactions are signed by the RPC endpoint, so ACCOUNT must be
    available to it (a wallet provider or an unlocked node account).
    """
    if not session.get_wallet().login(account):
        raise click.ClickException(f"Invalid account address: {account}")


@wallet_cmd.command()
@click.pass_obj
def logout(session: StakingSession):
    """Forget the configured account."""
    session.get_wallet().logout()


@wallet_cmd.command()
@click.pass_obj
@staking_errors
def status(session: StakingSession):
    """Show account, token balance and staking allowance."""
    wallet = session.get_wallet()
    if not wallet.is_logged_in():
        logger.info("Not logged in")
        logger.info("\nTo log in, run:")
        logger.info("  vmf-staking wallet login 0xYourAddress")
        return

    async def _status():
        ledger = session.get_ledger()
        balance = await ledger.read_token_balance(wallet.account)
        allowance = await ledger.read_allowance(wallet.account, ledger.spender)
        return balance, allowance

    balance, allowance = asyncio.run(_status())
    click.echo(f"Account:   {wallet.account}")
    click.echo(f"Network:   {wallet.config.network} (chain {wallet.config.chain_id})")
    click.echo(f"Balance:   {format_amount(balance)}")
    click.echo(f"Allowance: {format_amount(allowance)}")


# -- config ------------------------------------------------------------------

@cli.group(name="config")
def config_cmd():
    """View or change settings."""


@config_cmd.command(name="show")
@click.pass_obj
def config_show(session: StakingSession):
    """Print the active settings."""
    wallet = session.get_wallet()
    click.echo(f"Config directory: {wallet.config_dir}")
    click.echo(json.dumps(wallet.config.model_dump(), indent=2))


@config_cmd.command(name="set")
@click.argument('key')
@click.argument('value')
@click.pass_obj
def config_set(session: StakingSession, key: str, value: str):
    """Set KEY to VALUE. VALUE is parsed as JSON when possible."""
    try:
        parsed = json.loads(value)
    except ValueError:
        parsed = value
    try:
        config = session.get_wallet().update(**{key: parsed})
    except (KeyError, ValueError) as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"{key} = {getattr(config, key)!r}")


# -- staking -------------------------------------------------------------------

@cli.group()
def stake():
    """Create, inspect and withdraw stakes."""


@stake.command()
@click.argument('amount')
@click.option('--period', 'days', required=True, type=int, help='Lock period in days (30, 60 or 90)')
@click.option('--retry/--no-retry', default=False, help='Retry submission and confirmation failures')
@click.pass_obj
@staking_errors
def place(session: StakingSession, amount: str, days: int, retry: bool):
    """Stake AMOUNT tokens for the given lock period."""
    account = session.require_account()
    value = parse_amount(amount)
    orchestrator = session.get_orchestrator()
    result = asyncio.run(with_retry(
        orchestrator, orchestrator.stake(account, value, days_to_seconds(days)),
        account, None, OperationKind.STAKE, retry,
    ))
    echo_result(result)


@stake.command()
@click.option('--entry', 'entries', multiple=True, required=True, help='AMOUNT:DAYS, repeatable')
@click.option('--retry/--no-retry', default=False, help='Retry submission and confirmation failures')
@click.pass_obj
@staking_errors
def batch(session: StakingSession, entries: Tuple[str, ...], retry: bool):
    """Create several stakes in a single transaction."""
    account = session.require_account()
    parsed = [parse_entry(entry) for entry in entries]
    amounts = [amount for amount, _ in parsed]
    periods = [period for _, period in parsed]
    orchestrator = session.get_orchestrator()
    result = asyncio.run(with_retry(
        orchestrator, orchestrator.stake_batch(account, amounts, periods),
        account, None, OperationKind.STAKE_BATCH, retry,
    ))
    echo_result(result)


@stake.command(name="list")
@click.option('--all', 'show_all', is_flag=True, help='Include withdrawn stakes')
@click.pass_obj
@staking_errors
def list_stakes(session: StakingSession, show_all: bool):
    """List stakes with their current yield."""
    account = session.require_account()
    registry = session.get_registry()

    async def _load():
        return await registry.list_for_account(account), await registry.rate_schedule()

    stakes, schedule = asyncio.run(_load())
    if not show_all:
        stakes = [s for s in stakes if s.status == StakeStatus.ACTIVE]
    if not stakes:
        logger.info("No stakes found for your account")
        logger.info("To place a stake, use: vmf-staking stake place <amount> --period <days>")
        return

    now = int(time.time())
    click.echo(f"\nStakes for {account}:")
    click.echo("-" * 96)
    click.echo(f"{'ID':<6}{'Principal':<24}{'Period':<10}{'Unlocks':<20}{'Yield':<22}{'Status':<14}")
    click.echo("-" * 96)
    for s in stakes:
        if s.status != StakeStatus.ACTIVE:
            state = "withdrawn"
        elif s.is_unlocked(now):
            state = "unlocked"
        else:
            state = format_duration(s.time_remaining(now))
        click.echo(
            f"{s.stake_id:<6}"
            f"{format_amount(s.principal):<24}"
            f"{s.staking_period // 86400}d{'':<7}"
            f"{format_time(s.unlock_time):<20}"
            f"{display_yield(yield_for_stake(s, schedule, now)):<22}"
            f"{state:<14}"
        )
    click.echo("-" * 96)
    click.echo(f"Total yield: {display_yield(total_yield(stakes, schedule, now))} VMF")


@stake.command()
@click.argument('stake_id', type=int)
@click.pass_obj
@staking_errors
def view(session: StakingSession, stake_id: int):
    """Show one stake in detail."""
    account = session.require_account()
    registry = session.get_registry()

    async def _load():
        return await registry.get(account, stake_id), await registry.rate_schedule()

    s, schedule = asyncio.run(_load())
    now = int(time.time())
    click.echo(f"\nStake {stake_id}:")
    click.echo("-" * 60)
    click.echo(f"Principal:       {format_amount(s.principal)}")
    click.echo(f"Status:          {s.status.value}")
    click.echo(f"Started:         {format_time(s.start_time)}")
    click.echo(f"Lock period:     {format_duration(s.staking_period)}")
    click.echo(f"Unlocks:         {format_time(s.unlock_time)} ({s.lock_progress(now):.1f}% served)")
    click.echo(f"Last yield claim: {format_time(s.last_yield_claim_at)}")
    click.echo(f"Accrued yield:   {display_yield(yield_for_stake(s, schedule, now))} VMF")
    click.echo(f"APR:             {display_apr(schedule):.2f}%")


@stake.command(name="withdraw-yield")
@click.argument('stake_id', type=int)
@click.option('--retry/--no-retry', default=False, help='Retry submission and confirmation failures')
@click.pass_obj
@staking_errors
def withdraw_yield(session: StakingSession, stake_id: int, retry: bool):
    """Claim the yield accrued on STAKE_ID."""
    account = session.require_account()
    orchestrator = session.get_orchestrator()
    result = asyncio.run(with_retry(
        orchestrator, orchestrator.withdraw_yield(account, stake_id),
        account, stake_id, OperationKind.WITHDRAW_YIELD, retry,
    ))
    echo_result(result)


@stake.command()
@click.argument('stake_id', type=int)
@click.option('--amount', help='Withdraw only this much principal')
@click.option('--retry/--no-retry', default=False, help='Retry submission and confirmation failures')
@click.pass_obj
@staking_errors
def withdraw(session: StakingSession, stake_id: int, amount: Optional[str], retry: bool):
    """Withdraw the principal of an unlocked stake."""
    account = session.require_account()
    orchestrator = session.get_orchestrator()
    if amount is None:
        first = orchestrator.withdraw_stake(account, stake_id)
        kind = OperationKind.WITHDRAW_STAKE
    else:
        first = orchestrator.withdraw(account, stake_id, parse_amount(amount))
        kind = OperationKind.WITHDRAW
    result = asyncio.run(with_retry(orchestrator, first, account, stake_id, kind, retry))
    echo_result(result)


@stake.command()
@click.argument('stake_ids', nargs=-1, type=int, required=True)
@click.option('--count', type=int, default=None, help='Stop after this many refreshes')
@click.pass_obj
@staking_errors
def watch(session: StakingSession, stake_ids: Tuple[int, ...], count: Optional[int]):
    """Live yield display for one or more stakes."""
    account = session.require_account()
    registry = session.get_registry()
    interval = session.get_wallet().config.refresh_interval

    def _render(values):
        line = "  ".join(
            f"#{stake_id}: {display_yield(value) if value is not None else '-'}"
            for stake_id, value in values.items()
        )
        click.echo(f"{datetime.now():%H:%M:%S}  {line}")

    async def _watch():
        await registry.rate_schedule()
        for stake_id in stake_ids:
            await registry.get(account, stake_id)
        ticker = YieldTicker(registry, account, stake_ids, _render, refresh_interval=interval)
        await ticker.run(ticks=count)

    asyncio.run(_watch())


# -- pool ----------------------------------------------------------------------

@cli.group()
def pool():
    """Staking contract information."""


@pool.command()
@click.pass_obj
@staking_errors
def caps(session: StakingSession):
    """Show stake limits and the accrual rate."""
    registry = session.get_registry()

    async def _load():
        return await registry.cap_policy(), await registry.rate_schedule()

    policy, schedule = asyncio.run(_load())
    periods = ", ".join(f"{d}d" for d in session.get_wallet().config.allowed_period_days)
    click.echo(f"Minimum stake: {format_amount(policy.minimum_stake)}")
    click.echo(f"Maximum stake: {format_amount(policy.maximum_stake)}")
    click.echo(f"APR:           {display_apr(schedule):.2f}%")
    click.echo(f"Lock periods:  {periods}")


@pool.command()
@click.pass_obj
@staking_errors
def withdrawals(session: StakingSession):
    """Show the account's yield withdrawal history."""
    account = session.require_account()

    rows = asyncio.run(session.get_indexer().list_yield_withdrawals(account))
    if not rows:
        logger.info("No yield withdrawals found")
        return
    click.echo(f"\n{'Stake':<8}{'Principal':<24}{'Yield':<22}{'Claimed':<20}")
    click.echo("-" * 74)
    for row in rows:
        click.echo(
            f"{row.stake_id:<8}"
            f"{format_amount(row.principal):<24}"
            f"{display_yield(row.amount):<22}"
            f"{format_time(row.end_time):<20}"
        )


if __name__ == "__main__":
    cli()

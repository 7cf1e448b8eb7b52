from typing import Optional

from .errors import StakingError


class StakingSession:
    """Builds the engine components once per session from the wallet settings."""

    def __init__(self, network: Optional[str] = None):
        self.network = network
        self.wallet = None
        self.ledger = None
        self.indexer = None
        self.registry = None
        self.orchestrator = None

    def get_wallet(self):
        """Get or initialize wallet"""
        from .wallet import Wallet
        if not self.wallet:
            self.wallet = Wallet(network=self.network)
        return self.wallet

    def require_account(self) -> str:
        wallet = self.get_wallet()
        if not wallet.is_logged_in():
            raise StakingError("No account configured. Run: vmf-staking wallet login ADDRESS")
        return wallet.account

    def get_ledger(self):
        """Get or initialize the staking contract adapter"""
        from .contract import StakingContract
        if not self.ledger:
            config = self.get_wallet().config
            if not config.staking_contract or not config.token_contract:
                raise StakingError(f"No contract addresses configured for {config.network}")
            self.ledger = StakingContract(
                config.rpc_url,
                config.staking_contract,
                config.token_contract,
                poll_interval=config.poll_interval,
            )
        return self.ledger

    def get_indexer(self):
        from .indexer import SubgraphIndexer
        if not self.indexer:
            self.indexer = SubgraphIndexer(self.get_wallet().config.indexer_url)
        return self.indexer

    def get_registry(self):
        from .accrual import RateSchedule
        from .registry import StakeRegistry
        if not self.registry:
            config = self.get_wallet().config
            fallback = RateSchedule.from_apr(config.fallback_apr) if config.fallback_apr else None
            self.registry = StakeRegistry(
                self.get_ledger(),
                self.get_indexer(),
                staleness_window=config.cache_ttl_seconds,
                fallback_schedule=fallback,
            )
        return self.registry

    def get_notifier(self):
        from .notifications import LoggingSink
        return LoggingSink(self.get_wallet().config.explorer_url)

    def get_orchestrator(self):
        """Get or initialize the transaction orchestrator"""
        from .orchestrator import TransactionOrchestrator
        from .units import days_to_seconds
        if not self.orchestrator:
            config = self.get_wallet().config
            ledger = self.get_ledger()
            self.orchestrator = TransactionOrchestrator(
                ledger,
                ledger,
                self.get_registry(),
                notifier=self.get_notifier(),
                allowed_periods=[days_to_seconds(d) for d in config.allowed_period_days],
                confirmation_timeout=config.confirmation_timeout,
                max_attempts=config.max_attempts,
            )
        return self.orchestrator

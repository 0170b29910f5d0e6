"""
Economy system wiring

Builds the store handle and every component on top of it. The entry point
that creates an EconomySystem owns it and must call close().
"""

from typing import Optional

from .amounts import Amount
from .config import EconomyConfig, get_config
from .ledger import LedgerStore
from .logging_config import get_logger
from .migrations import BackfillRunner, MigrationManager
from .queries import BalanceQueryService
from .rate_limit import create_rate_limiter
from .storage import StorageInterface, create_storage
from .transaction_log import TransactionLog
from .transfers import TaxSchedule, TransferEngine


logger = get_logger("game_economy.system")


class EconomySystem:
    """Economy service with all components initialized"""

    def __init__(self, config: Optional[EconomyConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()

        # Initialize storage
        self.storage = storage or create_storage(
            self.config.database_url,
            retry_attempts=self.config.store_retry_attempts,
            busy_timeout_seconds=self.config.store_busy_timeout_seconds,
        )

        # Initialize core components
        self.ledger = LedgerStore(self.storage, treasury_id=self.config.treasury_id)
        self.transaction_log = TransactionLog(self.storage)
        self.tax_schedule = TaxSchedule.from_config(self.config.tax_rates)
        self.rate_limiter = None
        if self.config.enable_rate_limiting:
            self.rate_limiter = create_rate_limiter(
                self.config.rate_limit_strategy, self.config.rate_limits
            )

        self.transfer_engine = TransferEngine(
            self.ledger, self.transaction_log,
            tax_schedule=self.tax_schedule,
            rate_limiter=self.rate_limiter,
            max_transfer_amount=min(
                Amount.parse(self.config.max_amount), Amount.parse(self.config.max_transfer_amount)
            ),
        )
        self.query_service = BalanceQueryService(
            self.ledger, self.transaction_log,
            default_page_size=self.config.history_default_page_size,
            max_page_size=self.config.history_max_page_size,
        )
        self.migration_manager = MigrationManager(
            self.storage,
            BackfillRunner(self.storage, log_every=self.config.migration_batch_log_every),
        )
        logger.info(f"Economy system initialized with {type(self.storage).__name__}")

    def close(self) -> None:
        self.storage.close()


# Global economy system instance, created on first use
_economy_system: Optional[EconomySystem] = None


def get_economy_system() -> EconomySystem:
    """Dependency to get the economy system"""
    global _economy_system
    if _economy_system is None:
        _economy_system = EconomySystem()
    return _economy_system


def set_economy_system(system: Optional[EconomySystem]) -> None:
    """Replace the global instance (entry points and tests)"""
    global _economy_system
    _economy_system = system

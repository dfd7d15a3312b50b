"""
Ledger system context: one storage backend and every component wired to it.
"""

from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .config import LedgerConfig, get_config
from .currency import Currency
from .storage import StorageInterface, create_storage
from .audit import AuditTrail
from .ids import IdGenerator
from .ledger import Ledger, Clock, system_clock
from .accounts import AccountManager
from .fixed_deposits import FixedDepositManager
from .scheduler import InterestScheduler, start_background_scheduler
from .logging_config import get_logger


class LedgerSystem:
    """Branch ledger with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[LedgerConfig] = None,
        clock: Clock = system_clock
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(
            self.config.database_url,
            statement_timeout=self.config.storage_timeout_seconds,
            lock_timeout=self.config.lock_timeout_seconds
        )

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.ids = IdGenerator(self.storage)
        self.ledger = Ledger(
            self.storage, self.audit_trail, self.ids,
            currency=Currency[self.config.currency], clock=clock
        )
        self.accounts = AccountManager(self.storage, self.ledger, self.ids, self.audit_trail)
        self.fixed_deposits = FixedDepositManager(
            self.storage, self.ledger, self.ids, self.audit_trail,
            interest_interval_days=self.config.fd_interest_interval_days
        )
        self.scheduler = InterestScheduler(
            self.storage, self.ledger, self.fixed_deposits, self.audit_trail,
            interest_interval_days=self.config.fd_interest_interval_days
        )
        self._background: Optional[BackgroundScheduler] = None
        self.logger = get_logger("branch_ledger.system")

    def start_scheduler(self) -> Optional[BackgroundScheduler]:
        """Start the cron-driven jobs unless disabled in configuration"""
        if not self.config.scheduler_enabled:
            self.logger.info("Scheduler disabled by configuration")
            return None
        if self._background is None:
            self._background = start_background_scheduler(self.scheduler, self.config)
        return self._background

    def close(self) -> None:
        if self._background is not None and self._background.running:
            self._background.shutdown(wait=False)
        self._background = None
        self.storage.close()

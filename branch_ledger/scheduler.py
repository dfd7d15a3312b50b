"""
Interest Accrual Scheduler

Batch jobs that credit monthly FD interest, mature FDs past their maturity
date and credit monthly savings interest. Each entity is processed in its
own storage transaction; a failure on one is logged and audited and the run
moves on to the next.

Jobs are plain methods taking an optional ``today`` so they can be invoked
directly (tests, manual triggers through the API) or from the APScheduler
cron triggers registered by ``start_background_scheduler``. Every posting is
stamped with the ledger clock; ``today`` only selects the run date and may
not be later than the clock's date.
"""

from decimal import Decimal
from datetime import date, datetime
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .currency import Money, floor_to_precision
from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .ledger import Ledger, Transaction, TransactionType, AccountStatus
from .fixed_deposits import FixedDepositManager, FDStatus
from .config import LedgerConfig
from .logging_config import get_logger, log_action


FD_INTEREST_JOB = "fd_interest"
FD_MATURITY_JOB = "fd_maturity"
SAVINGS_INTEREST_JOB = "savings_interest"

SAVINGS_INTEREST_DESCRIPTION = "Monthly savings interest payment"


def fd_interest_key(fd_id: str, last_payment: date) -> str:
    return f"FD_INTEREST:{fd_id}:{last_payment.isoformat()}"


def savings_interest_key(account_id: str, today: date) -> str:
    return f"SAVINGS_INTEREST:{account_id}:{today:%Y-%m}"


@dataclass
class JobResult:
    job: str
    run_date: date
    processed: int = 0
    credited: int = 0
    skipped: int = 0
    failed: int = 0
    total_amount: Decimal = Decimal("0")
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "run_date": self.run_date.isoformat(),
            "processed": self.processed,
            "credited": self.credited,
            "skipped": self.skipped,
            "failed": self.failed,
            "total_amount": str(self.total_amount),
            "errors": list(self.errors)
        }


class InterestScheduler:
    """
    Runs the interest and maturity batch jobs against the ledger
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: Ledger,
        fd_manager: FixedDepositManager,
        audit_trail: AuditTrail,
        interest_interval_days: int = 30
    ):
        self.storage = storage
        self.ledger = ledger
        self.fd_manager = fd_manager
        self.audit_trail = audit_trail
        self.interest_interval_days = interest_interval_days
        self.logger = get_logger("branch_ledger.scheduler")

    @property
    def clock(self) -> Callable[[], datetime]:
        return self.ledger.clock

    def _resolve(self, today: Optional[date]) -> date:
        """
        Run date for a job. Postings are always stamped by the clock, so a
        run date may lag the clock (catch-up) but never lead it.
        """
        current = self.clock().date()
        if today is None:
            return current
        if today > current:
            raise ValueError(
                f"Run date {today.isoformat()} is after the current date {current.isoformat()}"
            )
        return today

    def run_job(self, name: str, today: Optional[date] = None) -> JobResult:
        jobs = {
            FD_INTEREST_JOB: self.run_fd_interest_job,
            FD_MATURITY_JOB: self.run_maturity_job,
            SAVINGS_INTEREST_JOB: self.run_savings_interest_job,
        }
        if name not in jobs:
            raise ValueError(f"Unknown job: {name}")
        return jobs[name](today)

    # FD interest

    def run_fd_interest_job(self, today: Optional[date] = None) -> JobResult:
        """
        Credit one month of interest to every ACTIVE FD whose last payment
        (or start date) is at least the interest interval ago.

        Safe to re-run: the FD row is locked and the posting carries an
        idempotency key derived from the FD and its last payment date, so a
        second run in the same window finds nothing to pay.
        """
        today = self._resolve(today)
        result = JobResult(FD_INTEREST_JOB, today)
        self.logger.info(f"Starting FD interest job for {today.isoformat()}")

        for fd in self.fd_manager.search(status=FDStatus.ACTIVE):
            result.processed += 1
            try:
                txn = self._credit_fd_interest(fd.id, today)
            except Exception as e:
                self._record_failure(result, "fixed_deposit", fd.id, e)
                continue
            if txn:
                result.credited += 1
                result.total_amount += txn.amount.amount
            else:
                result.skipped += 1

        self._log_summary(result)
        return result

    def _credit_fd_interest(self, fd_id: str, today: date) -> Optional[Transaction]:
        with self.storage.atomic():
            # Same lock order as FixedDepositManager.close
            self.storage.lock_record(self.fd_manager.table_name, fd_id)
            fd = self.fd_manager.get(fd_id)
            if not fd or not fd.is_active:
                return None
            self.storage.lock_record(self.ledger.accounts_table, fd.account_id)

            last_payment = self.fd_manager.last_payment_date(fd)
            if (today - last_payment).days < self.interest_interval_days:
                return None

            amount = Money(fd.monthly_interest, fd.principal.currency)
            if not amount.is_positive():
                return None

            key = fd_interest_key(fd.id, last_payment)
            if self.ledger.find_by_idempotency_key(key):
                return None

            txn = self.ledger.credit(
                fd.account_id, amount, f"Automatic Monthly FD Interest - {fd.id}",
                TransactionType.FD_INTEREST, None, fd_id=fd.id,
                idempotency_key=key
            )
            self.audit_trail.log_event(
                event_type=AuditEventType.INTEREST_CREDITED,
                entity_type="fixed_deposit",
                entity_id=fd.id,
                metadata={
                    "account_id": fd.account_id,
                    "amount": amount.amount,
                    "transaction_id": txn.id,
                    "period_start": last_payment.isoformat()
                }
            )
            return txn

    # FD maturity

    def run_maturity_job(self, today: Optional[date] = None) -> JobResult:
        """Move every ACTIVE FD with maturity_date <= today to MATURED"""
        today = self._resolve(today)
        result = JobResult(FD_MATURITY_JOB, today)
        self.logger.info(f"Starting FD maturity job for {today.isoformat()}")

        for fd in self.fd_manager.search(status=FDStatus.ACTIVE):
            if fd.maturity_date > today:
                continue
            result.processed += 1
            try:
                matured = self.fd_manager.mark_matured(fd.id, today)
            except Exception as e:
                self._record_failure(result, "fixed_deposit", fd.id, e)
                continue
            if matured:
                result.credited += 1
            else:
                result.skipped += 1

        self._log_summary(result)
        return result

    # Savings interest

    def run_savings_interest_job(self, today: Optional[date] = None) -> JobResult:
        """
        Credit monthly savings interest, floored to cents, to every ACTIVE
        account whose type pays interest. At most once per calendar month.
        """
        today = self._resolve(today)
        result = JobResult(SAVINGS_INTEREST_JOB, today)
        self.logger.info(f"Starting savings interest job for {today:%Y-%m}")

        for account in self.ledger.list_accounts(AccountStatus.ACTIVE):
            result.processed += 1
            try:
                txn = self._credit_savings_interest(account.id, today)
            except Exception as e:
                self._record_failure(result, "account", account.id, e)
                continue
            if txn:
                result.credited += 1
                result.total_amount += txn.amount.amount
            else:
                result.skipped += 1

        self._log_summary(result)
        return result

    def _credit_savings_interest(self, account_id: str, today: date) -> Optional[Transaction]:
        with self.storage.atomic():
            self.storage.lock_record(self.ledger.accounts_table, account_id)
            account = self.ledger.require_account(account_id)
            if not account.is_active or account.opened_at.date() > today:
                return None
            account_type = self.ledger.get_account_type(account.account_type_id)
            if not account_type or account_type.interest_rate <= 0:
                return None

            key = savings_interest_key(account_id, today)
            if self.ledger.find_by_idempotency_key(key):
                return None

            currency = account.balance.currency
            raw = account.balance.amount * account_type.interest_rate / Decimal("100") / Decimal("12")
            amount = Money(floor_to_precision(raw, currency), currency)
            if not amount.is_positive():
                return None

            txn = self.ledger.credit(
                account_id, amount, SAVINGS_INTEREST_DESCRIPTION,
                TransactionType.SAVINGS_INTEREST, None,
                idempotency_key=key
            )
            self.audit_trail.log_event(
                event_type=AuditEventType.INTEREST_CREDITED,
                entity_type="account",
                entity_id=account_id,
                metadata={
                    "amount": amount.amount,
                    "rate": account_type.interest_rate,
                    "transaction_id": txn.id,
                    "period": f"{today:%Y-%m}"
                }
            )
            return txn

    # Bookkeeping

    def _record_failure(self, result: JobResult, entity_type: str, entity_id: str,
                        error: Exception) -> None:
        result.failed += 1
        result.errors.append({"entity_id": entity_id, "error": f"{type(error).__name__}: {error}"})
        self.logger.exception(f"{result.job} job failed for {entity_type} {entity_id}")
        try:
            self.audit_trail.log_event(
                event_type=AuditEventType.JOB_ENTITY_FAILED,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata={"job": result.job, "run_date": result.run_date, "error": str(error)}
            )
        except Exception:
            self.logger.exception(f"Could not audit {result.job} failure for {entity_id}")

    def _log_summary(self, result: JobResult) -> None:
        log_action(
            self.logger, "info",
            f"{result.job} job finished: {result.credited} applied, "
            f"{result.skipped} skipped, {result.failed} failed",
            action=f"run_{result.job}", resource="scheduler",
            extra=result.to_dict()
        )


def start_background_scheduler(interest_scheduler: InterestScheduler, config: LedgerConfig,
                               scheduler: Optional[BackgroundScheduler] = None) -> BackgroundScheduler:
    """
    Register the three jobs on an APScheduler BackgroundScheduler and start it.

    FD interest runs daily at ``fd_interest_cron_hour``, maturity daily at
    ``fd_maturity_cron_hour`` and savings interest on
    ``savings_interest_cron_day`` of every month, all in the configured
    timezone. The jobs gate themselves, so a missed run is caught up by the
    next one.
    """
    if scheduler is None:
        scheduler = BackgroundScheduler(timezone=config.scheduler_timezone)

    common = dict(replace_existing=True, max_instances=1, coalesce=True)
    scheduler.add_job(interest_scheduler.run_fd_interest_job, 'cron',
                      hour=config.fd_interest_cron_hour, minute=0, id=FD_INTEREST_JOB, **common)
    scheduler.add_job(interest_scheduler.run_maturity_job, 'cron',
                      hour=config.fd_maturity_cron_hour, minute=0, id=FD_MATURITY_JOB, **common)
    scheduler.add_job(interest_scheduler.run_savings_interest_job, 'cron',
                      day=config.savings_interest_cron_day, hour=0, minute=0,
                      id=SAVINGS_INTEREST_JOB, **common)

    if not scheduler.running:
        scheduler.start()
        get_logger("branch_ledger.scheduler").info("Background scheduler started")
    return scheduler
